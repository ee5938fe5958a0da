#!/usr/bin/env python3
"""
Tests for per-module log levels and feature flags.
"""

import logging

from relay.logging_utils import should_log_feature, truncate_for_log
from relay.main import _configure_advanced_logging, _on_logging_config_change

LOGGERS = ("relay.bridge", "relay.websocket_server", "relay.client", "relay.resilience")


def _snapshot():
    levels = {name: logging.getLogger(name).level for name in LOGGERS}
    return levels, logging.getLogger().level, getattr(logging, "_module_features", None)


def _restore(snapshot):
    levels, root_level, features = snapshot
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger().setLevel(root_level)
    if features is None:
        if hasattr(logging, "_module_features"):
            del logging._module_features
    else:
        logging._module_features = features


def test_module_levels_and_features():
    snapshot = _snapshot()
    try:
        _configure_advanced_logging(
            {
                "level": "ERROR",
                "modules": {
                    "bridge": {
                        "level": "DEBUG",
                        "enable_features": {"raw_output": True, "parsed_events": False},
                    },
                    "websocket": {"enable_features": {"inbound_messages": True}},
                    "resilience": {},
                },
            }
        )

        assert logging.getLogger().level == logging.ERROR
        assert logging.getLogger("relay.bridge").level == logging.DEBUG
        # children inherit from the configured parent
        assert logging.getLogger("relay.bridge.copilot_bridge").getEffectiveLevel() == logging.DEBUG
        # falls back to the module's default level
        assert logging.getLogger("relay.websocket_server").level == logging.INFO
        assert logging.getLogger("relay.resilience").level == logging.WARNING

        assert should_log_feature("bridge", "raw_output")
        assert not should_log_feature("bridge", "parsed_events")
        assert should_log_feature("websocket", "inbound_messages")
        assert not should_log_feature("websocket", "outbound_messages")
        assert not should_log_feature("client", "messages")
    finally:
        _restore(snapshot)


def test_runtime_change_applies_new_flags():
    snapshot = _snapshot()
    try:
        _on_logging_config_change(
            {"logging": {"level": "INFO", "modules": {"client": {"enable_features": {"messages": True}}}}}
        )
        assert should_log_feature("client", "messages")

        _on_logging_config_change(
            {"logging": {"level": "INFO", "modules": {"client": {"enable_features": {}}}}}
        )
        assert not should_log_feature("client", "messages")

        # no logging section leaves the flags untouched
        _on_logging_config_change({"server": {}})
        assert not should_log_feature("client", "messages")
    finally:
        _restore(snapshot)


def test_features_off_without_configuration():
    snapshot = _snapshot()
    try:
        if hasattr(logging, "_module_features"):
            del logging._module_features
        assert not should_log_feature("bridge", "process_lifecycle")
    finally:
        _restore(snapshot)


def test_truncate_for_log():
    assert truncate_for_log("short") == "short"
    assert truncate_for_log("x" * 300) == "x" * 200 + "..."
    assert truncate_for_log("abcdef", limit=3) == "abc..."


if __name__ == "__main__":
    test_module_levels_and_features()
    test_runtime_change_applies_new_flags()
    test_features_off_without_configuration()
    test_truncate_for_log()
    print("✓ logging tests passed")
