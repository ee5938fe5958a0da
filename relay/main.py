"""
Main application entry point - relay server with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from relay.auth import generate_token, is_valid_token_format, mask_token
from relay.config import Configuration
from relay.websocket_server import run_websocket_server

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Module-to-logger mapping for per-module levels and feature flags
MODULE_LOGGER_MAP: dict[str, dict[str, Any]] = {
    "bridge": {
        "loggers": ["relay.bridge"],
        "default_level": "INFO",
        "features": ["process_lifecycle", "raw_output", "parsed_events", "open_file"],
    },
    "websocket": {
        "loggers": ["relay.websocket_server", "relay.logging_utils"],
        "default_level": "INFO",
        "features": ["connection_events", "inbound_messages", "outbound_messages", "rate_limit"],
    },
    "client": {
        "loggers": ["relay.client"],
        "default_level": "INFO",
        "features": ["reconnect_attempts", "messages"],
    },
    "resilience": {
        "loggers": ["relay.resilience", "relay.history"],
        "default_level": "WARNING",
        "features": [],
    },
}


def _configure_advanced_logging(logging_config: dict[str, Any]) -> None:
    """
    Hierarchical logger configuration with feature control.

    Levels are set on parent loggers so children inherit them; feature
    flags are cached on the logging module for ``should_log_feature``.
    """
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    modules_config = logging_config.get("modules", {})

    for module_name, module_config in modules_config.items():
        if not isinstance(module_config, dict):
            continue

        mapping = MODULE_LOGGER_MAP.get(module_name, {})
        module_level = module_config.get("level", mapping.get("default_level", global_level))
        level_value = LEVEL_MAP.get(module_level, logging.WARNING)

        for logger_name in mapping.get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        if not hasattr(logging, "_module_features"):
            logging._module_features = {}  # type: ignore[attr-defined]
        logging._module_features[module_name] = module_config.get("enable_features", {})  # type: ignore[attr-defined]


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    """
    Handle real-time logging configuration changes.

    Called whenever runtime_config.yaml is modified, so levels and feature
    flags can be changed without a restart.
    """
    try:
        logging_config = new_config.get("logging", {})
        if logging_config:
            _configure_advanced_logging(logging_config)
            logging.info("🔄 Logging configuration updated in real-time")
    except Exception as e:
        logging.error(f"❌ Failed to update logging configuration: {e}")


def _server_config(config: Configuration) -> dict[str, Any]:
    return {
        "server": config.get_server_config(),
        "bridge": config.get_bridge_config(),
        "history": config.get_history_config(),
        "rate_limit": config.get_rate_limit_config(),
    }


# Configure logging for the application
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)


async def main() -> None:
    """Main entry point - relay server with graceful shutdown handling."""
    config = Configuration()

    logging_config = config.get_logging_config()

    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    _configure_advanced_logging(logging_config)

    config.subscribe_to_changes(_on_logging_config_change)

    auth_token = config.auth_token
    if auth_token:
        logging.info(f"Token authentication enabled ({mask_token(auth_token)})")
        if not is_valid_token_format(auth_token):
            logging.warning(
                "AUTH_TOKEN is weak: use at least 16 letters or digits "
                "(copilot-relay-token prints a strong one)"
            )

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        """Handle shutdown signals gracefully."""
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    try:
        await config.start_watching()

        server_task = asyncio.create_task(
            run_websocket_server(_server_config(config), auth_token)
        )

        done, pending = await asyncio.wait(
            [server_task, asyncio.create_task(shutdown_event.wait())],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for task in done:
            if task == server_task:
                exception = task.exception()
                if exception is not None:
                    raise exception

    except KeyboardInterrupt:
        logging.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logging.error(f"Application error: {e}")
        raise
    finally:
        await config.stop_watching()
        logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


def generate_token_cli() -> None:
    """Print a fresh AUTH_TOKEN value."""
    print(generate_token())


if __name__ == "__main__":
    cli_main()
