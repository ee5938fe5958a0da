"""Configuration management for the relay server and client."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
import time
from collections.abc import Callable
from typing import Any, cast

import yaml
from dotenv import load_dotenv

RUNTIME_METADATA_KEY = "_runtime_config"
WATCH_INTERVAL = 1.0  # seconds between mtime checks
WATCH_ERROR_BACKOFF = 5.0


class Configuration:
    """
    Layered relay configuration.

    ``config.yaml`` beside this module holds the defaults; the editable copy
    ``runtime_config.yaml`` is merged on top and re-read whenever its mtime
    changes. Environment variables (``.env`` included) override a few keys.
    Subscribers are called with the merged dictionary after each change.
    """

    def __init__(self, config_dir: str | None = None) -> None:
        """
        Args:
            config_dir: Directory holding runtime_config.yaml. Defaults to
                the package directory, next to config.yaml.
        """
        self.load_env()
        self._default_config = self._load_yaml_config()
        self._runtime_config_path = os.path.join(
            config_dir or os.path.dirname(__file__), "runtime_config.yaml"
        )
        self._runtime_config_mtime: float | None = None
        self._current_config: dict[str, Any] = {}

        self._observers: list[Callable[[dict[str, Any]], None]] = []
        self._watch_task: asyncio.Task[None] | None = None

        if not os.path.exists(self._runtime_config_path):
            self._write_defaults()
        self._reload_config()

    @staticmethod
    def load_env() -> None:
        """Load AUTH_TOKEN, HOST, PORT and COPILOT_CMD from a .env file."""
        load_dotenv()

    def _load_yaml_config(self) -> dict[str, Any]:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a dictionary")
            return cast(dict[str, Any], config)

    def _write_defaults(self) -> None:
        """(Re)create runtime_config.yaml as a copy of the defaults."""
        initial_config = self._default_config.copy()
        initial_config[RUNTIME_METADATA_KEY] = {
            "last_modified": time.time(),
            "version": 1,
            "is_runtime_config": True,
            "default_config_path": "config.yaml",
            "created_from_defaults": True,
        }
        with open(self._runtime_config_path, "w") as file:
            yaml.safe_dump(initial_config, file, default_flow_style=False, indent=2)

    def _read_runtime_file(self) -> dict[str, Any] | None:
        try:
            with open(self._runtime_config_path) as file:
                loaded = yaml.safe_load(file)
        except (yaml.YAMLError, OSError):
            return None
        return cast(dict[str, Any], loaded) if isinstance(loaded, dict) else None

    def _load_runtime_config(self) -> dict[str, Any]:
        config = self._read_runtime_file()
        if config is None:
            logging.warning(
                f"{self._runtime_config_path} is unreadable, recreating it from defaults"
            )
            self._write_defaults()
            config = self._read_runtime_file() or {}
        return config

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge ``override`` into a copy of ``base``."""
        result = base.copy()
        for key, value in override.items():
            if isinstance(result.get(key), dict) and isinstance(value, dict):
                result[key] = self._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = value
        return result

    def _reload_config(self) -> bool:
        """
        Re-read runtime_config.yaml if its mtime differs from the last load.

        Returns:
            True if the file was read again.
        """
        current_mtime = None
        if os.path.exists(self._runtime_config_path):
            current_mtime = os.path.getmtime(self._runtime_config_path)
        if current_mtime == self._runtime_config_mtime:
            return False

        previous = self._current_config
        runtime_config = self._load_runtime_config()
        # the file may have been rewritten from defaults above
        self._runtime_config_mtime = (
            os.path.getmtime(self._runtime_config_path)
            if os.path.exists(self._runtime_config_path)
            else None
        )
        self._current_config = self._deep_merge(
            self._default_config,
            {k: v for k, v in runtime_config.items() if k != RUNTIME_METADATA_KEY},
        )

        # the initial load is not a change
        if previous and self._current_config != previous:
            self._notify_config_change()
        return True

    def _get_current_config(self) -> dict[str, Any]:
        return self._current_config

    def _notify_config_change(self) -> None:
        for callback in list(self._observers):
            try:
                callback(self._current_config.copy())
            except Exception as e:
                logging.error(f"Error in config change callback: {e}")

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Call ``callback(new_config)`` after every effective change."""
        if callback not in self._observers:
            self._observers.append(callback)

    def unsubscribe_from_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    async def start_watching(self) -> None:
        """Poll runtime_config.yaml once a second until ``stop_watching``."""
        if self._watch_task is not None:
            return
        self._watch_task = asyncio.create_task(self._watch_config_file())
        logging.info(f"Watching {self._runtime_config_path} for changes")

    async def stop_watching(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logging.info("Stopped watching the runtime configuration")

    async def _watch_config_file(self) -> None:
        delay = WATCH_INTERVAL
        while True:
            await asyncio.sleep(delay)
            try:
                if self._reload_config():
                    logging.info("Runtime configuration reloaded")
                delay = WATCH_INTERVAL
            except Exception as e:
                logging.error(f"Error reloading {self._runtime_config_path}: {e}")
                delay = WATCH_ERROR_BACKOFF

    def _get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Look ``path`` up in the merged config, then in the defaults."""
        for source in (self._get_current_config(), self._default_config):
            current: Any = source
            for key in path:
                if not isinstance(current, dict) or key not in current:
                    break
                current = current[key]
            else:
                return current
        return default

    def reload_runtime_config(self) -> bool:
        """Reload now instead of waiting for the watcher; True if re-read."""
        return self._reload_config()

    def save_runtime_config(self, config: dict[str, Any]) -> None:
        """Write ``config`` as the new runtime file and apply it immediately."""
        metadata = self.get_runtime_metadata()
        runtime_config = config.copy()
        runtime_config[RUNTIME_METADATA_KEY] = {
            "last_modified": time.time(),
            "version": metadata.get("version", 0) + 1,
            "is_runtime_config": True,
            "default_config_path": "config.yaml",
        }

        with open(self._runtime_config_path, "w") as file:
            yaml.safe_dump(runtime_config, file, default_flow_style=False, indent=2)

        # the mtime may not have moved within the filesystem's resolution
        self._runtime_config_mtime = None
        self._reload_config()

    def get_runtime_metadata(self) -> dict[str, Any]:
        runtime_config = self._read_runtime_file() or {}
        metadata = runtime_config.get(RUNTIME_METADATA_KEY, {})
        return metadata if isinstance(metadata, dict) else {}

    @property
    def runtime_config_path(self) -> str:
        return self._runtime_config_path

    @property
    def auth_token(self) -> str | None:
        """Get the shared websocket secret.

        Returns:
            The token from the AUTH_TOKEN environment variable, or None when
            unset (open mode, every connection is accepted).
        """
        token = os.getenv("AUTH_TOKEN", "").strip()
        return token or None

    def get_config_dict(self) -> dict[str, Any]:
        """Merged configuration (live object; copy before mutating)."""
        return self._get_current_config()

    def get_server_config(self) -> dict[str, Any]:
        """Get HTTP/websocket server configuration with env overrides.

        Returns:
            Server configuration dictionary with validated values.
        """
        server_config = dict(self._get_config_value(["server"], {}))
        server_config["host"] = os.getenv("HOST", server_config.get("host", "localhost"))
        port = os.getenv("PORT")
        server_config["port"] = int(port) if port else server_config.get("port", 3100)
        server_config.setdefault("path", "/ws")
        server_config.setdefault("heartbeat_interval", 30.0)

        if not 0 < server_config["port"] < 65536:
            raise ValueError("server.port must be between 1 and 65535")
        if server_config["heartbeat_interval"] <= 0:
            raise ValueError("server.heartbeat_interval must be positive")
        if not str(server_config["path"]).startswith("/"):
            raise ValueError("server.path must start with '/'")
        if not isinstance(server_config.get("forwarded_for_headers", []), list):
            raise ValueError("server.forwarded_for_headers must be a list")

        return server_config

    def get_bridge_config(self) -> dict[str, Any]:
        """Get assistant process configuration.

        Returns:
            Bridge configuration dictionary; COPILOT_CMD overrides the command.
        """
        bridge_config = dict(self._get_config_value(["bridge"], {}))
        bridge_config["command"] = os.getenv(
            "COPILOT_CMD", bridge_config.get("command", "copilot")
        )
        grace = bridge_config.get("kill_grace_period", 1.0)
        if not isinstance(grace, int | float) or grace <= 0:
            raise ValueError("bridge.kill_grace_period must be a positive number")
        if not isinstance(bridge_config.get("args", []), list):
            raise ValueError("bridge.args must be a list")
        return bridge_config

    def get_history_config(self) -> dict[str, Any]:
        """Get chat history limits.

        Returns:
            Dictionary with max_messages and max_content_length.
        """
        history_config = self._get_config_value(["history"], {})
        max_messages = history_config.get("max_messages", 100)
        max_content_length = history_config.get("max_content_length", 100_000)

        if not isinstance(max_messages, int) or max_messages < 1:
            raise ValueError("history.max_messages must be a positive integer")
        if not isinstance(max_content_length, int) or max_content_length < 1:
            raise ValueError("history.max_content_length must be a positive integer")

        return {"max_messages": max_messages, "max_content_length": max_content_length}

    def get_rate_limit_config(self) -> dict[str, Any]:
        """Get per-client token bucket settings.

        Returns:
            Rate limit configuration dictionary with validated defaults.
        """
        rate_config = self._get_config_value(["rate_limit"], {})
        result = {
            "enabled": rate_config.get("enabled", True),
            "max_tokens": rate_config.get("max_tokens", 20),
            "refill_rate": rate_config.get("refill_rate", 5),
            "refill_interval_ms": rate_config.get("refill_interval_ms", 1000),
            "cleanup_idle_ms": rate_config.get("cleanup_idle_ms", 60_000),
        }
        for key in ("max_tokens", "refill_rate", "refill_interval_ms", "cleanup_idle_ms"):
            if result[key] <= 0:
                raise ValueError(f"rate_limit.{key} must be positive")
        return result

    def get_client_config(self) -> dict[str, Any]:
        """Get terminal client configuration.

        Returns:
            Client configuration dictionary (url, ping_interval, retry).
        """
        client_config = dict(self._get_config_value(["client"], {}))
        client_config.setdefault("url", "ws://localhost:3100/ws")
        client_config.setdefault("ping_interval", 30.0)
        client_config.setdefault("retry", {"preset": "default"})
        if client_config["ping_interval"] <= 0:
            raise ValueError("client.ping_interval must be positive")
        return client_config

    def get_logging_config(self) -> dict[str, Any]:
        """The ``logging`` section: level, format and per-module settings."""
        return self._get_config_value(["logging"], {})

    def reset_to_defaults(self) -> None:
        """Overwrite runtime_config.yaml with config.yaml (the version keeps counting)."""
        self.save_runtime_config(self._default_config.copy())


def reset_runtime_config_cli() -> None:
    """Console script: ``copilot-relay-reset-config``."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")
    try:
        config = Configuration()
        config.reset_to_defaults()
    except (OSError, ValueError, yaml.YAMLError) as e:
        logging.error(f"Could not reset the runtime configuration: {e}")
        sys.exit(1)
    version = config.get_runtime_metadata().get("version")
    logging.info(f"✓ {config.runtime_config_path} reset to defaults (version {version})")
