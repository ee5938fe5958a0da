"""
Relay Logging Utilities

Shared logging helpers with per-module feature control. Feature flags are
installed by ``relay.main._configure_advanced_logging`` from the ``logging``
section of the runtime configuration.
"""

from __future__ import annotations

import logging
from typing import Any

from relay.auth import mask_token

logger = logging.getLogger(__name__)

OUTGOING = "→"
INCOMING = "←"


def should_log_feature(module: str, feature: str) -> bool:
    """
    Check if a specific logging feature should be enabled.

    Uses cached feature flags for better performance during runtime.
    """
    if hasattr(logging, "_module_features"):
        module_features = getattr(logging, "_module_features", {}).get(module, {})
        return bool(module_features.get(feature, False))
    return False


def truncate_for_log(text: str, limit: int = 200) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def log_directional_flow(
    direction: str, component: str, message: str, *args: Any
) -> None:
    """
    Log directional flow messages with consistent arrow formatting.

    Args:
        direction: Either "→" (outgoing) or "←" (incoming/completed)
        component: Component name (e.g., "Copilot", "Browser", "Relay")
        message: Message template with optional format placeholders
        *args: Arguments for message formatting
    """
    formatted_msg = message % args if args else message
    logger.info(f"{direction} {component}: {formatted_msg}")


def log_error_with_context(context: str, error: BaseException) -> None:
    """
    Log errors with consistent formatting across the application.

    Args:
        context: Descriptive context of where the error occurred
        error: The exception that was raised
    """
    logger.error(f"Error {context}: {error}")


def log_wire_message(direction: str, client: str, payload: str) -> None:
    """Log one websocket frame if the matching websocket feature is enabled."""
    feature = "inbound_messages" if direction == INCOMING else "outbound_messages"
    if not should_log_feature("websocket", feature):
        return
    log_directional_flow(direction, f"Browser[{client}]", "%s", truncate_for_log(payload))


def log_raw_output(chunk: str) -> None:
    if should_log_feature("bridge", "raw_output"):
        log_directional_flow(INCOMING, "Copilot", "raw %r", truncate_for_log(chunk))


def log_parsed_event(event: Any) -> None:
    if should_log_feature("bridge", "parsed_events"):
        log_directional_flow(INCOMING, "Copilot", "event %s", event)


def log_auth_attempt(client: str, token: str | None, authorized: bool) -> None:
    """Log a handshake outcome without ever writing the token itself."""
    shown = mask_token(token) if token else "[none]"
    if authorized:
        logger.info(f"Authorized connection from {client} (token {shown})")
    else:
        logger.warning(f"Rejected connection from {client} (token {shown})")
