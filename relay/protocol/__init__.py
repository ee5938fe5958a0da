"""
Relay Protocol Module

Wire message models and their validation for both directions.
"""

from .models import (
    MAX_PROMPT_LENGTH,
    ChatMessage,
    ClientMessage,
    DoneMessage,
    ErrorMessage,
    FileOpenedMessage,
    InterruptMessage,
    OpenFileMessage,
    PingMessage,
    PongMessage,
    PromptMessage,
    ServerMessage,
    StreamMessage,
    ToolEndMessage,
    ToolExecution,
    ToolStartMessage,
    serialize_message,
)
from .validator import (
    ParseResult,
    is_valid_client_message,
    is_valid_server_message,
    parse_client_message,
    parse_server_message,
    validate_prompt_content,
)

__all__ = [
    "MAX_PROMPT_LENGTH",
    "ChatMessage",
    "ClientMessage",
    "DoneMessage",
    "ErrorMessage",
    "FileOpenedMessage",
    "InterruptMessage",
    "OpenFileMessage",
    "ParseResult",
    "PingMessage",
    "PongMessage",
    "PromptMessage",
    "ServerMessage",
    "StreamMessage",
    "ToolEndMessage",
    "ToolExecution",
    "ToolStartMessage",
    "is_valid_client_message",
    "is_valid_server_message",
    "parse_client_message",
    "parse_server_message",
    "serialize_message",
    "validate_prompt_content",
]
