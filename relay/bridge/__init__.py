"""
Bridge Module

Assistant process lifecycle, output classification and the open-file skill.
"""

from .copilot_bridge import BUSY_MESSAGE, CopilotBridge, default_open_command
from .output_parser import (
    ErrorEvent,
    OutputParser,
    ParsedEvent,
    ProgressEvent,
    ToolEndEvent,
    ToolStartEvent,
)

__all__ = [
    "BUSY_MESSAGE",
    "CopilotBridge",
    "ErrorEvent",
    "OutputParser",
    "ParsedEvent",
    "ProgressEvent",
    "ToolEndEvent",
    "ToolStartEvent",
    "default_open_command",
]
