#!/usr/bin/env python3
"""
Chat History Module

Bounded in-memory chat history for the relay session.
"""

from __future__ import annotations

from .chat_history import ChatHistory, HistoryStats, ImportResult

__all__ = [
    "ChatHistory",
    "HistoryStats",
    "ImportResult",
]
