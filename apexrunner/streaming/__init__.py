"""
Streaming package for `/systemTopic/TestResult`.

This package provides:
- Helpers: frame classification, server advice, run-id identity checks
- Client: handshake/subscribe/connect loop racing a queue poller
"""

# Helpers
from .helpers import (
    TEST_RESULT_CHANNEL,
    ClientState,
    FrameKind,
    FrameAction,
    FRAME_ACTIONS,
    STATE_TRANSITIONS,
    Advice,
    classify_frame,
    run_ids_match,
    stream_url,
)

# Client
from .client import StreamingClient, QUEUE_ITEM_QUERY

__all__ = [
    # Helpers
    "TEST_RESULT_CHANNEL",
    "ClientState",
    "FrameKind",
    "FrameAction",
    "FRAME_ACTIONS",
    "STATE_TRANSITIONS",
    "Advice",
    "classify_frame",
    "run_ids_match",
    "stream_url",
    # Client
    "StreamingClient",
    "QUEUE_ITEM_QUERY",
]
