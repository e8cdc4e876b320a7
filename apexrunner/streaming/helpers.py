"""
Helper utilities for the streaming client.

Frame classification is kept pure so the client's inbound handling reduces to
a lookup in FRAME_ACTIONS.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from apexrunner.core.constants import RUN_ID_MATCH_LENGTH, VALID_ID_LENGTHS

TEST_RESULT_CHANNEL = "/systemTopic/TestResult"

META_HANDSHAKE = "/meta/handshake"
META_CONNECT = "/meta/connect"
META_SUBSCRIBE = "/meta/subscribe"
META_DISCONNECT = "/meta/disconnect"

BAYEUX_VERSION = "1.0"
CONNECTION_TYPE = "long-polling"

ERROR_AUTH_INVALID = "401::Authentication invalid"
ERROR_UNKNOWN_CLIENT_ID = "403::Unknown client"


class ClientState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    HANDSHAKING = "HANDSHAKING"
    CONNECTED = "CONNECTED"
    SUBSCRIBED = "SUBSCRIBED"


STATE_TRANSITIONS: dict[ClientState, frozenset[ClientState]] = {
    ClientState.DISCONNECTED: frozenset({ClientState.HANDSHAKING}),
    ClientState.HANDSHAKING: frozenset(
        {ClientState.CONNECTED, ClientState.DISCONNECTED}
    ),
    ClientState.CONNECTED: frozenset(
        {ClientState.SUBSCRIBED, ClientState.HANDSHAKING, ClientState.DISCONNECTED}
    ),
    ClientState.SUBSCRIBED: frozenset(
        {ClientState.HANDSHAKING, ClientState.DISCONNECTED}
    ),
}


class FrameKind(str, Enum):
    HANDSHAKE_ERROR = "handshake_error"
    AUTH_ERROR = "auth_error"
    REHANDSHAKE_ADVICE = "rehandshake_advice"
    UNKNOWN_CLIENT = "unknown_client"
    OTHER_ERROR = "other_error"
    MESSAGE = "message"


class FrameAction(str, Enum):
    RAISE_HANDSHAKE_ERROR = "raise_handshake_error"
    REINIT_AND_FORWARD = "reinit_and_forward"
    REHANDSHAKE = "rehandshake"
    LOG_AND_FORWARD = "log_and_forward"
    FORWARD = "forward"


FRAME_ACTIONS: dict[FrameKind, FrameAction] = {
    FrameKind.HANDSHAKE_ERROR: FrameAction.RAISE_HANDSHAKE_ERROR,
    FrameKind.AUTH_ERROR: FrameAction.REINIT_AND_FORWARD,
    FrameKind.REHANDSHAKE_ADVICE: FrameAction.REHANDSHAKE,
    FrameKind.UNKNOWN_CLIENT: FrameAction.LOG_AND_FORWARD,
    FrameKind.OTHER_ERROR: FrameAction.LOG_AND_FORWARD,
    FrameKind.MESSAGE: FrameAction.FORWARD,
}


def classify_frame(frame: dict[str, Any]) -> FrameKind:
    """Classify one inbound Bayeux frame; checks run in priority order."""
    error = frame.get("error")
    if not error:
        return FrameKind.MESSAGE
    if frame.get("channel") == META_HANDSHAKE:
        return FrameKind.HANDSHAKE_ERROR
    if error == ERROR_AUTH_INVALID:
        return FrameKind.AUTH_ERROR
    advice = frame.get("advice") or {}
    if advice.get("reconnect") == "handshake":
        return FrameKind.REHANDSHAKE_ADVICE
    if error == ERROR_UNKNOWN_CLIENT_ID:
        return FrameKind.UNKNOWN_CLIENT
    return FrameKind.OTHER_ERROR


@dataclass
class Advice:
    """Accumulated server advice; fields are only overwritten when present."""

    reconnect: str = "retry"
    interval_ms: int = 0
    timeout_ms: int = 110_000

    def update(self, advice: Optional[dict[str, Any]]) -> None:
        if not advice:
            return
        if advice.get("reconnect") in ("retry", "handshake", "none"):
            self.reconnect = advice["reconnect"]
        if isinstance(advice.get("interval"), (int, float)):
            self.interval_ms = int(advice["interval"])
        if isinstance(advice.get("timeout"), (int, float)):
            self.timeout_ms = int(advice["timeout"])


def stream_url(instance_url: str, api_version: str) -> str:
    return "/".join([instance_url.rstrip("/"), "cometd", api_version])


def run_ids_match(event_run_id: str, awaited_run_id: Optional[str]) -> bool:
    """Compare the first 14 chars so 15 and 18 char forms of an id match."""
    if len(event_run_id) not in VALID_ID_LENGTHS:
        return False
    if not awaited_run_id:
        return True
    return (
        event_run_id[:RUN_ID_MATCH_LENGTH] == awaited_run_id[:RUN_ID_MATCH_LENGTH]
    )


def event_run_id(message: dict[str, Any]) -> Optional[str]:
    """Run id carried by a TestResult event (`{event, sobject: {Id}}`)."""
    sobject = message.get("sobject") or {}
    return sobject.get("Id")
