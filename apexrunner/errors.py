"""
Error taxonomy for apexrunner.

Goal: callers see one family of exceptions regardless of whether a failure
came from the streaming layer, the query layer or the submit request.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from apexrunner.config import settings

logger = logging.getLogger(__name__)


class ApexRunnerError(Exception):
    """Base class for every error raised to apexrunner callers."""

    code = "APEX_RUNNER_ERROR"

    def __init__(self, message: str, *, test_run_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.test_run_id = test_run_id


class AuthError(ApexRunnerError):
    """No access token is available, or it expired and could not be refreshed."""

    code = "AUTH_ERROR"


class HandshakeError(ApexRunnerError):
    """The streaming server rejected the Bayeux handshake."""

    code = "HANDSHAKE_ERROR"


class InvalidRunIdError(ApexRunnerError):
    code = "INVALID_RUN_ID"

    def __init__(self, test_run_id: str) -> None:
        super().__init__(
            f"Invalid test run id: {test_run_id!r}. A test run id is 15 or 18 "
            "characters long and starts with '707'.",
            test_run_id=test_run_id,
        )


class NoResultsError(ApexRunnerError):
    """The server returned zero rows for a run that should exist."""

    code = "NO_RESULTS"


class UnsupportedResultFormatError(ApexRunnerError):
    code = "UNSUPPORTED_RESULT_FORMAT"


class TransportError(ApexRunnerError):
    """Network or HTTP failure not otherwise classified."""

    code = "TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        test_run_id: str | None = None,
    ) -> None:
        super().__init__(message, test_run_id=test_run_id)
        self.status_code = status_code
        self.error_code = error_code


class RunCancelledError(ApexRunnerError):
    """The run was cancelled through its cancellation token."""

    code = "RUN_CANCELLED"


@dataclass(frozen=True, slots=True)
class TransportFailure:
    code: str
    message: str
    hint: str | None = None
    debug: str | None = None


def _maybe_debug(exc: BaseException) -> str | None:
    if settings.APP_DEBUG:
        return str(exc)
    return None


def classify_transport_error(exc: BaseException) -> TransportFailure | None:
    """
    Classify connectivity failures into user-actionable errors.

    Uses string matching because the failures arrive both as httpx exceptions
    and as platform error payloads that were already flattened into text.
    """
    lower = str(exc).lower()

    if "invalid_session_id" in lower or "session expired" in lower:
        return TransportFailure(
            code="SESSION_EXPIRED",
            message="The org session expired or is invalid.",
            hint="Re-authenticate to the org, then retry.",
            debug=_maybe_debug(exc),
        )

    if "ip restricted" in lower or "login_must_use_security_token" in lower:
        return TransportFailure(
            code="ORG_ACCESS_BLOCKED",
            message="Org access is blocked by login IP restrictions.",
            hint="Connect from an allowed network (or relax the IP range), then retry.",
            debug=_maybe_debug(exc),
        )

    if any(
        marker in lower
        for marker in ("etimedout", "econnreset", "enotfound", "timed out", "connection refused")
    ):
        return TransportFailure(
            code="CONNECTION_FAILED",
            message="Failed to reach the org.",
            hint="Check network access and the instance URL, then retry.",
            debug=_maybe_debug(exc),
        )

    return None


_UNSUPPORTED_SOBJECT = re.compile(r"\bsObject type [\"'](.*?)[\"'] is not supported\b")


def format_test_errors(exc: BaseException) -> ApexRunnerError:
    """
    Convert any exception raised while running tests into an ApexRunnerError.

    Domain errors pass through; unsupported-sObject failures (usually a missing
    permission or an org without Apex) are rewritten into a readable message.
    """
    if isinstance(exc, ApexRunnerError):
        message = exc.message
    else:
        message = str(exc)

    match = _UNSUPPORTED_SOBJECT.search(message)
    if match and match.group(1):
        rewritten = (
            f"Querying the {match.group(1)} object failed. Verify that the user "
            f"can access Apex test records in this org. {message}"
        )
        if isinstance(exc, ApexRunnerError):
            exc.message = rewritten
            exc.args = (rewritten,)
            return exc
        return TransportError(rewritten)

    if isinstance(exc, ApexRunnerError):
        return exc

    failure = classify_transport_error(exc)
    if failure is not None:
        logger.debug("Classified transport failure %s: %s", failure.code, exc)
        return TransportError(
            f"{failure.message} {failure.hint or ''}".strip(),
            error_code=failure.code,
        )
    return TransportError(message or exc.__class__.__name__)
