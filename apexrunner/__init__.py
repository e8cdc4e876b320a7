"""
apexrunner: run Apex tests asynchronously or synchronously and collect
structured results with optional code coverage.

    from apexrunner import PlatformConnection, TestRunOrchestrator, TestPayloadBuilder
"""

from apexrunner.connectors import PlatformConnection
from apexrunner.core import (
    CancellationTokenSource,
    TestPayloadBuilder,
    TestRunOrchestrator,
    write_result_files,
)
from apexrunner.errors import (
    ApexRunnerError,
    AuthError,
    HandshakeError,
    InvalidRunIdError,
    NoResultsError,
    RunCancelledError,
    TransportError,
    UnsupportedResultFormatError,
)
from apexrunner.models import ResultFormat, TestLevel, TestResult, TestRunIdResult

__version__ = "0.1.0"

__all__ = [
    "PlatformConnection",
    "CancellationTokenSource",
    "TestPayloadBuilder",
    "TestRunOrchestrator",
    "write_result_files",
    "ApexRunnerError",
    "AuthError",
    "HandshakeError",
    "InvalidRunIdError",
    "NoResultsError",
    "RunCancelledError",
    "TransportError",
    "UnsupportedResultFormatError",
    "ResultFormat",
    "TestLevel",
    "TestResult",
    "TestRunIdResult",
]
