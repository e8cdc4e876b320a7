"""
Data models for apexrunner.

This package contains Pydantic models for:
- Run requests (test levels, classes, suites, explicit test items)
- Raw platform records and the structured test result
- Progress events
"""

from apexrunner.models.test_config import (
    TestLevel,
    ResultFormat,
    TestItem,
    TestRunRequest,
)

from apexrunner.models.test_result import (
    ACTIVE_QUEUE_STATUSES,
    FINISHED_RUN_STATUSES,
    ApexTestQueueItemStatus,
    ApexTestRunResultStatus,
    ApexTestResultOutcome,
    QueryResult,
    ApexTestQueueItemRecord,
    ApexTestQueueItem,
    ApexTestRunResult,
    ApexClassRecord,
    ApexTestResultRecord,
    CoverageLines,
    ApexCodeCoverageRecord,
    ApexCodeCoverageAggregateRecord,
    SyncTestSuccess,
    SyncTestFailure,
    SyncTestResult,
    ApexDiagnostic,
    ApexClassInfo,
    PerClassCoverage,
    CodeCoverageResult,
    ApexTestResultData,
    ApexTestSetupData,
    TestRunSummary,
    TestResult,
    TestRunIdResult,
    AsyncTestRun,
)

from apexrunner.models.progress import (
    StreamingClientProgress,
    TestQueueProgress,
    FormatTestResultProgress,
    AbortTestRunProgress,
    ProgressEvent,
    Progress,
)

__all__ = [
    # test_config
    "TestLevel",
    "ResultFormat",
    "TestItem",
    "TestRunRequest",
    # test_result
    "ACTIVE_QUEUE_STATUSES",
    "FINISHED_RUN_STATUSES",
    "ApexTestQueueItemStatus",
    "ApexTestRunResultStatus",
    "ApexTestResultOutcome",
    "QueryResult",
    "ApexTestQueueItemRecord",
    "ApexTestQueueItem",
    "ApexTestRunResult",
    "ApexClassRecord",
    "ApexTestResultRecord",
    "CoverageLines",
    "ApexCodeCoverageRecord",
    "ApexCodeCoverageAggregateRecord",
    "SyncTestSuccess",
    "SyncTestFailure",
    "SyncTestResult",
    "ApexDiagnostic",
    "ApexClassInfo",
    "PerClassCoverage",
    "CodeCoverageResult",
    "ApexTestResultData",
    "ApexTestSetupData",
    "TestRunSummary",
    "TestResult",
    "TestRunIdResult",
    "AsyncTestRun",
    # progress
    "StreamingClientProgress",
    "TestQueueProgress",
    "FormatTestResultProgress",
    "AbortTestRunProgress",
    "ProgressEvent",
    "Progress",
]
