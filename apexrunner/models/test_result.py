"""
Test Result Models

Defines Pydantic models for:
- Raw platform records (queue items, run summaries, per-method results,
  coverage rows), parsed from PascalCase tooling API payloads
- The structured result handed to report formatters (camelCase on the wire)
"""

from enum import Enum
from typing import Any, ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel, to_pascal


class PlatformRecord(BaseModel):
    """Base for records read from the tooling API (PascalCase field names)."""

    model_config = ConfigDict(
        alias_generator=to_pascal, populate_by_name=True, extra="ignore"
    )


class ResultModel(BaseModel):
    """Base for structured output (camelCase field names)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Statuses
# =============================================================================


class ApexTestQueueItemStatus(str, Enum):
    HOLDING = "Holding"
    QUEUED = "Queued"
    PREPARING = "Preparing"
    PROCESSING = "Processing"
    ABORTED = "Aborted"
    COMPLETED = "Completed"
    FAILED = "Failed"


ACTIVE_QUEUE_STATUSES = frozenset(
    {
        ApexTestQueueItemStatus.HOLDING,
        ApexTestQueueItemStatus.QUEUED,
        ApexTestQueueItemStatus.PREPARING,
        ApexTestQueueItemStatus.PROCESSING,
    }
)


class ApexTestRunResultStatus(str, Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    ABORTED = "Aborted"
    PASSED = "Passed"
    FAILED = "Failed"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"


FINISHED_RUN_STATUSES = frozenset(
    {
        ApexTestRunResultStatus.ABORTED,
        ApexTestRunResultStatus.FAILED,
        ApexTestRunResultStatus.COMPLETED,
        ApexTestRunResultStatus.PASSED,
        ApexTestRunResultStatus.SKIPPED,
    }
)


class ApexTestResultOutcome(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"
    COMPILE_FAIL = "CompileFail"
    SKIP = "Skip"


# =============================================================================
# Query envelopes and raw records
# =============================================================================


class QueryResult(ResultModel):
    """One page (or the folded whole) of a tooling API query."""

    done: bool = True
    total_size: int = 0
    records: List[Dict[str, Any]] = Field(default_factory=list)
    next_records_url: Optional[str] = None


class ApexTestQueueItemRecord(PlatformRecord):
    id: str
    status: ApexTestQueueItemStatus
    apex_class_id: Optional[str] = None
    test_run_result_id: Optional[str] = None


class ApexTestQueueItem(ResultModel):
    """A single snapshot of every queue item belonging to a run."""

    done: bool = True
    total_size: int = 0
    records: List[ApexTestQueueItemRecord] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not any(r.status in ACTIVE_QUEUE_STATUSES for r in self.records)


class ApexTestRunResult(PlatformRecord):
    """Run-level summary (read only, polled until terminal)."""

    async_apex_job_id: str
    status: ApexTestRunResultStatus
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    test_time: Optional[int] = None
    user_id: Optional[str] = None
    classes_completed: Optional[int] = None
    classes_enqueued: Optional[int] = None
    methods_enqueued: Optional[int] = None


class ApexClassRecord(PlatformRecord):
    id: str
    name: str
    namespace_prefix: Optional[str] = None


class ApexTestResultRecord(PlatformRecord):
    id: str
    queue_item_id: Optional[str] = None
    stack_trace: Optional[str] = None
    message: Optional[str] = None
    async_apex_job_id: Optional[str] = None
    method_name: str
    outcome: ApexTestResultOutcome
    apex_log_id: Optional[str] = None
    is_test_setup: Optional[bool] = None
    apex_class: ApexClassRecord
    run_time: Optional[int] = None
    test_timestamp: Optional[str] = None


class CoverageLines(ResultModel):
    covered_lines: List[int] = Field(default_factory=list)
    uncovered_lines: List[int] = Field(default_factory=list)


class ApexClassOrTriggerRef(PlatformRecord):
    id: str
    name: str


class ApexCodeCoverageRecord(PlatformRecord):
    apex_class_or_trigger: ApexClassOrTriggerRef
    apex_test_class_id: str
    test_method_name: str
    num_lines_covered: int = 0
    num_lines_uncovered: int = 0
    coverage: Optional[CoverageLines] = None


class ApexCodeCoverageAggregateRecord(PlatformRecord):
    apex_class_or_trigger: ApexClassOrTriggerRef
    num_lines_covered: int = 0
    num_lines_uncovered: int = 0
    coverage: Optional[CoverageLines] = None


# =============================================================================
# Synchronous run payloads
# =============================================================================


class SyncTestSuccess(ResultModel):
    id: str
    method_name: str
    name: str
    namespace: Optional[str] = None
    see_all_data: Optional[bool] = None
    time: Optional[int] = None


class SyncTestFailure(SyncTestSuccess):
    message: Optional[str] = None
    stack_trace: Optional[str] = None
    type: Optional[str] = None


class SyncTestResult(ResultModel):
    is_test_setup: Optional[bool] = None
    apex_log_id: Optional[str] = None
    failures: List[SyncTestFailure] = Field(default_factory=list)
    num_failures: int = 0
    num_tests_run: int = 0
    successes: List[SyncTestSuccess] = Field(default_factory=list)
    total_time: Optional[int] = None


# =============================================================================
# Structured output
# =============================================================================


class ApexDiagnostic(ResultModel):
    exception_message: Optional[str] = None
    exception_stack_trace: Optional[str] = None
    class_name: Optional[str] = None
    compile_problem: str = ""
    line_number: Optional[int] = None
    column_number: Optional[int] = None


class ApexClassInfo(ResultModel):
    id: str
    name: str
    namespace_prefix: Optional[str] = None
    full_name: str


class PerClassCoverage(ResultModel):
    apex_class_or_trigger_name: str
    apex_class_or_trigger_id: str
    apex_test_class_id: str
    apex_test_method_name: str
    num_lines_covered: int
    num_lines_uncovered: int
    percentage: str
    coverage: Optional[CoverageLines] = None


class CodeCoverageResult(ResultModel):
    apex_id: str
    name: str
    type: Literal["ApexClass", "ApexTrigger"]
    num_lines_covered: int
    num_lines_uncovered: int
    percentage: str
    covered_lines: List[int] = Field(default_factory=list)
    uncovered_lines: List[int] = Field(default_factory=list)


class ApexTestResultData(ResultModel):
    id: str
    queue_item_id: Optional[str] = None
    stack_trace: Optional[str] = None
    message: Optional[str] = None
    async_apex_job_id: Optional[str] = None
    method_name: str
    outcome: ApexTestResultOutcome
    apex_log_id: Optional[str] = None
    apex_class: ApexClassInfo
    run_time: int = 0
    test_timestamp: Optional[str] = None
    full_name: str
    per_class_coverage: Optional[List[PerClassCoverage]] = None
    diagnostic: Optional[ApexDiagnostic] = None
    # Only set on raw results; setup methods are split out by the transformer.
    is_test_setup: Optional[bool] = None


class ApexTestSetupData(ResultModel):
    id: str
    stack_trace: Optional[str] = None
    message: Optional[str] = None
    async_apex_job_id: Optional[str] = None
    method_name: str
    apex_log_id: Optional[str] = None
    apex_class: ApexClassInfo
    test_setup_time_in_ms: int = 0
    test_timestamp: Optional[str] = None
    full_name: str
    diagnostic: Optional[ApexDiagnostic] = None


class TestRunSummary(ResultModel):
    __test__: ClassVar[bool] = False

    outcome: str
    tests_ran: int
    passing: int
    failing: int
    skipped: int
    pass_rate: str
    fail_rate: str
    skip_rate: str
    test_start_time: Optional[str] = None
    test_execution_time_in_ms: int = 0
    test_total_time_in_ms: int = 0
    test_setup_time_in_ms: Optional[int] = None
    command_time_in_ms: int = 0
    hostname: Optional[str] = None
    org_id: Optional[str] = None
    username: Optional[str] = None
    test_run_id: str = ""
    user_id: Optional[str] = None
    test_run_coverage: Optional[str] = None
    org_wide_coverage: Optional[str] = None
    total_lines: Optional[int] = None
    covered_lines: Optional[int] = None


class TestResult(ResultModel):
    """Canonical structured output handed to report formatters."""

    __test__: ClassVar[bool] = False

    summary: TestRunSummary
    tests: List[ApexTestResultData] = Field(default_factory=list)
    setup: Optional[List[ApexTestSetupData]] = None
    codecoverage: Optional[List[CodeCoverageResult]] = None


class TestRunIdResult(ResultModel):
    """Returned instead of a TestResult when exiting early or timing out."""

    __test__: ClassVar[bool] = False

    test_run_id: Optional[str] = None


class AsyncTestRun(ResultModel):
    run_id: str
    queue_item: ApexTestQueueItem
