"""
Progress events reported while a test run is driven to completion.

Every event carries a `type` tag so consumers can switch on it without
isinstance checks; `message` is the short machine-readable stage name.
"""

from typing import ClassVar, Literal, Optional, Protocol, Union

from pydantic import BaseModel, Field

from apexrunner.models.test_result import ApexTestQueueItem


class StreamingClientProgress(BaseModel):
    type: Literal["StreamingClientProgress"] = "StreamingClientProgress"
    value: Literal[
        "streamingTransportUp",
        "streamingTransportDown",
        "streamingProcessingTestRun",
    ]
    test_run_id: Optional[str] = Field(None, alias="testRunId")
    message: Optional[str] = None

    model_config = {"populate_by_name": True}


class TestQueueProgress(BaseModel):
    __test__: ClassVar[bool] = False

    type: Literal["TestQueueProgress"] = "TestQueueProgress"
    value: ApexTestQueueItem


class FormatTestResultProgress(BaseModel):
    type: Literal["FormatTestResultProgress"] = "FormatTestResultProgress"
    value: Literal["retrievingTestRunSummary", "queryingForAggregateCodeCoverage"]
    message: Optional[str] = None


class AbortTestRunProgress(BaseModel):
    type: Literal["AbortTestRunProgress"] = "AbortTestRunProgress"
    value: Literal["abortingTestRun", "abortingTestRunRequested"]
    message: Optional[str] = None
    test_run_id: str = Field(alias="testRunId")

    model_config = {"populate_by_name": True}


ProgressEvent = Union[
    StreamingClientProgress,
    TestQueueProgress,
    FormatTestResultProgress,
    AbortTestRunProgress,
]


class Progress(Protocol):
    """Anything with a `report(event)` method can observe a run."""

    def report(self, value: ProgressEvent) -> None: ...


def report(progress: Optional[Progress], value: ProgressEvent) -> None:
    """Report `value` to `progress` when a reporter was supplied."""
    if progress is not None:
        progress.report(value)
