"""
Test Run Orchestrator

Drives Apex test runs end to end:
- submits the run and races the streaming subscription against the submit
- wires cooperative cancellation (abort queue items, then disconnect)
- assembles the structured TestResult, with optional code coverage
- persists the raw result in the background
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any, Callable, Optional, Union

from apexrunner.core.cancellation import CancellationToken, is_cancelled
from apexrunner.core.code_coverage import CodeCoverage
from apexrunner.core.diagnostics import (
    build_async_test_results,
    build_sync_test_results,
    transform_test_result,
)
from apexrunner.core.query_batcher import fetch_all, query_in_batches
from apexrunner.core.result_writer import RawResultWriter
from apexrunner.core.utils import (
    calculate_percentage,
    current_time_ms,
    elapsed_time,
    format_start_time,
    is_valid_test_run_id,
)
from apexrunner.errors import (
    InvalidRunIdError,
    NoResultsError,
    RunCancelledError,
    format_test_errors,
)
from apexrunner.models.progress import (
    AbortTestRunProgress,
    FormatTestResultProgress,
    Progress,
    report,
)
from apexrunner.models.test_config import TestRunRequest
from apexrunner.models.test_result import (
    FINISHED_RUN_STATUSES,
    ApexTestQueueItemStatus,
    ApexTestRunResult,
    ApexTestRunResultStatus,
    AsyncTestRun,
    SyncTestResult,
    TestResult,
    TestRunIdResult,
    TestRunSummary,
)
from apexrunner.streaming.client import StreamingClient

logger = logging.getLogger(__name__)

RUN_SUMMARY_QUERY = (
    "SELECT AsyncApexJobId, Status, ClassesCompleted, ClassesEnqueued, "
    "MethodsEnqueued, StartTime, EndTime, TestTime, UserId "
    "FROM ApexTestRunResult WHERE AsyncApexJobId = '%s'"
)

TEST_RESULT_QUERY = (
    "SELECT Id, QueueItemId, StackTrace, Message, RunTime, TestTimestamp, "
    "AsyncApexJobId, MethodName, Outcome, ApexLogId, ApexClass.Id, "
    "ApexClass.Name, ApexClass.NamespacePrefix "
    "FROM ApexTestResult WHERE QueueItemId IN (%s)"
)

ABORT_QUEUE_ITEM_QUERY = (
    "SELECT Id, Status FROM ApexTestQueueItem WHERE ParentJobId = '%s'"
)

StreamingClientFactory = Callable[[Any, Optional[Progress]], StreamingClient]


def derive_outcome(failed: int, passed: int, platform_status: str) -> str:
    """Failed beats everything, no passes means Skipped, Completed reads as Passed."""
    if failed > 0:
        return ApexTestRunResultStatus.FAILED.value
    if passed == 0:
        return ApexTestRunResultStatus.SKIPPED.value
    if platform_status == ApexTestRunResultStatus.COMPLETED.value:
        return ApexTestRunResultStatus.PASSED.value
    return platform_status


class TestRunOrchestrator:
    """Runs Apex tests against one org connection."""

    __test__ = False

    def __init__(
        self,
        connection: Any,
        *,
        streaming_client_factory: Optional[StreamingClientFactory] = None,
        raw_result_writer: Optional[RawResultWriter] = None,
        max_query_length: Optional[int] = None,
    ) -> None:
        self.connection = connection
        self.code_coverage = CodeCoverage(connection, max_query_length)
        self.max_query_length = max_query_length
        self._client_factory = streaming_client_factory or (
            lambda conn, progress: StreamingClient(conn, progress)
        )
        self._raw_result_writer = raw_result_writer
        self._background_tasks: set[asyncio.Task] = set()

    def _track_task(self, task: asyncio.Task) -> None:
        self._background_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background_tasks.discard(task)
            # Always retrieve exceptions so asyncio doesn't emit
            # "Task exception was never retrieved" warnings.
            try:
                exc = t.exception()
            except asyncio.CancelledError:
                return
            if exc is not None:
                logger.warning("Background task failed: %s", exc, exc_info=exc)

        task.add_done_callback(_done)

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending raw-result writes (used on shutdown and in tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _submit_action(self, request: TestRunRequest, synchronous: bool = False):
        endpoint = "runTestsSynchronous" if synchronous else "runTestsAsynchronous"

        async def submit() -> Any:
            url = f"{self.connection.tooling_base_url}/{endpoint}"
            logger.info("Submitting test run to %s", endpoint)
            return await self.connection.request(
                "POST",
                url,
                json=request.to_payload(),
                headers={"content-type": "application/json"},
            )

        return submit

    @elapsed_time()
    async def run_tests(
        self,
        request: TestRunRequest,
        code_coverage: bool = False,
        exit_on_test_run_id: bool = False,
        progress: Optional[Progress] = None,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> Union[TestResult, TestRunIdResult]:
        """
        Submit an asynchronous run and wait for it to finish.

        Returns TestRunIdResult when `exit_on_test_run_id` is set or when
        `timeout` (seconds) elapses first; the run can be resumed later with
        `report_async_results`. Raises RunCancelledError when `token` is
        cancelled while waiting.
        """
        client: Optional[StreamingClient] = None
        submitted = False
        try:
            client = self._client_factory(self.connection, progress)
            await client.init()
            await client.handshake()

            if token is not None:

                async def _on_cancel() -> None:
                    if not submitted:
                        logger.info("Cancelled before a test run was submitted")
                        await client.disconnect()
                        return
                    try:
                        test_run_id = await client.wait_for_test_run_id()
                    except Exception as e:
                        logger.info("No test run to abort, submit failed: %s", e)
                        await client.disconnect()
                        return
                    await self.abort_test_run(test_run_id, progress)
                    await client.disconnect()

                token.on_cancellation_requested(_on_cancel)

            if is_cancelled(token):
                await client.disconnect()
                raise RunCancelledError("Test run was cancelled before submission")

            submit = self._submit_action(request)
            submitted = True

            if exit_on_test_run_id:
                test_run_id = await client.submit(submit)
                await client.disconnect()
                return TestRunIdResult(test_run_id=test_run_id)

            command_start = current_time_ms()
            run = await client.subscribe(submit, timeout=timeout)
            if isinstance(run, TestRunIdResult):
                return run

            summary = await self.check_run_status(run.run_id, progress)
            result = await self.format_async_results(
                run, command_start, code_coverage, summary, progress
            )
            self._schedule_raw_write(result, run.run_id)
            return result
        except Exception as e:
            formatted = format_test_errors(e)
            if formatted is e:
                raise
            raise formatted from e
        finally:
            if client is not None and not client.has_disconnected:
                await client.disconnect()

    @elapsed_time()
    async def report_async_results(
        self,
        test_run_id: str,
        code_coverage: bool = False,
        token: Optional[CancellationToken] = None,
        progress: Optional[Progress] = None,
    ) -> Union[TestResult, TestRunIdResult]:
        """
        Resume waiting on an already submitted run and build its result.

        A run that is already finished is read straight from its queue;
        otherwise the stream is subscribed with the known id. Returns
        TestRunIdResult again if the subscription times out.
        """
        if not is_valid_test_run_id(test_run_id):
            raise InvalidRunIdError(test_run_id)

        client: Optional[StreamingClient] = None
        try:
            client = self._client_factory(self.connection, progress)
            await client.init()
            await client.handshake()

            if token is not None:
                token.on_cancellation_requested(client.disconnect)

            command_start = current_time_ms()
            summary = await self.check_run_status(test_run_id, progress)
            queue_item = None
            if summary.status in FINISHED_RUN_STATUSES:
                queue_item = await client.handler(run_id=test_run_id)
            if queue_item is None:
                run = await client.subscribe(test_run_id=test_run_id)
                if isinstance(run, TestRunIdResult):
                    return run
                queue_item = run.queue_item
                summary = await self.check_run_status(test_run_id, progress)

            if is_cancelled(token):
                raise RunCancelledError("Test run was cancelled", test_run_id=test_run_id)

            result = await self.format_async_results(
                AsyncTestRun(run_id=test_run_id, queue_item=queue_item),
                command_start,
                code_coverage,
                summary,
                progress,
            )
            self._schedule_raw_write(result, test_run_id)
            return result
        except Exception as e:
            formatted = format_test_errors(e)
            if formatted is e:
                raise
            raise formatted from e
        finally:
            if client is not None and not client.has_disconnected:
                await client.disconnect()

    # ------------------------------------------------------------------
    # Status and abort
    # ------------------------------------------------------------------

    @elapsed_time()
    async def check_run_status(
        self, test_run_id: str, progress: Optional[Progress] = None
    ) -> ApexTestRunResult:
        """Fetch the run summary; validates the id before any request."""
        if not is_valid_test_run_id(test_run_id):
            raise InvalidRunIdError(test_run_id)

        report(
            progress,
            FormatTestResultProgress(
                value="retrievingTestRunSummary",
                message="Retrieving test run summary",
            ),
        )
        result = await self.connection.query(
            RUN_SUMMARY_QUERY % test_run_id, tooling=True
        )
        records = result.get("records") or []
        if not records:
            raise NoResultsError(
                f"No test run summary found for test run {test_run_id}",
                test_run_id=test_run_id,
            )
        return ApexTestRunResult.model_validate(records[0])

    async def abort_test_run(
        self, test_run_id: str, progress: Optional[Progress] = None
    ) -> None:
        report(
            progress,
            AbortTestRunProgress(
                value="abortingTestRun",
                message=f"Aborting test run {test_run_id}",
                test_run_id=test_run_id,
            ),
        )

        page = await fetch_all(self.connection, ABORT_QUEUE_ITEM_QUERY % test_run_id)
        records = [
            {"Id": record["Id"], "Status": ApexTestQueueItemStatus.ABORTED.value}
            for record in page.records
        ]
        await self.connection.update("ApexTestQueueItem", records, tooling=True)
        logger.info("Requested abort of %d queue items for %s", len(records), test_run_id)

        report(
            progress,
            AbortTestRunProgress(
                value="abortingTestRunRequested",
                message=f"Abort requested for test run {test_run_id}",
                test_run_id=test_run_id,
            ),
        )

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _base_summary(self, **fields: Any) -> TestRunSummary:
        return TestRunSummary(
            hostname=getattr(self.connection, "instance_url", None)
            or socket.gethostname(),
            org_id=getattr(self.connection, "org_id", None),
            username=getattr(self.connection, "username", None),
            **fields,
        )

    @elapsed_time()
    async def format_async_results(
        self,
        async_run: AsyncTestRun,
        command_start: int,
        code_coverage: bool = False,
        summary: Optional[ApexTestRunResult] = None,
        progress: Optional[Progress] = None,
    ) -> TestResult:
        if summary is None:
            summary = await self.check_run_status(async_run.run_id, progress)

        pages = await query_in_batches(
            self.connection,
            [record.id for record in async_run.queue_item.records],
            TEST_RESULT_QUERY,
            self.max_query_length,
        )
        built = build_async_test_results(pages)
        total = len(built.tests)

        result = TestResult(
            summary=self._base_summary(
                outcome=derive_outcome(built.failed, built.passed, summary.status.value),
                tests_ran=total,
                passing=built.passed,
                failing=built.failed,
                skipped=built.skipped,
                pass_rate=calculate_percentage(built.passed, total),
                fail_rate=calculate_percentage(built.failed, total),
                skip_rate=calculate_percentage(built.skipped, total),
                test_start_time=format_start_time(summary.start_time),
                test_execution_time_in_ms=summary.test_time or 0,
                test_total_time_in_ms=summary.test_time or 0,
                command_time_in_ms=current_time_ms() - command_start,
                test_run_id=async_run.run_id,
                user_id=summary.user_id,
            ),
            tests=built.tests,
        )

        if code_coverage:
            await self._add_code_coverage(result, built.class_ids, progress)
        return transform_test_result(result)

    async def _add_code_coverage(
        self,
        result: TestResult,
        test_class_ids: set[str],
        progress: Optional[Progress] = None,
    ) -> None:
        per_class = await self.code_coverage.get_per_class_coverage(test_class_ids)
        covered_ids: set[str] = set()
        for test in result.tests:
            coverage = per_class.get(f"{test.apex_class.id}-{test.method_name}")
            # skipped tests have no coverage rows
            if coverage:
                covered_ids.update(c.apex_class_or_trigger_id for c in coverage)
                test.per_class_coverage = coverage

        report(
            progress,
            FormatTestResultProgress(
                value="queryingForAggregateCodeCoverage",
                message="Querying for aggregate code coverage results",
            ),
        )
        aggregate = await self.code_coverage.get_aggregate_coverage(covered_ids)
        result.codecoverage = aggregate.records
        result.summary.total_lines = aggregate.total_lines
        result.summary.covered_lines = aggregate.covered_lines
        result.summary.test_run_coverage = aggregate.percentage
        result.summary.org_wide_coverage = await self.code_coverage.get_org_wide_coverage()

    def _schedule_raw_write(self, result: TestResult, test_run_id: str) -> None:
        if self._raw_result_writer is None:
            self._raw_result_writer = RawResultWriter()
        future = self._raw_result_writer.schedule(result, test_run_id)
        self._track_task(asyncio.ensure_future(future))

    # ------------------------------------------------------------------
    # Synchronous runs
    # ------------------------------------------------------------------

    @elapsed_time()
    async def run_tests_synchronous(
        self,
        request: TestRunRequest,
        code_coverage: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> TestResult:
        """Run tests through runTestsSynchronous and format the inline results."""
        try:
            start = current_time_ms()
            response = await self._submit_action(request, synchronous=True)()
            if is_cancelled(token):
                raise RunCancelledError("Test run was cancelled")
            return await self.format_sync_results(
                SyncTestResult.model_validate(response or {}), start, code_coverage
            )
        except Exception as e:
            formatted = format_test_errors(e)
            if formatted is e:
                raise
            raise formatted from e

    async def format_sync_results(
        self, sync_result: SyncTestResult, start: int, code_coverage: bool = False
    ) -> TestResult:
        class_ids, tests = build_sync_test_results(sync_result)
        failed = len(sync_result.failures)
        passed = len(sync_result.successes)
        ran = sync_result.num_tests_run

        result = TestResult(
            summary=self._base_summary(
                outcome=(
                    ApexTestRunResultStatus.PASSED.value
                    if failed == 0
                    else ApexTestRunResultStatus.FAILED.value
                ),
                tests_ran=ran,
                passing=passed,
                failing=failed,
                skipped=0,
                pass_rate=calculate_percentage(passed, ran),
                fail_rate=calculate_percentage(failed, ran),
                skip_rate=calculate_percentage(0, ran),
                test_start_time=format_start_time(start),
                test_execution_time_in_ms=sync_result.total_time or 0,
                test_total_time_in_ms=sync_result.total_time or 0,
                command_time_in_ms=current_time_ms() - start,
                test_run_id="",
                user_id=getattr(self.connection, "user_id", None),
            ),
            tests=tests,
        )
        if code_coverage:
            await self._add_code_coverage(result, class_ids)
        return transform_test_result(result)
