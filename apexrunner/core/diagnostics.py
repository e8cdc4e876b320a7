"""
Result transformation.

Pure functions that turn raw platform rows into the normalized records of a
TestResult: diagnostics parsed out of stack traces, per-run counters, and
setup methods split away from the real tests.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple, Union

from apexrunner.models.test_result import (
    ApexClassInfo,
    ApexDiagnostic,
    ApexTestResultData,
    ApexTestResultOutcome,
    ApexTestResultRecord,
    ApexTestSetupData,
    QueryResult,
    SyncTestFailure,
    SyncTestResult,
    SyncTestSuccess,
    TestResult,
)

_LINE_COLUMN = re.compile(r"(line (\d+), column (\d+))")


def _diagnostic(message: Optional[str], stack_trace: Optional[str]) -> ApexDiagnostic:
    match = _LINE_COLUMN.search(stack_trace) if stack_trace else None
    class_name = None
    if stack_trace:
        parts = stack_trace.split(".")
        class_name = parts[1] if len(parts) > 1 else None
    return ApexDiagnostic(
        exception_message=message,
        exception_stack_trace=stack_trace,
        class_name=class_name,
        compile_problem="",
        line_number=int(match.group(2)) if match else None,
        column_number=int(match.group(3)) if match else None,
    )


def get_async_diagnostic(record: ApexTestResultRecord) -> ApexDiagnostic:
    return _diagnostic(record.message, record.stack_trace)


def get_sync_diagnostic(failure: SyncTestFailure) -> ApexDiagnostic:
    return _diagnostic(failure.message, failure.stack_trace)


@dataclass
class AsyncTestResults:
    class_ids: Set[str] = field(default_factory=set)
    tests: List[ApexTestResultData] = field(default_factory=list)
    passed: int = 0
    failed: int = 0
    skipped: int = 0


def build_async_test_results(pages: Iterable[QueryResult]) -> AsyncTestResults:
    """
    Normalize every ApexTestResult row and count outcomes.

    CompileFail counts as a failure. The class-id set feeds the per-class
    coverage query.
    """
    out = AsyncTestResults()
    for page in pages:
        for raw in page.records:
            item = ApexTestResultRecord.model_validate(raw)
            if item.outcome == ApexTestResultOutcome.PASS:
                out.passed += 1
            elif item.outcome in (
                ApexTestResultOutcome.FAIL,
                ApexTestResultOutcome.COMPILE_FAIL,
            ):
                out.failed += 1
            elif item.outcome == ApexTestResultOutcome.SKIP:
                out.skipped += 1

            apex_class = item.apex_class
            out.class_ids.add(apex_class.id)
            # FullName can only be queried for single-record results, so build it
            class_full_name = (
                f"{apex_class.namespace_prefix}.{apex_class.name}"
                if apex_class.namespace_prefix
                else apex_class.name
            )
            diagnostic = (
                get_async_diagnostic(item) if item.message or item.stack_trace else None
            )
            out.tests.append(
                ApexTestResultData(
                    id=item.id,
                    queue_item_id=item.queue_item_id,
                    stack_trace=item.stack_trace,
                    message=item.message,
                    async_apex_job_id=item.async_apex_job_id,
                    method_name=item.method_name,
                    outcome=item.outcome,
                    apex_log_id=item.apex_log_id,
                    apex_class=ApexClassInfo(
                        id=apex_class.id,
                        name=apex_class.name,
                        namespace_prefix=apex_class.namespace_prefix,
                        full_name=class_full_name,
                    ),
                    run_time=item.run_time or 0,
                    test_timestamp=item.test_timestamp,
                    full_name=f"{class_full_name}.{item.method_name}",
                    diagnostic=diagnostic,
                    is_test_setup=item.is_test_setup,
                )
            )
    return out


def _sync_test(
    item: Union[SyncTestSuccess, SyncTestFailure],
    result: SyncTestResult,
    outcome: ApexTestResultOutcome,
) -> ApexTestResultData:
    # Failures come back with the managed-package separator, successes with a dot.
    if item.namespace:
        prefix = (
            f"{item.namespace}__"
            if outcome == ApexTestResultOutcome.FAIL
            else f"{item.namespace}."
        )
    else:
        prefix = ""

    message = getattr(item, "message", None)
    stack_trace = getattr(item, "stack_trace", None)
    diagnostic = None
    if outcome == ApexTestResultOutcome.FAIL and (message or stack_trace):
        diagnostic = get_sync_diagnostic(item)  # type: ignore[arg-type]

    return ApexTestResultData(
        id="",
        queue_item_id="",
        stack_trace=stack_trace or "",
        message=message or "",
        async_apex_job_id="",
        method_name=item.method_name,
        outcome=outcome,
        apex_log_id=result.apex_log_id,
        apex_class=ApexClassInfo(
            id=item.id,
            name=item.name,
            namespace_prefix=item.namespace,
            full_name=f"{prefix}{item.name}",
        ),
        run_time=item.time or 0,
        test_timestamp="",
        full_name=f"{prefix}{item.name}.{item.method_name}",
        diagnostic=diagnostic,
        is_test_setup=result.is_test_setup,
    )


def build_sync_test_results(
    result: SyncTestResult,
) -> Tuple[Set[str], List[ApexTestResultData]]:
    """Normalize the inline success/failure lists of a synchronous run."""
    class_ids: Set[str] = set()
    tests: List[ApexTestResultData] = []
    for success in result.successes:
        class_ids.add(success.id)
        tests.append(_sync_test(success, result, ApexTestResultOutcome.PASS))
    for failure in result.failures:
        class_ids.add(failure.id)
        tests.append(_sync_test(failure, result, ApexTestResultOutcome.FAIL))
    return class_ids, tests


def transform_test_result(raw: TestResult) -> TestResult:
    """
    Move `@testSetup` methods out of `tests` and into `setup`.

    The summary gains `testSetupTimeInMs` (sum of setup run times) and
    `testTotalTimeInMs` becomes execution time plus setup time.
    """
    tests: List[ApexTestResultData] = []
    setup: List[ApexTestSetupData] = []
    for test in raw.tests:
        if test.is_test_setup:
            setup.append(
                ApexTestSetupData(
                    id=test.id,
                    stack_trace=test.stack_trace,
                    message=test.message,
                    async_apex_job_id=test.async_apex_job_id,
                    method_name=test.method_name,
                    apex_log_id=test.apex_log_id,
                    apex_class=test.apex_class,
                    test_setup_time_in_ms=test.run_time,
                    test_timestamp=test.test_timestamp,
                    full_name=test.full_name,
                    diagnostic=test.diagnostic,
                )
            )
        else:
            tests.append(test.model_copy(update={"is_test_setup": None}))

    setup_time = sum(s.test_setup_time_in_ms for s in setup)
    summary = raw.summary.model_copy(
        update={
            "test_setup_time_in_ms": setup_time,
            "test_total_time_in_ms": raw.summary.test_execution_time_in_ms + setup_time,
        }
    )
    return raw.model_copy(
        update={"summary": summary, "tests": tests, "setup": setup or None}
    )
