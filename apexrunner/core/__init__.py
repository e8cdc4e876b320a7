"""
Core run machinery: batching, coverage, result transformation, cancellation,
payload building, result files and the run orchestrator.
"""

from .cancellation import CancellationToken, CancellationTokenSource, is_cancelled
from .code_coverage import AggregateCoverage, CodeCoverage
from .diagnostics import (
    build_async_test_results,
    build_sync_test_results,
    get_async_diagnostic,
    get_sync_diagnostic,
    transform_test_result,
)
from .orchestrator import TestRunOrchestrator, derive_outcome
from .payloads import NamespaceInfo, TestPayloadBuilder
from .query_batcher import batch_ids, fetch_all, query_in_batches, render_query
from .result_writer import (
    JsonStreamWriter,
    RawResultWriter,
    iter_json_chunks,
    write_result_files,
)
from .utils import calculate_percentage, is_valid_apex_class_id, is_valid_test_run_id

__all__ = [
    # Cancellation
    "CancellationToken",
    "CancellationTokenSource",
    "is_cancelled",
    # Coverage
    "AggregateCoverage",
    "CodeCoverage",
    # Results
    "build_async_test_results",
    "build_sync_test_results",
    "get_async_diagnostic",
    "get_sync_diagnostic",
    "transform_test_result",
    # Orchestration
    "TestRunOrchestrator",
    "derive_outcome",
    "NamespaceInfo",
    "TestPayloadBuilder",
    # Queries
    "batch_ids",
    "fetch_all",
    "query_in_batches",
    "render_query",
    # Files
    "JsonStreamWriter",
    "RawResultWriter",
    "iter_json_chunks",
    "write_result_files",
    # Utils
    "calculate_percentage",
    "is_valid_apex_class_id",
    "is_valid_test_run_id",
]
