"""
Code coverage aggregation.

Queries per-test-method coverage (ApexCodeCoverage), per-class aggregate
coverage (ApexCodeCoverageAggregate) and the org-wide percentage, batching
the id sets through the query batcher.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from apexrunner.core.constants import CLASS_ID_PREFIX, ORG_WIDE_COVERAGE_QUERY
from apexrunner.core.query_batcher import fetch_all, query_in_batches
from apexrunner.core.utils import calculate_percentage
from apexrunner.models.test_result import (
    ApexCodeCoverageAggregateRecord,
    ApexCodeCoverageRecord,
    CodeCoverageResult,
    CoverageLines,
    PerClassCoverage,
)

logger = logging.getLogger(__name__)

PER_CLASS_COVERAGE_QUERY = (
    "SELECT ApexTestClassId, ApexClassOrTrigger.Id, ApexClassOrTrigger.Name, "
    "TestMethodName, NumLinesCovered, NumLinesUncovered, Coverage "
    "FROM ApexCodeCoverage WHERE ApexTestClassId IN (%s)"
)

AGGREGATE_COVERAGE_QUERY = (
    "SELECT ApexClassOrTrigger.Id, ApexClassOrTrigger.Name, NumLinesCovered, "
    "NumLinesUncovered, Coverage FROM ApexCodeCoverageAggregate"
)
AGGREGATE_COVERAGE_BY_ID_QUERY = (
    AGGREGATE_COVERAGE_QUERY + " WHERE ApexClassorTriggerId IN (%s)"
)


@dataclass
class AggregateCoverage:
    """Aggregate coverage rows plus totals across the whole queried set."""

    records: List[CodeCoverageResult] = field(default_factory=list)
    by_id: Dict[str, CodeCoverageResult] = field(default_factory=dict)
    total_lines: int = 0
    covered_lines: int = 0

    @property
    def percentage(self) -> str:
        return calculate_percentage(self.covered_lines, self.total_lines)


def coverage_type(apex_id: str) -> str:
    return "ApexClass" if apex_id.startswith(CLASS_ID_PREFIX) else "ApexTrigger"


class CodeCoverage:
    def __init__(self, connection: Any, max_query_length: Optional[int] = None):
        self.connection = connection
        self.max_query_length = max_query_length

    async def get_org_wide_coverage(self) -> str:
        """Org-wide coverage percentage; "0%" until the org has coverage data."""
        result = await self.connection.query(ORG_WIDE_COVERAGE_QUERY, tooling=True)
        records = result.get("records") or []
        if not records:
            return "0%"
        return f"{records[0]['PercentCovered']}%"

    async def get_per_class_coverage(
        self, test_class_ids: Iterable[str]
    ) -> Dict[str, List[PerClassCoverage]]:
        """
        Coverage keyed by `<testClassId>-<testMethodName>`.

        A single test method can cover several classes, so each key maps to
        a list with one entry per covered class or trigger.
        """
        ids = list(dict.fromkeys(test_class_ids))
        if not ids:
            return {}

        pages = await query_in_batches(
            self.connection, ids, PER_CLASS_COVERAGE_QUERY, self.max_query_length
        )
        coverage_map: Dict[str, List[PerClassCoverage]] = defaultdict(list)
        for page in pages:
            for raw in page.records:
                item = ApexCodeCoverageRecord.model_validate(raw)
                total = item.num_lines_covered + item.num_lines_uncovered
                key = f"{item.apex_test_class_id}-{item.test_method_name}"
                coverage_map[key].append(
                    PerClassCoverage(
                        apex_class_or_trigger_name=item.apex_class_or_trigger.name,
                        apex_class_or_trigger_id=item.apex_class_or_trigger.id,
                        apex_test_class_id=item.apex_test_class_id,
                        apex_test_method_name=item.test_method_name,
                        num_lines_covered=item.num_lines_covered,
                        num_lines_uncovered=item.num_lines_uncovered,
                        percentage=calculate_percentage(item.num_lines_covered, total),
                        coverage=item.coverage,
                    )
                )
        return dict(coverage_map)

    async def get_aggregate_coverage(
        self, class_ids: Iterable[str]
    ) -> AggregateCoverage:
        """
        Aggregate coverage for `class_ids`, or for every class and trigger in
        the org when no ids are given.
        """
        ids = list(dict.fromkeys(class_ids))
        if ids:
            pages = await query_in_batches(
                self.connection,
                ids,
                AGGREGATE_COVERAGE_BY_ID_QUERY,
                self.max_query_length,
            )
        else:
            pages = [await fetch_all(self.connection, AGGREGATE_COVERAGE_QUERY)]

        result = AggregateCoverage()
        for page in pages:
            for raw in page.records:
                item = ApexCodeCoverageAggregateRecord.model_validate(raw)
                lines = item.coverage or CoverageLines()
                total = item.num_lines_covered + item.num_lines_uncovered
                record = CodeCoverageResult(
                    apex_id=item.apex_class_or_trigger.id,
                    name=item.apex_class_or_trigger.name,
                    type=coverage_type(item.apex_class_or_trigger.id),
                    num_lines_covered=item.num_lines_covered,
                    num_lines_uncovered=item.num_lines_uncovered,
                    percentage=calculate_percentage(item.num_lines_covered, total),
                    covered_lines=lines.covered_lines,
                    uncovered_lines=lines.uncovered_lines,
                )
                result.records.append(record)
                result.by_id[record.apex_id] = record
                result.total_lines += total
                result.covered_lines += item.num_lines_covered

        logger.debug(
            "Aggregate coverage: %d records, %d/%d lines covered",
            len(result.records),
            result.covered_lines,
            result.total_lines,
        )
        return result
