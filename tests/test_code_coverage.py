import pytest

from apexrunner.core.code_coverage import CodeCoverage, coverage_type

from conftest import StubConnection, page

TEST_CLASS_ID = "01p000000000001AAA"
CLASS_A = "01p0000000000AAAAA"
TRIGGER_B = "01q0000000000BBBBB"


def _per_class_row(class_or_trigger_id, name, method, covered, uncovered):
    return {
        "ApexTestClassId": TEST_CLASS_ID,
        "ApexClassOrTrigger": {"Id": class_or_trigger_id, "Name": name},
        "TestMethodName": method,
        "NumLinesCovered": covered,
        "NumLinesUncovered": uncovered,
        "Coverage": {"coveredLines": [1, 2], "uncoveredLines": [3]},
    }


def _aggregate_row(class_or_trigger_id, name, covered, uncovered, coverage=None):
    return {
        "ApexClassOrTrigger": {"Id": class_or_trigger_id, "Name": name},
        "NumLinesCovered": covered,
        "NumLinesUncovered": uncovered,
        "Coverage": coverage,
    }


def test_coverage_type_by_id_prefix():
    assert coverage_type(CLASS_A) == "ApexClass"
    assert coverage_type(TRIGGER_B) == "ApexTrigger"


@pytest.mark.asyncio
async def test_per_class_coverage_groups_multiple_classes_per_method():
    conn = StubConnection(
        {
            "FROM ApexCodeCoverage WHERE": page(
                [
                    _per_class_row(CLASS_A, "AccountService", "testCreate", 3, 1),
                    _per_class_row(TRIGGER_B, "AccountTrigger", "testCreate", 1, 1),
                    _per_class_row(CLASS_A, "AccountService", "testDelete", 0, 4),
                ]
            )
        }
    )

    coverage = await CodeCoverage(conn).get_per_class_coverage([TEST_CLASS_ID])

    create = coverage[f"{TEST_CLASS_ID}-testCreate"]
    assert [c.apex_class_or_trigger_id for c in create] == [CLASS_A, TRIGGER_B]
    assert [c.percentage for c in create] == ["75%", "50%"]
    assert create[0].coverage.covered_lines == [1, 2]
    assert coverage[f"{TEST_CLASS_ID}-testDelete"][0].percentage == "0%"


@pytest.mark.asyncio
async def test_per_class_coverage_with_no_ids_skips_query():
    conn = StubConnection()
    assert await CodeCoverage(conn).get_per_class_coverage([]) == {}
    assert conn.queries == []


@pytest.mark.asyncio
async def test_aggregate_coverage_totals_across_batches():
    def respond(soql: str):
        rows = []
        if CLASS_A in soql:
            rows.append(
                _aggregate_row(
                    CLASS_A,
                    "AccountService",
                    6,
                    2,
                    {"coveredLines": [1, 2, 3, 4, 5, 6], "uncoveredLines": [7, 8]},
                )
            )
        if TRIGGER_B in soql:
            rows.append(_aggregate_row(TRIGGER_B, "AccountTrigger", 1, 1))
        return page(rows)

    conn = StubConnection({"FROM ApexCodeCoverageAggregate": respond})
    # small enough that each id gets its own query
    coverage = CodeCoverage(conn, max_query_length=190)

    result = await coverage.get_aggregate_coverage([CLASS_A, TRIGGER_B])

    assert len(conn.queries) == 2
    assert result.total_lines == 10
    assert result.covered_lines == 7
    assert result.percentage == "70%"
    assert result.by_id[CLASS_A].type == "ApexClass"
    assert result.by_id[CLASS_A].uncovered_lines == [7, 8]
    trigger = result.by_id[TRIGGER_B]
    assert trigger.type == "ApexTrigger"
    assert trigger.percentage == "50%"
    assert trigger.covered_lines == []


@pytest.mark.asyncio
async def test_aggregate_coverage_without_ids_queries_whole_table():
    conn = StubConnection(
        {"FROM ApexCodeCoverageAggregate": page([_aggregate_row(CLASS_A, "A", 0, 0)])}
    )

    result = await CodeCoverage(conn).get_aggregate_coverage([])

    assert len(conn.queries) == 1
    assert "WHERE" not in conn.queries[0][0]
    assert result.percentage == "0%"


@pytest.mark.asyncio
async def test_org_wide_coverage():
    conn = StubConnection(
        {"ApexOrgWideCoverage": page([{"PercentCovered": 87}])}
    )
    assert await CodeCoverage(conn).get_org_wide_coverage() == "87%"


@pytest.mark.asyncio
async def test_org_wide_coverage_defaults_to_zero():
    conn = StubConnection()
    assert await CodeCoverage(conn).get_org_wide_coverage() == "0%"
