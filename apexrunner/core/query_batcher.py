"""
Query batching.

Record-id sets can be far larger than a single SOQL statement allows, so ids
are packed greedily into `IN (...)` clauses that keep every rendered query
under the character limit; paginated responses are folded back into one page.
"""

import asyncio
import logging
from typing import Any, Iterable, List, Optional

from apexrunner.config import settings
from apexrunner.models.test_result import QueryResult

logger = logging.getLogger(__name__)


def _quote_ids(ids: Iterable[str]) -> str:
    return ",".join(f"'{record_id}'" for record_id in ids)


def render_query(query_template: str, ids: Iterable[str]) -> str:
    """Substitute the quoted, comma-joined ids for the template's `%s`."""
    return query_template % _quote_ids(ids)


def batch_ids(
    ids: Iterable[str], query_template: str, max_query_length: Optional[int] = None
) -> List[List[str]]:
    """
    Partition `ids` into batches whose rendered query fits `max_query_length`.

    Order is preserved and each batch is filled greedily. An empty input gives
    no batches. Raises ValueError when a single id cannot fit on its own.
    """
    limit = settings.QUERY_CHAR_LIMIT if max_query_length is None else max_query_length
    base_length = len(query_template % "")

    batches: List[List[str]] = []
    current: List[str] = []
    current_length = base_length
    for record_id in ids:
        # quotes, plus a separating comma when the batch is not empty
        added = len(record_id) + 2 + (1 if current else 0)
        if current and current_length + added > limit:
            batches.append(current)
            current = []
            current_length = base_length
            added = len(record_id) + 2
        if current_length + added > limit:
            raise ValueError(
                f"Id {record_id!r} does not fit in a query of at most {limit} characters"
            )
        current.append(record_id)
        current_length += added

    if current:
        batches.append(current)
    return batches


async def fetch_all(connection: Any, query: str, tooling: bool = True) -> QueryResult:
    """Run `query` and follow `nextRecordsUrl` until the result is exhausted."""
    page = await connection.query(query, tooling=tooling)
    records = list(page.get("records") or [])
    while not page.get("done", True) and page.get("nextRecordsUrl"):
        page = await connection.query_more(page["nextRecordsUrl"])
        records.extend(page.get("records") or [])
    return QueryResult(done=True, total_size=len(records), records=records)


async def query_in_batches(
    connection: Any,
    ids: Iterable[str],
    query_template: str,
    max_query_length: Optional[int] = None,
    tooling: bool = True,
) -> List[QueryResult]:
    """Run one fully-fetched query per id batch, concurrently."""
    queries = [
        render_query(query_template, batch)
        for batch in batch_ids(ids, query_template, max_query_length)
    ]
    if len(queries) > 1:
        logger.debug("Split query into %d batches", len(queries))
    return list(
        await asyncio.gather(*(fetch_all(connection, q, tooling=tooling) for q in queries))
    )
