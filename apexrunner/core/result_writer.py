"""
Result file writing.

Test results for large orgs can hold hundreds of thousands of records, so JSON
is produced as a stream of small chunks and flushed to disk in buffer-sized
writes instead of rendering the whole document in memory first.

Provides:
- iter_json_chunks(): incremental JSON encoding of models, dicts and lists
- JsonStreamWriter: buffered file writer driven by SerializerConfig
- RawResultWriter: background (thread pool) write of `<tmp>/<runId>/rawResults.json`
- write_result_files(): the report files for a finished run
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from apexrunner.config import SerializerConfig, settings
from apexrunner.core.constants import RAW_RESULTS_FILENAME, TEST_RUN_ID_FILENAME
from apexrunner.errors import UnsupportedResultFormatError
from apexrunner.models.test_config import ResultFormat
from apexrunner.models.test_result import TestResult, TestRunIdResult

logger = logging.getLogger(__name__)

Formatter = Callable[[TestResult], str]

_FORMAT_FILENAMES = {
    ResultFormat.JSON: "test-result-{run_id}.json",
    ResultFormat.TAP: "test-result-{run_id}-tap.txt",
    ResultFormat.JUNIT: "test-result-{run_id}-junit.xml",
}
_CODE_COVERAGE_FILENAME = "test-result-{run_id}-codecoverage.json"


def _model_items(model: BaseModel) -> Iterator[tuple[str, Any]]:
    """Yield (alias, value) for every set field, skipping None."""
    for name, info in type(model).model_fields.items():
        value = getattr(model, name)
        if value is None:
            continue
        yield (info.alias or name), value


def iter_json_chunks(
    value: Any, indent: Optional[int] = None, level: int = 0
) -> Iterator[str]:
    """
    Encode `value` as JSON, one small chunk at a time.

    Pydantic models are walked field by field (aliases as keys, None fields
    dropped) so no intermediate dict of the whole result is built.
    """
    if isinstance(value, BaseModel):
        yield from _iter_object(_model_items(value), indent, level)
    elif isinstance(value, Mapping):
        yield from _iter_object(
            ((str(k), v) for k, v in value.items() if v is not None), indent, level
        )
    elif isinstance(value, (list, tuple, set, frozenset)):
        yield from _iter_array(value, indent, level)
    elif isinstance(value, Enum):
        yield json.dumps(value.value)
    else:
        yield json.dumps(value)


def _newline(indent: Optional[int], level: int) -> str:
    if indent is None:
        return ""
    return "\n" + " " * (indent * level)


def _iter_object(items, indent: Optional[int], level: int) -> Iterator[str]:
    yield "{"
    separator = ": " if indent is not None else ":"
    first = True
    for key, item in items:
        if not first:
            yield ","
        first = False
        yield _newline(indent, level + 1)
        yield json.dumps(key) + separator
        yield from iter_json_chunks(item, indent, level + 1)
    if not first:
        yield _newline(indent, level)
    yield "}"


def _iter_array(values, indent: Optional[int], level: int) -> Iterator[str]:
    yield "["
    first = True
    for item in values:
        if not first:
            yield ","
        first = False
        yield _newline(indent, level + 1)
        yield from iter_json_chunks(item, indent, level + 1)
    if not first:
        yield _newline(indent, level)
    yield "]"


class JsonStreamWriter:
    """Write JSON chunks to disk in `buffer_size` character blocks."""

    def __init__(self, config: Optional[SerializerConfig] = None) -> None:
        self.config = config or SerializerConfig.from_settings()

    def write(self, path: Union[str, Path], value: Any) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        buffer: list[str] = []
        buffered = 0
        with target.open("w", encoding="utf-8") as fh:
            for chunk in iter_json_chunks(value, self.config.indent):
                buffer.append(chunk)
                buffered += len(chunk)
                if buffered >= self.config.buffer_size:
                    fh.write("".join(buffer))
                    buffer.clear()
                    buffered = 0
            if buffer:
                fh.write("".join(buffer))
        return target


def raw_results_path(test_run_id: str, tmp_dir: Optional[str] = None) -> Path:
    base = tmp_dir or settings.RESULTS_TMP_DIR or tempfile.gettempdir()
    return Path(base) / test_run_id / RAW_RESULTS_FILENAME


class RawResultWriter:
    """
    Persists raw results off the event loop.

    Writes run on a single background thread so the caller gets its result
    back without waiting on disk I/O.
    """

    def __init__(
        self,
        config: Optional[SerializerConfig] = None,
        tmp_dir: Optional[str] = None,
    ) -> None:
        self._writer = JsonStreamWriter(config)
        self._tmp_dir = tmp_dir
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="raw-results-writer"
        )

    def _write(self, result: TestResult, test_run_id: str) -> Path:
        path = raw_results_path(test_run_id, self._tmp_dir)
        self._writer.write(path, result)
        logger.info("Raw test results written to %s", path)
        return path

    def schedule(self, result: TestResult, test_run_id: str) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, self._write, result, test_run_id)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


def _coerce_format(value: Union[str, ResultFormat]) -> ResultFormat:
    try:
        return ResultFormat(value)
    except ValueError as e:
        raise UnsupportedResultFormatError(
            f"Result format {value!r} is not supported. "
            f"Supported formats: {', '.join(f.value for f in ResultFormat)}"
        ) from e


def write_result_files(
    result: Union[TestResult, TestRunIdResult],
    dir_path: Union[str, Path],
    result_formats: Optional[Sequence[Union[str, ResultFormat]]] = None,
    code_coverage: bool = False,
    formatters: Optional[Mapping[ResultFormat, Formatter]] = None,
    file_infos: Optional[Sequence[Mapping[str, Any]]] = None,
    serializer: Optional[SerializerConfig] = None,
) -> list[str]:
    """
    Write the result files for a run into `dir_path`.

    Always writes `test-run-id.txt`. JSON output is written incrementally;
    TAP and JUnit are rendered by the matching entry of `formatters`. The
    human format is console-only and produces no file. Extra `file_infos`
    (`{filename, content}`) are written verbatim (strings) or as JSON.

    Returns the list of file paths written.
    """
    formats = [_coerce_format(f) for f in (result_formats or [])]
    formatters = formatters or {}
    writer = JsonStreamWriter(serializer)

    if isinstance(result, TestResult):
        test_run_id = result.summary.test_run_id
    else:
        test_run_id = result.test_run_id or ""

    if formats and not isinstance(result, TestResult):
        raise UnsupportedResultFormatError(
            "Result formats can only be written for a completed test run, not a test run id",
            test_run_id=test_run_id,
        )
    if code_coverage and not isinstance(result, TestResult):
        raise UnsupportedResultFormatError(
            "Code coverage can only be written for a completed test run, not a test run id",
            test_run_id=test_run_id,
        )

    directory = Path(dir_path)
    directory.mkdir(parents=True, exist_ok=True)
    written: list[str] = []

    run_id_file = directory / TEST_RUN_ID_FILENAME
    run_id_file.write_text(test_run_id, encoding="utf-8")
    written.append(str(run_id_file))

    for fmt in formats:
        if fmt is ResultFormat.HUMAN:
            logger.debug("Human format is not written to a file")
            continue
        path = directory / _FORMAT_FILENAMES[fmt].format(run_id=test_run_id)
        if fmt is ResultFormat.JSON:
            writer.write(path, result)
        else:
            formatter = formatters.get(fmt)
            if formatter is None:
                raise UnsupportedResultFormatError(
                    f"No formatter registered for result format {fmt.value!r}",
                    test_run_id=test_run_id,
                )
            path.write_text(formatter(result), encoding="utf-8")
        written.append(str(path))

    if code_coverage:
        per_test = [t.per_class_coverage for t in result.tests if t.per_class_coverage]
        path = directory / _CODE_COVERAGE_FILENAME.format(run_id=test_run_id)
        writer.write(path, per_test)
        written.append(str(path))

    for info in file_infos or []:
        path = directory / info["filename"]
        content = info["content"]
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            writer.write(path, content)
        written.append(str(path))

    logger.info("Wrote %d result files to %s", len(written), directory)
    return written
