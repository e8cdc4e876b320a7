"""
Run request payloads and test suite helpers.

Turns the comma separated `tests`, `class_names` and `suite_names` strings a
caller passes into a validated TestRunRequest. Names of the form `a.b` are
ambiguous (`namespace.Class` vs `Class.method`); they are resolved against
the org's namespaces, queried at most once per builder.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from apexrunner.core.utils import is_valid_apex_class_id
from apexrunner.errors import NoResultsError, format_test_errors
from apexrunner.models.test_config import TestItem, TestLevel, TestRunRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NamespaceInfo:
    namespace: str
    installed_ns: bool


def _class_item(name: str) -> Dict[str, Any]:
    if is_valid_apex_class_id(name):
        return {"classId": name}
    return {"className": name}


class TestPayloadBuilder:
    """Builds run requests and manages test suites for one org connection."""

    __test__ = False

    def __init__(self, connection: Any):
        self.connection = connection
        self._namespaces: Optional[List[NamespaceInfo]] = None
        self._namespace_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    async def query_namespaces(self) -> List[NamespaceInfo]:
        """Org namespace first, then installed package namespaces; cached."""
        async with self._namespace_lock:
            if self._namespaces is None:
                installed, org = await asyncio.gather(
                    self.connection.query("SELECT NamespacePrefix FROM PackageLicense"),
                    self.connection.query("SELECT NamespacePrefix FROM Organization"),
                )
                self._namespaces = [
                    NamespaceInfo(namespace=r["NamespacePrefix"], installed_ns=False)
                    for r in org.get("records") or []
                    if r.get("NamespacePrefix")
                ] + [
                    NamespaceInfo(namespace=r["NamespacePrefix"], installed_ns=True)
                    for r in installed.get("records") or []
                    if r.get("NamespacePrefix")
                ]
                logger.debug("Resolved %d namespaces", len(self._namespaces))
            return self._namespaces

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------

    async def build_async_payload(
        self,
        test_level: TestLevel = TestLevel.RUN_SPECIFIED_TESTS,
        tests: Optional[str] = None,
        class_names: Optional[str] = None,
        suite_names: Optional[str] = None,
    ) -> TestRunRequest:
        try:
            if tests:
                return await self._build_test_payload(tests)
            if class_names:
                return self._build_class_payload(class_names)
            return TestRunRequest(
                suite_names=suite_names.split(",") if suite_names else None,
                test_level=test_level,
            )
        except Exception as e:
            formatted = format_test_errors(e)
            if formatted is e:
                raise
            raise formatted from e

    async def build_sync_payload(
        self,
        test_level: TestLevel = TestLevel.RUN_SPECIFIED_TESTS,
        tests: Optional[str] = None,
        class_names: Optional[str] = None,
    ) -> TestRunRequest:
        """Synchronous runs accept test methods from a single class only."""
        try:
            if tests:
                payload = await self._build_test_payload(tests)
                classes = {
                    item.class_name or item.class_id for item in payload.tests or []
                }
                if len(classes) != 1:
                    raise ValueError(
                        "Synchronous test runs can include test methods from only "
                        "one Apex class."
                    )
                return payload
            if class_names:
                return TestRunRequest(
                    tests=[TestItem.model_validate(_class_item(class_names))],
                    test_level=test_level,
                )
            raise ValueError("Specify tests or class names to build a test run payload.")
        except Exception as e:
            formatted = format_test_errors(e)
            if formatted is e:
                raise
            raise formatted from e

    def _build_class_payload(self, class_names: str) -> TestRunRequest:
        items: List[TestItem] = []
        for name in class_names.split(","):
            parts = name.split(".")
            if len(parts) > 1:
                items.append(TestItem(className=f"{parts[0]}.{parts[1]}"))
            else:
                items.append(TestItem.model_validate(_class_item(name)))
        return TestRunRequest(tests=items, test_level=TestLevel.RUN_SPECIFIED_TESTS)

    async def _build_test_payload(self, test_names: str) -> TestRunRequest:
        items: List[TestItem] = []
        by_class: Dict[str, TestItem] = {}

        for test in test_names.split(","):
            if test.find(".") <= 0:
                items.append(TestItem.model_validate(_class_item(test)))
                continue

            parts = test.split(".")
            if len(parts) == 3:
                namespace, class_name, method = parts
                existing = by_class.get(class_name)
                if existing is None:
                    item = TestItem(
                        namespace=namespace, className=class_name, testMethods=[method]
                    )
                    items.append(item)
                    by_class[class_name] = item
                else:
                    existing.namespace = namespace
                    existing.test_methods = (existing.test_methods or []) + [method]
                continue

            namespaces = await self.query_namespaces()
            current = next((n for n in namespaces if n.namespace == parts[0]), None)
            if current is not None:
                # Installed packages need the namespace inside className;
                # the namespace field is only for the org's own namespace.
                if current.installed_ns:
                    items.append(TestItem(className=f"{parts[0]}.{parts[1]}"))
                else:
                    items.append(TestItem(namespace=parts[0], className=parts[1]))
                continue

            class_name, method = parts[0], parts[1]
            existing = by_class.get(class_name)
            if existing is None:
                item = TestItem(className=class_name, testMethods=[method])
                items.append(item)
                by_class[class_name] = item
            else:
                existing.test_methods = (existing.test_methods or []) + [method]

        return TestRunRequest(tests=items, test_level=TestLevel.RUN_SPECIFIED_TESTS)

    # ------------------------------------------------------------------
    # Suites
    # ------------------------------------------------------------------

    async def retrieve_all_suites(self) -> List[Dict[str, Any]]:
        result = await self.connection.query(
            "SELECT id, TestSuiteName FROM ApexTestSuite", tooling=True
        )
        return list(result.get("records") or [])

    async def _retrieve_suite_id(self, suite_name: str) -> Optional[str]:
        result = await self.connection.query(
            f"SELECT id FROM ApexTestSuite WHERE TestSuiteName = '{suite_name}'",
            tooling=True,
        )
        records = result.get("records") or []
        if not records:
            return None
        return records[0].get("Id")

    async def _get_or_create_suite_ids(self, suite_names: List[str]) -> List[str]:
        async def _one(suite_name: str) -> str:
            suite_id = await self._retrieve_suite_id(suite_name)
            if suite_id is None:
                created = await self.connection.create(
                    "ApexTestSuite", {"TestSuiteName": suite_name}, tooling=True
                )
                return created["id"]
            return suite_id

        return list(await asyncio.gather(*(_one(name) for name in suite_names)))

    async def get_tests_in_suite(
        self, suite_name: Optional[str] = None, suite_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """TestSuiteMembership records (`ApexClassId`) of a suite."""
        if suite_name is None and suite_id is None:
            raise ValueError("Specify a suite name or a suite id.")
        if suite_name:
            suite_id = await self._retrieve_suite_id(suite_name)
            if suite_id is None:
                raise NoResultsError(f"Suite {suite_name!r} does not exist.")
        result = await self.connection.query(
            f"SELECT ApexClassId FROM TestSuiteMembership WHERE ApexTestSuiteId = '{suite_id}'",
            tooling=True,
        )
        return list(result.get("records") or [])

    async def get_apex_class_ids(self, test_classes: List[str]) -> List[str]:
        async def _one(test_class: str) -> str:
            result = await self.connection.query(
                f"SELECT id, name FROM ApexClass WHERE Name = '{test_class}'",
                tooling=True,
            )
            records = result.get("records") or []
            if not records:
                raise NoResultsError(f"Apex test class {test_class} does not exist.")
            return records[0]["Id"]

        return list(await asyncio.gather(*(_one(name) for name in test_classes)))

    async def build_suite(self, suite_name: str, test_classes: List[str]) -> None:
        """Create `suite_name` if needed and add every class not already in it."""
        suite_id = (await self._get_or_create_suite_ids([suite_name]))[0]
        members = await self.get_tests_in_suite(suite_id=suite_id)
        existing = {m.get("ApexClassId") for m in members}
        class_ids = await self.get_apex_class_ids(test_classes)

        for test_class, class_id in zip(test_classes, class_ids):
            if class_id in existing:
                logger.info("Apex test class %s already exists in suite %s", test_class, suite_name)
                continue
            await self.connection.create(
                "TestSuiteMembership",
                {"ApexClassId": class_id, "ApexTestSuiteId": suite_id},
                tooling=True,
            )
            logger.info("Added Apex test class %s to suite %s", test_class, suite_name)
