"""
Test Run Request Models

Defines Pydantic models for the body of a run request:
- Test levels
- Per-class test items with an optional method filter
- The run request itself (exactly one selection variant)
"""

from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TestLevel(str, Enum):
    """Which tests the platform should run."""

    __test__ = False

    RUN_LOCAL_TESTS = "RunLocalTests"
    RUN_ALL_TESTS_IN_ORG = "RunAllTestsInOrg"
    RUN_SPECIFIED_TESTS = "RunSpecifiedTests"


class ResultFormat(str, Enum):
    """Output formats understood by `write_result_files`."""

    JUNIT = "junit"
    TAP = "tap"
    JSON = "json"
    HUMAN = "human"


class TestItem(BaseModel):
    """One test class to run, optionally restricted to some of its methods."""

    __test__: ClassVar[bool] = False

    class_name: Optional[str] = Field(None, alias="className")
    class_id: Optional[str] = Field(None, alias="classId")
    test_methods: Optional[List[str]] = Field(None, alias="testMethods")
    namespace: Optional[str] = Field(None, description="Org namespace")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def validate_class_reference(self):
        if not self.class_name and not self.class_id:
            raise ValueError("A test item needs a className or a classId")
        if self.class_name and self.class_id:
            raise ValueError("A test item takes either className or classId, not both")
        return self


class TestRunRequest(BaseModel):
    """
    Body of a runTestsAsynchronous / runTestsSynchronous request.

    Exactly one selection is populated: class names, class ids, suite names,
    suite ids or explicit test items. Org-wide levels (RunLocalTests,
    RunAllTestsInOrg) may leave every selection empty.
    """

    __test__: ClassVar[bool] = False

    class_names: Optional[List[str]] = Field(None, alias="classNames")
    class_ids: Optional[List[str]] = Field(None, alias="classids")
    suite_names: Optional[List[str]] = Field(None, alias="suiteNames")
    suite_ids: Optional[List[str]] = Field(None, alias="suiteids")
    tests: Optional[List[TestItem]] = Field(None, description="Explicit test items")

    test_level: TestLevel = Field(TestLevel.RUN_SPECIFIED_TESTS, alias="testLevel")
    max_failed_tests: Optional[int] = Field(None, ge=0, alias="maxFailedTests")
    skip_code_coverage: bool = Field(False, alias="skipCodeCoverage")

    model_config = ConfigDict(populate_by_name=True)

    _SELECTIONS: ClassVar[tuple[str, ...]] = (
        "class_names",
        "class_ids",
        "suite_names",
        "suite_ids",
        "tests",
    )

    @model_validator(mode="after")
    def validate_single_selection(self):
        populated = [name for name in self._SELECTIONS if getattr(self, name)]
        if len(populated) > 1:
            raise ValueError(
                f"Only one test selection may be given, got: {', '.join(populated)}"
            )
        if not populated and self.test_level == TestLevel.RUN_SPECIFIED_TESTS:
            raise ValueError("RunSpecifiedTests requires classes, suites or tests")
        return self

    @property
    def selection(self) -> Optional[str]:
        """Name of the populated selection, or None for org-wide levels."""
        for name in self._SELECTIONS:
            if getattr(self, name):
                return name
        return None

    def to_payload(self) -> Dict[str, Any]:
        """Render the JSON body expected by the platform."""
        payload: Dict[str, Any] = {"testLevel": self.test_level.value}
        for name in ("class_names", "class_ids", "suite_names", "suite_ids"):
            values = getattr(self, name)
            if values:
                payload[type(self).model_fields[name].alias] = ",".join(values)
        if self.tests:
            payload["tests"] = [
                item.model_dump(by_alias=True, exclude_none=True)
                for item in self.tests
            ]
        if self.max_failed_tests is not None:
            payload["maxFailedTests"] = self.max_failed_tests
        if self.skip_code_coverage:
            payload["skipCodeCoverage"] = True
        return payload
