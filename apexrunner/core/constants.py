"""Identifiers and fixed values used across the run/result pipeline."""

# Tooling API query char limit is 100,000 after v48; the REST limit for
# uri + headers is 16,348 bytes. In practice queries fail above ~12,400.
QUERY_CHAR_LIMIT = 12_400

CLASS_ID_PREFIX = "01p"
TEST_RUN_ID_PREFIX = "707"
VALID_ID_LENGTHS = (15, 18)

# Stream events may carry either the 15 or 18 char form of a run id.
RUN_ID_MATCH_LENGTH = 14

ORG_WIDE_COVERAGE_QUERY = "SELECT PercentCovered FROM ApexOrgWideCoverage"

RAW_RESULTS_FILENAME = "rawResults.json"
TEST_RUN_ID_FILENAME = "test-run-id.txt"
