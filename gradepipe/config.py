"""
Configuration constants for the grade pipeline.
"""

from pathlib import Path


# Execution configuration
EXECUTION_TIMEOUT_SECONDS: int = 120
MEMORY_LIMIT_MB: int = 1024
CPU_LIMIT_SECONDS: int = 300
MAX_OUTPUT_BYTES: int = 64 * 1024
TRUNCATION_MARKER: str = "\n... [output truncated]\n"
DEFAULT_SANDBOX_IMAGE: str = "gradepipe-sandbox:latest"
SANDBOX_DOCKERFILE: str = "docker/sandbox.Dockerfile"
SERVICE_STARTUP_SECONDS: float = 20.0

# Layout of a sandbox scratch directory
SANDBOX_SUBMISSION_DIRNAME: str = "submission"
GRADER_TESTS_DIRNAME: str = "_grader_tests"
TEST_REPORT_FILENAME: str = "test_report.xml"
SERVICE_LOG_FILENAME: str = "service.log"

# Pytest configuration
PYTEST_ARGS: list[str] = [
    "-v",
    "--tb=short",
    "-p",
    "no:cacheprovider",
]

# Pytest exit codes that mean the harness itself failed
# 2: interrupted (collection errors), 3: internal error, 4: usage error, 5: no tests collected
HARNESS_EXIT_CODES: frozenset[int] = frozenset({2, 3, 4, 5})

# Fetch limits
FETCH_TIMEOUT_SECONDS: int = 120
MAX_SUBMISSION_FILES: int = 2000
MAX_SUBMISSION_BYTES: int = 50 * 1024 * 1024

# Similarity configuration
SHINGLE_SIZE: int = 5
INFORMATIONAL_THRESHOLD: float = 0.3
FLAG_THRESHOLD: float = 0.5
SOURCE_EXTENSIONS: list[str] = [
    ".py", ".java", ".kt", ".js", ".ts", ".c", ".h", ".cpp", ".hpp", ".cs", ".go", ".rb",
]
SKIP_DIRS: frozenset[str] = frozenset(
    {".git", ".venv", "venv", "node_modules", "__pycache__", ".mypy_cache", ".pytest_cache",
     "target", "build", "dist", ".gradle", ".idea"}
)

# Default paths (can be overridden via config file)
DEFAULT_GRADES_DIR: Path = Path("grades")
CORPUS_FILENAME: str = "corpus.jsonl"
RUN_LOG_FILENAME: str = "pipeline_runs.jsonl"
GRADES_SUMMARY_FILENAME: str = "grades_summary.json"
GRADES_CSV_FILENAME: str = "grades_summary.csv"
ATTEMPT_FILENAME_TEMPLATE: str = "attempt-{attempt}.json"

# Submission discovery
IGNORED_SUBMISSION_DIRS: tuple[str, ...] = ("__pycache__", "tests", "GRADES", "grades")
DEFAULT_REFERENCE: str = "HEAD"
DEFAULT_WORKERS: int = 2
