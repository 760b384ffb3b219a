"""
Configuration loader for the grade pipeline.

Handles parsing and validation of YAML configuration files.
"""

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .config import (
    CPU_LIMIT_SECONDS,
    DEFAULT_REFERENCE,
    DEFAULT_SANDBOX_IMAGE,
    DEFAULT_WORKERS,
    EXECUTION_TIMEOUT_SECONDS,
    FETCH_TIMEOUT_SECONDS,
    FLAG_THRESHOLD,
    INFORMATIONAL_THRESHOLD,
    MAX_OUTPUT_BYTES,
    MAX_SUBMISSION_BYTES,
    MAX_SUBMISSION_FILES,
    MEMORY_LIMIT_MB,
    SHINGLE_SIZE,
    SOURCE_EXTENSIONS,
)
from .errors import ConfigError
from .models import SuiteVisibility


class RubricConfig(BaseModel):
    """
    Weights and thresholds applied by the grade aggregator.
    """
    visible_weight: float = Field(0.4, ge=0, description="Weight of the visible pass fraction")
    hidden_weight: float = Field(0.6, ge=0, description="Weight of the hidden pass fraction")
    similarity_penalty_threshold: float = Field(
        0.6, ge=0, le=1, description="Similarity above which the penalty applies"
    )
    similarity_penalty_factor: float = Field(
        0.5, ge=0, le=1, description="Fraction of the score removed by the penalty"
    )
    manual_review_flag_threshold: float = Field(
        0.8, ge=0, le=1, description="Similarity above which the score is withheld"
    )

    @model_validator(mode="after")
    def _weights_not_zero(self) -> "RubricConfig":
        if self.visible_weight + self.hidden_weight <= 0:
            raise ValueError("visible_weight and hidden_weight cannot both be zero")
        return self


class SandboxConfig(BaseModel):
    """
    Limits and backend of the sandboxed test runner.
    """
    backend: Literal["local", "docker"] = Field("local", description="Sandbox backend")
    timeout_seconds: int = Field(EXECUTION_TIMEOUT_SECONDS, gt=0, description="Default suite timeout")
    memory_limit_mb: Optional[int] = Field(MEMORY_LIMIT_MB, gt=0, description="Address-space limit")
    cpu_seconds: Optional[int] = Field(CPU_LIMIT_SECONDS, gt=0, description="CPU time limit")
    max_output_bytes: int = Field(MAX_OUTPUT_BYTES, gt=0, description="Captured output bound")
    python_executable: Optional[str] = Field(None, description="Interpreter used to run pytest")
    image: str = Field(DEFAULT_SANDBOX_IMAGE, description="Docker image for the docker backend")
    allow_unisolated: bool = Field(
        False, description="Let the local backend run without command_prefix (trusted code only)"
    )
    command_prefix: list[str] = Field(
        default_factory=list, description="Isolating wrapper for the local backend; {scratch} is the scratch directory"
    )
    sandbox_root: Optional[Path] = Field(None, description="Where scratch directories are created")


class FetchConfig(BaseModel):
    """
    Limits applied when fetching a submission.
    """
    max_files: int = Field(MAX_SUBMISSION_FILES, gt=0, description="Maximum files in a tree")
    max_total_bytes: int = Field(MAX_SUBMISSION_BYTES, gt=0, description="Maximum tree size")
    timeout_seconds: int = Field(FETCH_TIMEOUT_SECONDS, gt=0, description="Timeout per git command")


class SimilarityConfig(BaseModel):
    """
    Shingling parameters and reporting thresholds.
    """
    shingle_size: int = Field(SHINGLE_SIZE, ge=1, description="Tokens per shingle")
    informational_threshold: float = Field(
        INFORMATIONAL_THRESHOLD, ge=0, le=1, description="Score from which matched spans are reported"
    )
    flag_threshold: float = Field(
        FLAG_THRESHOLD, ge=0, le=1, description="Score above which a report is attached to the grade"
    )
    extensions: list[str] = Field(
        default_factory=lambda: list(SOURCE_EXTENSIONS), description="Source file extensions compared"
    )


class SuiteConfig(BaseModel):
    """
    A suite as declared in the configuration file; ``path`` is relative to its store.
    """
    name: str = Field(..., min_length=1)
    visibility: SuiteVisibility
    path: Path
    tests: list[str] = Field(..., min_length=1, description="Ordered test node ids")
    timeout_seconds: Optional[int] = Field(None, gt=0)
    service_command: Optional[list[str]] = None
    service_port: int = Field(8080, gt=0, lt=65536)
    service_health_path: str = "/"

    @model_validator(mode="after")
    def _unique_tests(self) -> "SuiteConfig":
        if len(set(self.tests)) != len(self.tests):
            raise ValueError(f"Suite '{self.name}' lists a test more than once")
        return self


class SubmissionConfig(BaseModel):
    """
    An explicitly listed submission.
    """
    submission_id: str
    student_id: str
    repository: str
    reference: str = DEFAULT_REFERENCE


class PipelineConfig(BaseModel):
    """
    Configuration model for the grade pipeline.
    """
    submissions: list[SubmissionConfig] = Field(default_factory=list, description="Submissions to grade")
    submissions_dir: Optional[Path] = Field(None, description="Directory of student clones")
    default_reference: str = Field(DEFAULT_REFERENCE, description="Reference graded for discovered clones")
    visible_store: Path = Field(..., description="Directory holding visible suites")
    hidden_store: Path = Field(..., description="Directory holding hidden suites")
    suites: list[SuiteConfig] = Field(..., min_length=1, description="Suites of the assignment")
    grades_dir: Optional[Path] = Field(None, description="Where reports and the corpus are stored")
    workspace_root: Optional[Path] = Field(None, description="Where fetched workspaces are created")
    workers: int = Field(DEFAULT_WORKERS, ge=1, description="Concurrent pipelines")
    verbose: bool = Field(False, description="Enable verbose output")

    rubric: RubricConfig = Field(default_factory=RubricConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)


def _resolve(config_dir: Path, value) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = config_dir / path
    return path


def load_config(config_path: Path) -> PipelineConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        PipelineConfig object with loaded values.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or fails validation.
    """
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config_data, dict):
        raise ConfigError(f"Configuration file is empty or not a mapping: {config_path}")

    # Resolve relative paths relative to the config file location
    config_dir = config_path.parent

    for path_field in ["submissions_dir", "visible_store", "hidden_store", "grades_dir", "workspace_root"]:
        if config_data.get(path_field):
            config_data[path_field] = _resolve(config_dir, config_data[path_field])

    sandbox_data = config_data.get("sandbox") or {}
    if sandbox_data.get("sandbox_root"):
        sandbox_data["sandbox_root"] = _resolve(config_dir, sandbox_data["sandbox_root"])

    # Local repositories may be given relative to the config file as well
    for entry in config_data.get("submissions") or []:
        repository = entry.get("repository") if isinstance(entry, dict) else None
        if repository and "://" not in repository and not repository.startswith("git@"):
            entry["repository"] = str(_resolve(config_dir, repository))

    try:
        return PipelineConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e
