"""Error taxonomy for pkgbake.

Every error carries a stable ``code`` for programmatic handling and
enough context to be reported without re-running the build.

Run-fatal errors (no job starts):
- RecipeValidationError
- RuntimeUnavailableError

Job-local errors (recorded as a target's Failed reason):
- EnvironmentSetupError
- SourceFetchError
- StepExecutionError
- BuildTimeoutError
- ArtifactCollectionError

BuildCancelledError marks a job that was aborted by a cancellation signal.
"""

from __future__ import annotations

from typing import Any

# Error code constants
VALIDATION_ERROR = "recipe_validation"
RUNTIME_UNAVAILABLE = "runtime_unavailable"
ENVIRONMENT_SETUP_ERROR = "environment_setup"
SOURCE_FETCH_ERROR = "source_fetch"
STEP_EXECUTION_ERROR = "step_failed"
TIMEOUT_ERROR = "timeout"
ARTIFACT_COLLECTION_ERROR = "artifact_collection"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal_error"

# Captured output is trimmed to this many trailing characters in messages
OUTPUT_TAIL_CHARS = 2000


class PkgbakeError(Exception):
    """Base error for pkgbake operations."""

    code: str = INTERNAL_ERROR

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"code": self.code, "message": str(self)}


class RecipeValidationError(PkgbakeError):
    """Raised when a recipe violates structural rules.

    All violations found are collected, not only the first one.
    """

    code = VALIDATION_ERROR

    def __init__(self, violations: list[str], recipe: str | None = None) -> None:
        self.violations = list(violations)
        self.recipe = recipe
        header = f"Recipe '{recipe}' is invalid" if recipe else "Recipe is invalid"
        lines = "\n".join(f"  - {v}" for v in self.violations)
        super().__init__(f"{header} ({len(self.violations)} violation(s)):\n{lines}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["violations"] = self.violations
        return data


class RuntimeUnavailableError(PkgbakeError):
    """Raised when the execution runtime cannot be reached at all."""

    code = RUNTIME_UNAVAILABLE


class EnvironmentSetupError(PkgbakeError):
    """Raised when an isolated environment cannot be created or provisioned."""

    code = ENVIRONMENT_SETUP_ERROR

    def __init__(
        self,
        message: str,
        image: str | None = None,
        output: str | None = None,
    ) -> None:
        super().__init__(message)
        self.image = image
        self.output = output

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["image"] = self.image
        if self.output:
            data["output"] = self.output[-OUTPUT_TAIL_CHARS:]
        return data


class SourceFetchError(PkgbakeError):
    """Raised when the recipe source or git repository cannot be fetched."""

    code = SOURCE_FETCH_ERROR

    def __init__(self, image: str, source: str, output: str = "") -> None:
        self.image = image
        self.source = source
        self.output = output
        super().__init__(f"[{image}] cannot fetch source {source}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "image": self.image,
                "source": self.source,
                "output": self.output[-OUTPUT_TAIL_CHARS:],
            }
        )
        return data


class StepExecutionError(PkgbakeError):
    """Raised when a recipe step exits with a nonzero code."""

    code = STEP_EXECUTION_ERROR

    def __init__(
        self,
        image: str,
        stage: str,
        step_index: int,
        command: str,
        exit_code: int,
        output: str,
    ) -> None:
        self.image = image
        self.stage = stage
        self.step_index = step_index
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"[{image}] {stage}.steps[{step_index}] failed with exit code "
            f"{exit_code}: {command}"
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "image": self.image,
                "stage": self.stage,
                "step_index": self.step_index,
                "command": self.command,
                "exit_code": self.exit_code,
                "output": self.output[-OUTPUT_TAIL_CHARS:],
            }
        )
        return data


class BuildTimeoutError(PkgbakeError, TimeoutError):
    """Raised when a job exceeds its time limit."""

    code = TIMEOUT_ERROR

    def __init__(self, image: str, timeout: float) -> None:
        self.image = image
        self.timeout = timeout
        super().__init__(f"[{image}] build timed out after {timeout:g} seconds")


class ArtifactCollectionError(PkgbakeError):
    """Raised when the output directory cannot be turned into a manifest."""

    code = ARTIFACT_COLLECTION_ERROR

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["path"] = self.path
        return data


class BuildCancelledError(PkgbakeError):
    """Raised inside a job when the run has been cancelled."""

    code = CANCELLED

    def __init__(self, image: str) -> None:
        self.image = image
        super().__init__(f"[{image}] build cancelled")


__all__ = [
    "ARTIFACT_COLLECTION_ERROR",
    "CANCELLED",
    "ENVIRONMENT_SETUP_ERROR",
    "INTERNAL_ERROR",
    "RUNTIME_UNAVAILABLE",
    "SOURCE_FETCH_ERROR",
    "STEP_EXECUTION_ERROR",
    "TIMEOUT_ERROR",
    "VALIDATION_ERROR",
    "ArtifactCollectionError",
    "BuildCancelledError",
    "BuildTimeoutError",
    "EnvironmentSetupError",
    "PkgbakeError",
    "RecipeValidationError",
    "RuntimeUnavailableError",
    "SourceFetchError",
    "StepExecutionError",
]
