"""
Exception types raised by the workflow.

Every error carries the study subset and the stage it was raised from once
the workflow has annotated it, so a failed run can be diagnosed from the
message alone.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for workflow errors."""

    def __init__(self, message: str, study: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.study = study
        self.stage = stage

    def with_context(self, study: Optional[str] = None, stage: Optional[str] = None) -> "PipelineError":
        """Attach study/stage context without overwriting existing values."""
        if self.study is None:
            self.study = study
        if self.stage is None:
            self.stage = stage
        return self

    def __str__(self) -> str:
        context = [f"{key}={value}" for key, value in (("study", self.study), ("stage", self.stage)) if value]
        if context:
            return f"[{', '.join(context)}] {self.message}"
        return self.message


class ConfigurationError(PipelineError):
    """Sample registry or workflow configuration is inconsistent."""


class CountingError(PipelineError):
    """Read summarization failed (unreadable input, bad annotation, engine failure)."""


class ModelFitError(PipelineError):
    """Design is not estimable or the requested contrast cannot be tested."""
