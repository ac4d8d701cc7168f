"""
Per-image outcomes and the error taxonomy of the front end.

Recoverable problems (missing file, missing calibration, extraction failure)
become SKIPPED outcomes and are only logged. Setup defects are raised as
``ConfigurationError`` and abort the run.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConfigurationError(RuntimeError):
    """The run was set up inconsistently; processing cannot continue."""


class MaskSizeMismatchError(ConfigurationError):
    """An image and its mask do not have the same dimensions."""


class FeatureExtractionError(RuntimeError):
    """Features could not be extracted from a single image."""


class ProcessStatus(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FATAL = "fatal"


@dataclass(frozen=True)
class ImageOutcome:
    """Result of processing one registered image."""
    image_path: str
    status: ProcessStatus
    reason: Optional[str] = None
    num_features: int = 0
    from_cache: bool = False

    @classmethod
    def success(cls, image_path: str, num_features: int = 0, from_cache: bool = False) -> "ImageOutcome":
        return cls(image_path, ProcessStatus.SUCCESS, None, num_features, from_cache)

    @classmethod
    def skipped(cls, image_path: str, reason: str) -> "ImageOutcome":
        return cls(image_path, ProcessStatus.SKIPPED, reason)

    @classmethod
    def fatal(cls, image_path: str, reason: str) -> "ImageOutcome":
        return cls(image_path, ProcessStatus.FATAL, reason)

    @property
    def ok(self) -> bool:
        return self.status is ProcessStatus.SUCCESS
