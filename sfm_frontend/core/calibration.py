"""
Calibration priors: partially known camera intrinsics per image.

Priors start from whatever the caller supplies, are completed from EXIF data
and, when allowed, a focal-length guess from the image size. A field that has
been set is never cleared again.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

# Focal length guess (in pixels) relative to the larger image dimension, used
# when no EXIF focal length is available. Corresponds to a ~45 degree field of view.
HEURISTIC_FOCAL_SCALE = 1.2

# Width of a full-frame 35mm sensor in millimetres.
FULL_FRAME_SENSOR_WIDTH_MM = 36.0

EXIF_IFD_POINTER = 0x8769
TAG_FOCAL_LENGTH = 0x920A
TAG_FOCAL_LENGTH_35MM = 0xA405
TAG_FOCAL_PLANE_X_RESOLUTION = 0xA20E
TAG_FOCAL_PLANE_RESOLUTION_UNIT = 0xA210

# FocalPlaneResolutionUnit -> millimetres per unit
_RESOLUTION_UNIT_MM = {2: 25.4, 3: 10.0, 4: 1.0, 5: 0.001}


@dataclass
class PriorValue:
    """A single prior field together with its set/unset flag."""
    value: Any = None
    is_set: bool = False

    def set(self, value: Any) -> None:
        self.value = value
        self.is_set = True


@dataclass
class CalibrationPrior:
    """Partially known intrinsics of one image. Width/height of 0 mean unknown."""
    focal_length: PriorValue = field(default_factory=PriorValue)
    principal_point: PriorValue = field(default_factory=PriorValue)
    aspect_ratio: PriorValue = field(default_factory=PriorValue)
    skew: PriorValue = field(default_factory=PriorValue)
    radial_distortion: PriorValue = field(default_factory=PriorValue)
    image_width: int = 0
    image_height: int = 0
    # True when the focal length is a size-based guess rather than a measured value.
    focal_length_is_heuristic: bool = False

    @classmethod
    def from_values(cls,
                    focal_length: Optional[float] = None,
                    principal_point: Optional[Tuple[float, float]] = None,
                    aspect_ratio: Optional[float] = None,
                    skew: Optional[float] = None,
                    radial_distortion: Optional[Tuple[float, float]] = None,
                    image_width: int = 0,
                    image_height: int = 0) -> "CalibrationPrior":
        """Build a prior where every non-None argument is marked as set."""
        prior = cls(image_width=int(image_width), image_height=int(image_height))
        if focal_length is not None:
            prior.focal_length.set(float(focal_length))
        if principal_point is not None:
            prior.principal_point.set((float(principal_point[0]), float(principal_point[1])))
        if aspect_ratio is not None:
            prior.aspect_ratio.set(float(aspect_ratio))
        if skew is not None:
            prior.skew.set(float(skew))
        if radial_distortion is not None:
            prior.radial_distortion.set((float(radial_distortion[0]), float(radial_distortion[1])))
        return prior

    def copy(self) -> "CalibrationPrior":
        return copy.deepcopy(self)

    @property
    def has_dimensions(self) -> bool:
        return self.image_width > 0 and self.image_height > 0

    @property
    def max_dimension(self) -> int:
        return max(self.image_width, self.image_height)

    def principal_point_or_center(self) -> Tuple[float, float]:
        """Principal point prior, or the image centre (0, 0 if the size is unknown)."""
        if self.principal_point.is_set:
            return self.principal_point.value
        return self.image_width / 2.0, self.image_height / 2.0

    def intrinsics_matrix(self, focal_length: Optional[float] = None) -> np.ndarray:
        """
        Pinhole calibration matrix from the prior.

        Args:
            focal_length: Overrides the focal length prior when given

        Returns:
            3x3 intrinsics matrix
        """
        if focal_length is None:
            focal_length = self.focal_length.value if self.focal_length.is_set else 1.0
        aspect = self.aspect_ratio.value if self.aspect_ratio.is_set else 1.0
        skew = self.skew.value if self.skew.is_set else 0.0
        cx, cy = self.principal_point_or_center()
        return np.array([
            [focal_length, skew, cx],
            [0.0, focal_length * aspect, cy],
            [0.0, 0.0, 1.0]
        ], dtype=np.float64)

    def pixels_to_normalized(self, points: np.ndarray, focal_length: Optional[float] = None) -> np.ndarray:
        """
        Map pixel coordinates to normalized image coordinates (rays with z = 1).

        Args:
            points: [N, 2] pixel coordinates
            focal_length: Overrides the focal length prior when given

        Returns:
            [N, 2] normalized coordinates
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if len(points) == 0:
            return points.copy()

        K = self.intrinsics_matrix(focal_length)
        if self.radial_distortion.is_set:
            k1, k2 = self.radial_distortion.value
            dist_coeffs = np.array([k1, k2, 0.0, 0.0], dtype=np.float64)
            return cv2.undistortPoints(points.reshape(-1, 1, 2), K, dist_coeffs).reshape(-1, 2)

        points_h = np.hstack([points, np.ones((len(points), 1))])
        rays = (np.linalg.inv(K) @ points_h.T).T
        return rays[:, :2] / rays[:, 2:3]


class ExifReader:
    """Reads image size and focal length (in pixels) from image metadata."""

    def extract(self, image_path: Union[str, Path], prior: CalibrationPrior) -> CalibrationPrior:
        """
        Complete a prior with the image size and any EXIF focal length.

        Fields already set on ``prior`` are kept. Unreadable files are logged
        and leave the prior unchanged.
        """
        prior = prior.copy()
        try:
            with Image.open(image_path) as image:
                width, height = image.size
                exif = image.getexif()
                tags: Dict[int, Any] = dict(exif.items())
                tags.update(exif.get_ifd(EXIF_IFD_POINTER))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read metadata from {image_path}: {e}")
            return prior

        if not prior.has_dimensions:
            prior.image_width = int(width)
            prior.image_height = int(height)

        if not prior.focal_length.is_set:
            focal = self._focal_length_from_tags(tags, max(width, height))
            if focal is not None:
                prior.focal_length.set(focal)
                prior.focal_length_is_heuristic = False
                logger.debug(f"EXIF focal length for {image_path}: {focal:.1f}px")

        return prior

    @staticmethod
    def _focal_length_from_tags(tags: Dict[int, Any], max_dimension: int) -> Optional[float]:
        if max_dimension <= 0:
            return None

        focal_35mm = tags.get(TAG_FOCAL_LENGTH_35MM)
        if focal_35mm:
            return float(focal_35mm) / FULL_FRAME_SENSOR_WIDTH_MM * max_dimension

        focal_mm = tags.get(TAG_FOCAL_LENGTH)
        x_resolution = tags.get(TAG_FOCAL_PLANE_X_RESOLUTION)
        unit_mm = _RESOLUTION_UNIT_MM.get(tags.get(TAG_FOCAL_PLANE_RESOLUTION_UNIT, 2))
        if focal_mm and x_resolution and unit_mm:
            pixels_per_mm = float(x_resolution) / unit_mm
            return float(focal_mm) * pixels_per_mm

        return None


class CalibrationResolver:
    """
    Best-effort calibration prior for an image: EXIF first, then a focal length
    guessed from the image size unless only calibrated views are wanted.
    """

    def __init__(self, only_calibrated_views: bool = False, exif_reader: Optional[ExifReader] = None):
        self.only_calibrated_views = only_calibrated_views
        self.exif_reader = exif_reader or ExifReader()

    def resolve(self, image_path: Union[str, Path], prior: Optional[CalibrationPrior] = None) -> CalibrationPrior:
        resolved = self.exif_reader.extract(image_path, prior or CalibrationPrior())

        if resolved.focal_length.is_set or self.only_calibrated_views:
            return resolved

        if resolved.max_dimension > 0:
            resolved.focal_length.set(HEURISTIC_FOCAL_SCALE * resolved.max_dimension)
            resolved.focal_length_is_heuristic = True
            logger.debug(f"No EXIF focal length for {image_path}, "
                         f"using {resolved.focal_length.value:.1f}px")
        else:
            logger.warning(f"Image size unknown for {image_path}, cannot guess a focal length")

        return resolved


class CalibrationStore:
    """
    Calibration priors keyed by image path, shared by the extraction workers.

    Every read and write takes the store's own lock for the duration of the
    dictionary operation only. Priors are copied in and out so callers never
    share mutable state.
    """

    def __init__(self):
        self._priors: Dict[str, CalibrationPrior] = {}
        self._lock = threading.Lock()

    def get(self, image_path: str, default: Optional[CalibrationPrior] = None) -> Optional[CalibrationPrior]:
        with self._lock:
            prior = self._priors.get(image_path)
            return prior.copy() if prior is not None else default

    def set(self, image_path: str, prior: CalibrationPrior) -> None:
        with self._lock:
            self._priors[image_path] = prior.copy()

    def __contains__(self, image_path: str) -> bool:
        with self._lock:
            return image_path in self._priors

    def __len__(self) -> int:
        with self._lock:
            return len(self._priors)
