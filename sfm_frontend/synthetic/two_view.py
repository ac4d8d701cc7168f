"""
Synthetic image pairs with known relative pose for testing two-view estimation.
"""

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import cv2
import numpy as np

from ..core.calibration import CalibrationPrior

logger = logging.getLogger(__name__)


@dataclass
class SyntheticTwoView:
    """
    Ground truth pair. Camera 1 sits at the origin looking down +z; points map
    into camera 2 as ``X2 = rotation @ X1 + translation``.
    """
    points1: np.ndarray
    points2: np.ndarray
    rotation: np.ndarray
    translation: np.ndarray
    prior1: CalibrationPrior
    prior2: CalibrationPrior
    is_outlier: np.ndarray

    @property
    def position(self) -> np.ndarray:
        """Unit direction of camera 2's centre in camera 1's frame."""
        center = -self.rotation.T @ self.translation
        return center / np.linalg.norm(center)

    @property
    def rotation_vector(self) -> np.ndarray:
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.ravel()

    @property
    def inlier_indices(self) -> np.ndarray:
        return np.flatnonzero(~self.is_outlier)


def rotation_from_euler_deg(angles_deg: Sequence[float]) -> np.ndarray:
    """Rotation matrix ``Rz @ Ry @ Rx`` from x, y, z angles in degrees."""
    rx, ry, rz = np.radians(np.asarray(angles_deg, dtype=np.float64))
    Rx = np.array([[1, 0, 0], [0, np.cos(rx), -np.sin(rx)], [0, np.sin(rx), np.cos(rx)]])
    Ry = np.array([[np.cos(ry), 0, np.sin(ry)], [0, 1, 0], [-np.sin(ry), 0, np.cos(ry)]])
    Rz = np.array([[np.cos(rz), -np.sin(rz), 0], [np.sin(rz), np.cos(rz), 0], [0, 0, 1]])
    return Rz @ Ry @ Rx


def rotation_error_deg(R_est: np.ndarray, R_gt: np.ndarray) -> float:
    """Angle of the residual rotation between an estimate and the ground truth."""
    cos_angle = (np.trace(R_est @ R_gt.T) - 1.0) / 2.0
    return float(np.degrees(np.arccos(np.clip(cos_angle, -1.0, 1.0))))


class SyntheticTwoViewGenerator:
    """Generate two calibrated or uncalibrated views of a random point cloud."""

    def __init__(self,
                 num_points: int = 120,
                 focal_length: float = 800.0,
                 image_size: Tuple[int, int] = (640, 480),
                 rotation_deg: Sequence[float] = (4.0, 8.0, 3.0),
                 baseline: Sequence[float] = (1.0, 0.3, -0.2),
                 noise_px: float = 0.0,
                 outlier_ratio: float = 0.0,
                 calibrated: Tuple[bool, bool] = (True, True),
                 depth_range: Tuple[float, float] = (5.0, 9.0),
                 seed: int = 0):
        if num_points <= 0:
            raise ValueError(f"num_points must be positive, got {num_points}")
        if not 0.0 <= outlier_ratio < 1.0:
            raise ValueError(f"outlier_ratio must be in [0, 1), got {outlier_ratio}")

        self.num_points = int(num_points)
        self.focal_length = float(focal_length)
        self.width, self.height = int(image_size[0]), int(image_size[1])
        self.rotation = rotation_from_euler_deg(rotation_deg)
        # ``baseline`` is camera 2's centre expressed in camera 1's frame.
        self.translation = -self.rotation @ np.asarray(baseline, dtype=np.float64)
        self.noise_px = float(noise_px)
        self.outlier_ratio = float(outlier_ratio)
        self.calibrated = (bool(calibrated[0]), bool(calibrated[1]))
        self.depth_range = depth_range
        self.rng = np.random.default_rng(seed)

    @classmethod
    def from_config(cls, config) -> "SyntheticTwoViewGenerator":
        section = config.synthetic
        return cls(
            num_points=int(section.num_points),
            focal_length=float(section.focal_length),
            image_size=tuple(section.image_size),
            rotation_deg=list(section.rotation_deg),
            baseline=list(section.baseline),
            noise_px=float(section.noise_px),
            outlier_ratio=float(section.outlier_ratio),
            calibrated=tuple(section.calibrated),
            seed=int(section.seed),
        )

    @property
    def intrinsics(self) -> np.ndarray:
        return np.array([
            [self.focal_length, 0.0, self.width / 2.0],
            [0.0, self.focal_length, self.height / 2.0],
            [0.0, 0.0, 1.0]
        ])

    def _project(self, points_cam: np.ndarray) -> np.ndarray:
        K = self.intrinsics
        pixel_x = K[0, 0] * points_cam[:, 0] / points_cam[:, 2] + K[0, 2]
        pixel_y = K[1, 1] * points_cam[:, 1] / points_cam[:, 2] + K[1, 2]
        return np.column_stack([pixel_x, pixel_y])

    def _in_image(self, pixels: np.ndarray) -> np.ndarray:
        return ((pixels[:, 0] >= 0) & (pixels[:, 0] < self.width) &
                (pixels[:, 1] >= 0) & (pixels[:, 1] < self.height))

    def _sample_points(self) -> Tuple[np.ndarray, np.ndarray]:
        """Sample 3D points visible in both views, returned as pixels in each view."""
        K_inv = np.linalg.inv(self.intrinsics)
        kept1, kept2 = [], []
        num_kept = 0
        for _ in range(100):
            batch = 2 * self.num_points
            pixels = self.rng.uniform([0, 0], [self.width, self.height], size=(batch, 2))
            depths = self.rng.uniform(*self.depth_range, size=batch)
            rays = (K_inv @ np.hstack([pixels, np.ones((batch, 1))]).T).T
            points_cam1 = rays * depths[:, None]

            points_cam2 = (self.rotation @ points_cam1.T).T + self.translation
            valid = points_cam2[:, 2] > 0.1
            projected = np.zeros_like(pixels)
            projected[valid] = self._project(points_cam2[valid])
            valid &= self._in_image(projected)

            kept1.append(pixels[valid])
            kept2.append(projected[valid])
            num_kept += int(valid.sum())
            if num_kept >= self.num_points:
                break
        else:
            raise RuntimeError("Could not sample enough points visible in both views")

        points1 = np.vstack(kept1)[:self.num_points]
        points2 = np.vstack(kept2)[:self.num_points]
        return points1, points2

    def _prior(self, is_calibrated: bool) -> CalibrationPrior:
        return CalibrationPrior.from_values(
            focal_length=self.focal_length if is_calibrated else None,
            image_width=self.width,
            image_height=self.height,
        )

    def generate(self) -> SyntheticTwoView:
        """
        Generate correspondences with optional pixel noise and outliers.

        Returns:
            Ground truth pair; outliers replace the second point of a random
            subset of correspondences with a uniformly random pixel
        """
        points1, points2 = self._sample_points()

        if self.noise_px > 0:
            points1 = points1 + self.rng.normal(0.0, self.noise_px, size=points1.shape)
            points2 = points2 + self.rng.normal(0.0, self.noise_px, size=points2.shape)

        is_outlier = np.zeros(self.num_points, dtype=bool)
        num_outliers = int(round(self.outlier_ratio * self.num_points))
        if num_outliers > 0:
            outlier_indices = self.rng.choice(self.num_points, size=num_outliers, replace=False)
            points2[outlier_indices] = self.rng.uniform(
                [0, 0], [self.width, self.height], size=(num_outliers, 2))
            is_outlier[outlier_indices] = True

        logger.debug(f"Generated synthetic pair: {self.num_points} correspondences, "
                     f"{num_outliers} outliers, noise {self.noise_px}px")

        return SyntheticTwoView(
            points1=points1,
            points2=points2,
            rotation=self.rotation,
            translation=self.translation,
            prior1=self._prior(self.calibrated[0]),
            prior2=self._prior(self.calibrated[1]),
            is_outlier=is_outlier,
        )
