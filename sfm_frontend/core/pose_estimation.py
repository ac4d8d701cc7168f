"""
Robust two-view geometry estimation for image pairs.

Given pixel correspondences and the calibration priors of both images, decide
whether a consistent relative pose exists and recover it together with a
visibility score. Pairs where both focal lengths are known go through the
calibrated (essential matrix) branch; every other pair goes through the
uncalibrated (fundamental matrix) branch, which also recovers both focal lengths.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .calibration import CalibrationPrior
from .visibility import VisibilityPyramid

logger = logging.getLogger(__name__)

# Pixel error budgets are expressed for images whose larger side is this long.
DEFAULT_IMAGE_DIMENSION = 1024.0
VISIBILITY_PYRAMID_LEVELS = 6
MIN_CALIBRATED_CORRESPONDENCES = 5
MIN_UNCALIBRATED_CORRESPONDENCES = 8


@dataclass(frozen=True)
class TwoViewEstimationOptions:
    """RANSAC settings shared by both estimation branches."""
    max_sampson_error_pixels: float = 6.0
    # Validated only. OpenCV's RANSAC takes no lower iteration bound.
    min_ransac_iterations: int = 10
    max_ransac_iterations: int = 1000
    expected_ransac_confidence: float = 0.9999

    def __post_init__(self):
        if self.max_sampson_error_pixels <= 0:
            raise ValueError(f"max_sampson_error_pixels must be positive, got {self.max_sampson_error_pixels}")
        if self.min_ransac_iterations < 0 or self.min_ransac_iterations > self.max_ransac_iterations:
            raise ValueError(
                f"Invalid RANSAC iteration range [{self.min_ransac_iterations}, {self.max_ransac_iterations}]"
            )
        if not 0.0 < self.expected_ransac_confidence < 1.0:
            raise ValueError(f"expected_ransac_confidence must be in (0, 1), got {self.expected_ransac_confidence}")

    @property
    def failure_probability(self) -> float:
        return 1.0 - self.expected_ransac_confidence

    @classmethod
    def from_config(cls, config) -> "TwoViewEstimationOptions":
        section = config.two_view
        logger.debug(f"min_ransac_iterations={section.min_ransac_iterations} is not enforced by the OpenCV solvers")
        return cls(
            max_sampson_error_pixels=float(section.max_sampson_error_pixels),
            min_ransac_iterations=int(section.min_ransac_iterations),
            max_ransac_iterations=int(section.max_ransac_iterations),
            expected_ransac_confidence=float(section.expected_ransac_confidence),
        )


@dataclass(frozen=True)
class TwoViewInfo:
    """
    Verified relative geometry of an image pair.

    rotation is the axis-angle rotation of camera 2 relative to camera 1 and
    position the unit direction of camera 2's centre in camera 1's frame.
    focal_lengths holds one value for calibrated pairs and one per image for
    uncalibrated pairs.
    """
    rotation: np.ndarray
    position: np.ndarray
    focal_lengths: Tuple[float, ...]
    inlier_indices: Tuple[int, ...]
    num_verified_matches: int
    visibility_score: int


@dataclass(frozen=True)
class CalibratedRequest:
    """Correspondences in normalized image coordinates, threshold in normalized units."""
    prior1: CalibrationPrior
    prior2: CalibrationPrior
    points1: np.ndarray
    points2: np.ndarray
    error_threshold: float


@dataclass(frozen=True)
class UncalibratedRequest:
    """Correspondences centred on the principal points, threshold in pixels."""
    prior1: CalibrationPrior
    prior2: CalibrationPrior
    points1: np.ndarray
    points2: np.ndarray
    error_threshold: float


TwoViewRequest = Union[CalibratedRequest, UncalibratedRequest]


@dataclass
class _RelativePose:
    rotation: np.ndarray
    translation: np.ndarray
    focal_lengths: Tuple[float, ...]
    inliers: np.ndarray


def compute_resolution_scaled_threshold(threshold_pixels: float, image_width: int, image_height: int) -> float:
    """Scale a pixel threshold given for a 1024px image to the actual image size."""
    if image_width <= 0 or image_height <= 0:
        return threshold_pixels
    return threshold_pixels * max(image_width, image_height) / DEFAULT_IMAGE_DIMENSION


def build_two_view_request(options: TwoViewEstimationOptions,
                           prior1: CalibrationPrior,
                           prior2: CalibrationPrior,
                           points1: np.ndarray,
                           points2: np.ndarray) -> TwoViewRequest:
    """
    Pick the estimation branch for a pair and prepare its inputs.

    Args:
        options: Estimation options
        prior1, prior2: Calibration priors of both images
        points1, points2: [N, 2] pixel correspondences

    Returns:
        A calibrated or uncalibrated request
    """
    scaled1 = compute_resolution_scaled_threshold(
        options.max_sampson_error_pixels, prior1.image_width, prior1.image_height)
    scaled2 = compute_resolution_scaled_threshold(
        options.max_sampson_error_pixels, prior2.image_width, prior2.image_height)

    if prior1.focal_length.is_set and prior2.focal_length.is_set:
        # Points and threshold share the same focal lengths, heuristic or not.
        focal1 = prior1.focal_length.value
        focal2 = prior2.focal_length.value
        return CalibratedRequest(
            prior1, prior2,
            prior1.pixels_to_normalized(points1, focal1),
            prior2.pixels_to_normalized(points2, focal2),
            scaled1 * scaled2 / (focal1 * focal2),
        )

    if prior1.focal_length.is_set or prior2.focal_length.is_set:
        logger.warning("Two-view estimation with exactly one calibrated view is not supported; "
                       "treating both views as uncalibrated")

    return UncalibratedRequest(
        prior1, prior2,
        prior1.pixels_to_normalized(points1, 1.0),
        prior2.pixels_to_normalized(points2, 1.0),
        scaled1 * scaled2,
    )


def estimate_two_view_info(options: TwoViewEstimationOptions,
                           prior1: CalibrationPrior,
                           prior2: CalibrationPrior,
                           points1: np.ndarray,
                           points2: np.ndarray) -> Tuple[Optional[TwoViewInfo], List[int]]:
    """
    Estimate the relative geometry of two views from pixel correspondences.

    Args:
        options: Estimation options
        prior1, prior2: Calibration priors of both images
        points1, points2: [N, 2] corresponding pixel coordinates

    Returns:
        (two-view info, inlier indices); (None, []) when no consistent model exists
    """
    points1 = np.asarray(points1, dtype=np.float64).reshape(-1, 2)
    points2 = np.asarray(points2, dtype=np.float64).reshape(-1, 2)
    if len(points1) != len(points2):
        raise ValueError(f"Correspondence count mismatch: {len(points1)} != {len(points2)}")

    request = build_two_view_request(options, prior1, prior2, points1, points2)

    if isinstance(request, CalibratedRequest):
        branch = "calibrated"
        pose = _estimate_calibrated_pose(options, request)
    else:
        branch = "uncalibrated"
        pose = _estimate_uncalibrated_pose(options, request)

    if pose is None:
        logger.debug(f"Two-view estimation ({branch}) failed for {len(points1)} correspondences")
        return None, []

    inlier_indices = [int(i) for i in pose.inliers]
    rvec, _ = cv2.Rodrigues(pose.rotation)
    position = -pose.rotation.T @ pose.translation.reshape(3)
    position = position / np.linalg.norm(position)

    rotation = rvec.ravel().astype(np.float64)
    rotation.setflags(write=False)
    position.setflags(write=False)

    info = TwoViewInfo(
        rotation=rotation,
        position=position,
        focal_lengths=pose.focal_lengths,
        inlier_indices=tuple(inlier_indices),
        num_verified_matches=len(inlier_indices),
        visibility_score=compute_visibility_score(prior1, prior2, points1, points2, inlier_indices),
    )

    logger.debug(f"Two-view estimation ({branch}): {len(inlier_indices)}/{len(points1)} inliers, "
                 f"visibility score {info.visibility_score}")
    return info, inlier_indices


def compute_visibility_score(prior1: CalibrationPrior,
                             prior2: CalibrationPrior,
                             points1: np.ndarray,
                             points2: np.ndarray,
                             inlier_indices: Sequence[int]) -> int:
    """Summed spatial coverage of the inliers in both images, or the inlier count if a size is unknown."""
    if not (prior1.has_dimensions and prior2.has_dimensions):
        return len(inlier_indices)

    pyramid1 = VisibilityPyramid(prior1.image_width, prior1.image_height, VISIBILITY_PYRAMID_LEVELS)
    pyramid2 = VisibilityPyramid(prior2.image_width, prior2.image_height, VISIBILITY_PYRAMID_LEVELS)
    for i in inlier_indices:
        pyramid1.add_point(points1[i])
        pyramid2.add_point(points2[i])
    return pyramid1.compute_score() + pyramid2.compute_score()


def _estimate_calibrated_pose(options: TwoViewEstimationOptions,
                              request: CalibratedRequest) -> Optional[_RelativePose]:
    """Five-point essential matrix RANSAC on normalized coordinates."""
    points1, points2 = request.points1, request.points2
    if len(points1) < MIN_CALIBRATED_CORRESPONDENCES:
        logger.debug(f"Insufficient correspondences: {len(points1)} < {MIN_CALIBRATED_CORRESPONDENCES}")
        return None

    identity = np.eye(3)
    # The threshold bounds the squared Sampson error; OpenCV squares its threshold.
    try:
        E, inlier_mask = cv2.findEssentialMat(
            points1, points2, identity,
            method=cv2.RANSAC,
            prob=options.expected_ransac_confidence,
            threshold=math.sqrt(request.error_threshold),
            maxIters=options.max_ransac_iterations
        )
    except cv2.error as e:
        logger.warning(f"Essential matrix estimation failed: {e}")
        return None

    if E is None or inlier_mask is None or E.shape[0] < 3:
        return None

    inliers = np.flatnonzero(inlier_mask.ravel())
    if len(inliers) < MIN_CALIBRATED_CORRESPONDENCES:
        return None

    _, R, t, _ = cv2.recoverPose(E[:3], points1[inliers], points2[inliers], identity)

    focal_scale = math.sqrt(request.prior1.focal_length.value * request.prior2.focal_length.value)
    return _RelativePose(R, t, (focal_scale,), inliers)


def _estimate_uncalibrated_pose(options: TwoViewEstimationOptions,
                                request: UncalibratedRequest) -> Optional[_RelativePose]:
    """Fundamental matrix RANSAC on centred pixels, then focal lengths and pose."""
    points1, points2 = request.points1, request.points2
    if len(points1) < MIN_UNCALIBRATED_CORRESPONDENCES:
        logger.debug(f"Insufficient correspondences: {len(points1)} < {MIN_UNCALIBRATED_CORRESPONDENCES}")
        return None

    try:
        F, inlier_mask = cv2.findFundamentalMat(
            points1, points2,
            method=cv2.FM_RANSAC,
            ransacReprojThreshold=math.sqrt(request.error_threshold),
            confidence=options.expected_ransac_confidence,
            maxIters=options.max_ransac_iterations
        )
    except cv2.error as e:
        logger.warning(f"Fundamental matrix estimation failed: {e}")
        return None

    if F is None or inlier_mask is None or F.shape[0] < 3:
        return None

    F = F[:3]
    inliers = np.flatnonzero(inlier_mask.ravel())
    if len(inliers) < MIN_UNCALIBRATED_CORRESPONDENCES:
        return None

    focal_lengths = focal_lengths_from_fundamental_matrix(F)
    if focal_lengths is None:
        logger.debug("Could not recover focal lengths from the fundamental matrix")
        return None
    focal1, focal2 = focal_lengths

    K1 = np.diag([focal1, focal1, 1.0])
    K2 = np.diag([focal2, focal2, 1.0])
    E = K2.T @ F @ K1

    normalized1 = points1[inliers] / focal1
    normalized2 = points2[inliers] / focal2
    _, R, t, _ = cv2.recoverPose(E, normalized1, normalized2, np.eye(3))

    return _RelativePose(R, t, (focal1, focal2), inliers)


def focal_lengths_from_fundamental_matrix(F: np.ndarray) -> Optional[Tuple[float, float]]:
    """
    Bougnoux's closed-form focal lengths for a fundamental matrix with both
    principal points at the origin (x2^T F x1 = 0).

    Returns:
        (focal1, focal2), or None if either squared focal length is not positive
    """
    U, _, Vt = np.linalg.svd(F)
    epipole1 = Vt[-1]
    epipole2 = U[:, -1]

    focal1_sq = _bougnoux_focal_length_sq(F, epipole2)
    focal2_sq = _bougnoux_focal_length_sq(F.T, epipole1)
    if focal1_sq is None or focal2_sq is None or focal1_sq <= 0 or focal2_sq <= 0:
        return None
    return math.sqrt(focal1_sq), math.sqrt(focal2_sq)


def _bougnoux_focal_length_sq(F: np.ndarray, epipole: np.ndarray) -> Optional[float]:
    p = np.array([0.0, 0.0, 1.0])
    ii = np.diag([1.0, 1.0, 0.0])
    epipole_cross = np.array([
        [0.0, -epipole[2], epipole[1]],
        [epipole[2], 0.0, -epipole[0]],
        [-epipole[1], epipole[0], 0.0]
    ])

    numerator = -(p @ epipole_cross @ ii @ F @ p) * (p @ F.T @ p)
    denominator = p @ epipole_cross @ ii @ F @ ii @ F.T @ p
    if denominator == 0.0 or not np.isfinite(denominator):
        return None
    return float(numerator / denominator)
