"""
Keypoint and descriptor extraction with OpenCV detectors or SuperPoint.
"""

import logging
import threading
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np
from scipy.ndimage import map_coordinates

from .outcomes import FeatureExtractionError, MaskSizeMismatchError

logger = logging.getLogger(__name__)

# Keypoints where the mask is darker than this are discarded.
MASK_THRESHOLD = 0.5

DESCRIPTOR_TYPES = ("sift", "orb", "akaze", "superpoint")
FEATURE_DENSITIES = ("sparse", "normal", "dense")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".tiff", ".bmp")

_SIFT_CONTRAST_THRESHOLD = {"sparse": 0.06, "normal": 0.04, "dense": 0.02}
_ORB_NUM_FEATURES = {"sparse": 2000, "normal": 5000, "dense": 10000}
_AKAZE_THRESHOLD = {"sparse": 0.003, "normal": 0.001, "dense": 0.0003}
_SUPERPOINT_THRESHOLD = {"sparse": 0.01, "normal": 0.005, "dense": 0.001}


@dataclass
class ImageFeatures:
    """Keypoints ([N, 2] pixel x, y) and their descriptors ([N, D]) in detection order."""
    keypoints: np.ndarray
    descriptors: np.ndarray
    image_size: Tuple[int, int]  # (height, width)

    @property
    def num_features(self) -> int:
        return len(self.keypoints)

    def truncated(self, max_num_features: int) -> "ImageFeatures":
        """Keep the first ``max_num_features`` features."""
        if self.num_features <= max_num_features:
            return self
        return ImageFeatures(self.keypoints[:max_num_features],
                             self.descriptors[:max_num_features],
                             self.image_size)

    def save(self, path: Union[str, Path]) -> None:
        # Write through a file handle so numpy keeps the ``.features`` name.
        with open(path, "wb") as f:
            np.savez(f, keypoints=self.keypoints, descriptors=self.descriptors,
                     image_size=np.asarray(self.image_size, dtype=np.int64))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ImageFeatures":
        """
        Read features written by ``save``.

        Raises:
            FeatureExtractionError: If the file is empty, truncated or not a feature archive
        """
        try:
            with np.load(path) as data:
                height, width = (int(v) for v in data["image_size"])
                return cls(data["keypoints"], data["descriptors"], (height, width))
        except (EOFError, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise FeatureExtractionError(f"Unreadable feature file {path}: {e}") from e


def load_mask(mask_path: Union[str, Path]) -> np.ndarray:
    """Load a mask image as grayscale values in [0, 1]."""
    mask = cv2.imread(str(mask_path), cv2.IMREAD_GRAYSCALE)
    if mask is None:
        raise FeatureExtractionError(f"Could not load mask: {mask_path}")
    return mask.astype(np.float32) / 255.0


def filter_keypoints_by_mask(keypoints: np.ndarray,
                             descriptors: np.ndarray,
                             mask: np.ndarray,
                             threshold: float = MASK_THRESHOLD) -> Tuple[np.ndarray, np.ndarray]:
    """
    Drop keypoints whose bilinearly interpolated mask value is below the threshold.

    Args:
        keypoints: [N, 2] pixel coordinates (x, y)
        descriptors: [N, D] descriptors aligned with keypoints
        mask: [H, W] mask with values in [0, 1]

    Returns:
        Filtered keypoints and descriptors, order preserved
    """
    if len(keypoints) == 0:
        return keypoints, descriptors

    values = map_coordinates(mask, [keypoints[:, 1], keypoints[:, 0]], order=1, mode="nearest")
    keep = values >= threshold
    return keypoints[keep], descriptors[keep]


class FeatureExtractor:
    """
    Per-image feature extraction.

    OpenCV detectors are created per call so one extractor can be shared by
    several worker threads. SuperPoint inference is serialized on one model.
    """

    def __init__(self, config):
        section = config.feature_extractor
        self.descriptor_type = str(section.descriptor_type).lower()
        self.feature_density = str(section.feature_density).lower()
        self.max_num_features = int(section.max_num_features)

        if self.descriptor_type not in DESCRIPTOR_TYPES:
            raise ValueError(f"Unknown descriptor type: {self.descriptor_type}")
        if self.feature_density not in FEATURE_DENSITIES:
            raise ValueError(f"Unknown feature density: {self.feature_density}")
        if self.max_num_features <= 0:
            raise ValueError(f"max_num_features must be positive, got {self.max_num_features}")

        self._superpoint = None
        self._superpoint_lock = threading.Lock()
        if self.descriptor_type == "superpoint":
            self._load_superpoint(getattr(section, "device", "cuda"))

        logger.info(f"FeatureExtractor initialized with {self.descriptor_type} "
                    f"({self.feature_density} density, max {self.max_num_features} features)")

    def _load_superpoint(self, device: str):
        import torch
        from lightglue import SuperPoint

        self.device = torch.device(device if torch.cuda.is_available() else "cpu")
        self._superpoint = SuperPoint(
            max_num_keypoints=self.max_num_features,
            detection_threshold=_SUPERPOINT_THRESHOLD[self.feature_density]
        ).eval().to(self.device)

    def _create_detector(self):
        if self.descriptor_type == "sift":
            return cv2.SIFT_create(contrastThreshold=_SIFT_CONTRAST_THRESHOLD[self.feature_density])
        if self.descriptor_type == "orb":
            return cv2.ORB_create(nfeatures=_ORB_NUM_FEATURES[self.feature_density])
        return cv2.AKAZE_create(threshold=_AKAZE_THRESHOLD[self.feature_density])

    def detect(self, image_path: Union[str, Path]) -> ImageFeatures:
        """Detect keypoints and compute descriptors without masking or truncation."""
        if self.descriptor_type == "superpoint":
            return self._detect_superpoint(image_path)

        image = cv2.imread(str(image_path), cv2.IMREAD_GRAYSCALE)
        if image is None:
            raise FeatureExtractionError(f"Could not load image: {image_path}")

        detector = self._create_detector()
        cv_keypoints, descriptors = detector.detectAndCompute(image, None)
        if descriptors is None or len(cv_keypoints) == 0:
            raise FeatureExtractionError(f"No features detected in {image_path}")

        keypoints = np.array([kp.pt for kp in cv_keypoints], dtype=np.float32).reshape(-1, 2)
        return ImageFeatures(keypoints, descriptors, image.shape[:2])

    def _detect_superpoint(self, image_path: Union[str, Path]) -> ImageFeatures:
        import torch
        from lightglue.utils import load_image

        try:
            image = load_image(Path(image_path))
        except OSError as e:
            raise FeatureExtractionError(f"Could not load image: {image_path}") from e

        with self._superpoint_lock, torch.no_grad():
            features = self._superpoint({"image": image.unsqueeze(0).to(self.device)})

        keypoints = features["keypoints"][0].cpu().numpy().astype(np.float32)
        descriptors = features["descriptors"][0].cpu().numpy()
        if len(keypoints) == 0:
            raise FeatureExtractionError(f"No features detected in {image_path}")
        return ImageFeatures(keypoints, descriptors, tuple(image.shape[-2:]))

    def extract(self, image_path: Union[str, Path], mask_path: Optional[Union[str, Path]] = None) -> ImageFeatures:
        """
        Extract features from one image.

        Args:
            image_path: Path to the image
            mask_path: Optional mask; keypoints on dark mask regions are discarded

        Returns:
            Features truncated to ``max_num_features`` in detection order

        Raises:
            FeatureExtractionError: If the image cannot be processed
            MaskSizeMismatchError: If image and mask sizes differ
        """
        features = self.detect(image_path)

        if mask_path:
            mask = load_mask(mask_path)
            if mask.shape[:2] != tuple(features.image_size):
                height, width = features.image_size
                raise MaskSizeMismatchError(
                    f"The image and the mask don't have the same size: "
                    f"{image_path} ({width} x {height}), {mask_path} ({mask.shape[1]} x {mask.shape[0]})"
                )
            keypoints, descriptors = filter_keypoints_by_mask(features.keypoints, features.descriptors, mask)
            features = ImageFeatures(keypoints, descriptors, features.image_size)

        features = features.truncated(self.max_num_features)

        if mask_path:
            logger.debug(f"Extracted {features.num_features} features from {image_path} with an image mask")
        else:
            logger.debug(f"Extracted {features.num_features} features from {image_path}")
        return features


def load_images_from_directory(directory: Union[str, Path],
                               extensions: Optional[List[str]] = None) -> List[Path]:
    """Image files directly inside ``directory``, matched on a case-insensitive suffix, sorted by path."""
    suffixes = {ext.lower() for ext in (extensions or IMAGE_EXTENSIONS)}

    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Image directory not found: {directory}")

    return sorted(path for path in directory.iterdir()
                  if path.is_file() and path.suffix.lower() in suffixes)
