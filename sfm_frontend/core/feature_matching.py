"""
Pairwise feature matching with geometric verification.

Images are registered one at a time (possibly from several threads, the caller
serializes registration). Features are either kept in memory or written to the
out-of-core cache as ``<cache_dir>/<image_name>.features`` and read back while
matching. Every candidate pair is matched on descriptors and verified with
the two-view geometry estimator; only verified pairs are returned.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from tqdm import tqdm

from .calibration import CalibrationPrior
from .feature_extraction import ImageFeatures
from .outcomes import FeatureExtractionError
from .pose_estimation import TwoViewEstimationOptions, TwoViewInfo, estimate_two_view_info

logger = logging.getLogger(__name__)

FEATURE_FILE_SUFFIX = ".features"
MATCHER_TYPES = ("brute_force", "lightglue")


@dataclass(frozen=True)
class ImagePairMatch:
    """A verified image pair with its geometry and inlier correspondences."""
    image1: str
    image2: str
    twoview_info: TwoViewInfo
    points1: np.ndarray
    points2: np.ndarray

    @property
    def num_inliers(self) -> int:
        return len(self.points1)


class FeatureMatcher:
    """
    Matches registered images pairwise and keeps geometrically verified pairs.
    """

    def __init__(self, config, two_view_options: Optional[TwoViewEstimationOptions] = None,
                 max_cached_images: int = 128):
        section = config.feature_matching
        self.matcher_type = str(section.matcher_type).lower()
        self.lowes_ratio = float(section.lowes_ratio)
        self.keep_only_symmetric_matches = bool(section.keep_only_symmetric_matches)
        self.min_num_feature_matches = int(section.min_num_feature_matches)
        self.min_num_inlier_matches = int(section.min_num_inlier_matches)
        self.two_view_options = two_view_options or TwoViewEstimationOptions.from_config(config)

        if self.matcher_type not in MATCHER_TYPES:
            raise ValueError(f"Unknown matcher type: {self.matcher_type}")

        self.cache_dir: Optional[Path] = None
        if config.pipeline.cache_dir and config.pipeline.match_out_of_core:
            self.cache_dir = Path(config.pipeline.cache_dir)
            self.cache_dir.mkdir(parents=True, exist_ok=True)

        self.device_name = getattr(config.feature_extractor, "device", "cuda")
        self._lightglue = None

        self._priors: Dict[str, CalibrationPrior] = {}
        self._features: Dict[str, ImageFeatures] = {}
        self._loaded: "OrderedDict[str, ImageFeatures]" = OrderedDict()
        self._max_cached_images = max_cached_images
        self._pairs_to_match: Optional[List[Tuple[str, str]]] = None

        logger.info(f"FeatureMatcher initialized with {self.matcher_type} "
                    f"(out-of-core cache: {self.cache_dir or 'disabled'})")

    def feature_path(self, image_name: str) -> Optional[Path]:
        """Location of the cached features of an image, None without a cache."""
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{image_name}{FEATURE_FILE_SUFFIX}"

    @property
    def image_names(self) -> List[str]:
        return sorted(self._priors)

    def prior(self, image_name: str) -> CalibrationPrior:
        return self._priors[image_name].copy()

    def add_image(self, image_name: str, prior: CalibrationPrior,
                  features: Optional[ImageFeatures] = None) -> None:
        """
        Register an image for matching.

        Args:
            image_name: Image filename used to identify the image in matches
            prior: Resolved calibration prior
            features: Extracted features; None when they are already in the cache
        """
        path = self.feature_path(image_name)
        if features is None:
            if path is None or not path.exists():
                raise ValueError(f"No features given and none cached for {image_name}")
        elif path is not None:
            features.save(path)
        else:
            self._features[image_name] = features

        self._priors[image_name] = prior.copy()
        logger.debug(f"Registered {image_name} for matching")

    def set_pairs_to_match(self, pairs: Sequence[Tuple[str, str]]) -> None:
        """Restrict matching to the given image-name pairs instead of all pairs."""
        self._pairs_to_match = [(str(a), str(b)) for a, b in pairs]

    def _candidate_pairs(self) -> List[Tuple[str, str]]:
        names = self.image_names
        if self._pairs_to_match is None:
            return [(names[i], names[j]) for i in range(len(names)) for j in range(i + 1, len(names))]

        registered = set(names)
        pairs, seen = [], set()
        for name1, name2 in self._pairs_to_match:
            if name1 not in registered or name2 not in registered:
                logger.warning(f"Skipping pair ({name1}, {name2}): image not registered")
                continue
            key = tuple(sorted((name1, name2)))
            if name1 == name2 or key in seen:
                continue
            seen.add(key)
            pairs.append((name1, name2))
        return pairs

    def _load_features(self, image_name: str) -> ImageFeatures:
        if image_name in self._features:
            return self._features[image_name]

        if image_name in self._loaded:
            self._loaded.move_to_end(image_name)
            return self._loaded[image_name]

        features = ImageFeatures.load(self.feature_path(image_name))
        self._loaded[image_name] = features
        if len(self._loaded) > self._max_cached_images:
            self._loaded.popitem(last=False)
        return features

    def match_images(self) -> List[ImagePairMatch]:
        """
        Match and verify all candidate pairs.

        Returns:
            Verified pairs in candidate order
        """
        pairs = self._candidate_pairs()
        if not pairs:
            logger.warning("No image pairs to match")
            return []

        logger.info(f"Matching {len(pairs)} image pairs")
        matches = []
        with tqdm(total=len(pairs), desc="Matching pairs") as pbar:
            for name1, name2 in pairs:
                try:
                    match = self.match_pair(name1, name2)
                except (FeatureExtractionError, cv2.error, OSError, ValueError, KeyError) as e:
                    logger.error(f"Failed to match pair ({name1}, {name2}): {e}")
                    match = None

                if match is not None:
                    matches.append(match)
                    pbar.set_postfix({'verified': len(matches)})
                pbar.update(1)

        logger.info(f"Verified {len(matches)}/{len(pairs)} image pairs")
        return matches

    def match_pair(self, image1: str, image2: str) -> Optional[ImagePairMatch]:
        """Match one pair; None when it has too few matches or fails verification."""
        features1 = self._load_features(image1)
        features2 = self._load_features(image2)

        if self.matcher_type == "lightglue":
            indices = self._match_lightglue(features1, features2)
        else:
            indices = self._match_brute_force(features1.descriptors, features2.descriptors)

        if len(indices) < self.min_num_feature_matches:
            logger.debug(f"Pair ({image1}, {image2}): {len(indices)} matches "
                         f"< {self.min_num_feature_matches}, skipping")
            return None

        points1 = features1.keypoints[indices[:, 0]].astype(np.float64)
        points2 = features2.keypoints[indices[:, 1]].astype(np.float64)

        twoview_info, inliers = estimate_two_view_info(
            self.two_view_options, self._priors[image1], self._priors[image2], points1, points2)

        if twoview_info is None:
            logger.debug(f"Pair ({image1}, {image2}): geometric verification failed")
            return None
        if len(inliers) < self.min_num_inlier_matches:
            logger.debug(f"Pair ({image1}, {image2}): {len(inliers)} inliers "
                         f"< {self.min_num_inlier_matches}, skipping")
            return None

        return ImagePairMatch(image1, image2, twoview_info, points1[inliers], points2[inliers])

    def _match_brute_force(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        """
        Nearest-neighbour matching with Lowe's ratio test.

        Returns:
            [M, 2] array of (index1, index2)
        """
        if len(descriptors1) < 2 or len(descriptors2) < 2:
            return np.empty((0, 2), dtype=np.int64)

        norm = cv2.NORM_HAMMING if descriptors1.dtype == np.uint8 else cv2.NORM_L2
        if norm == cv2.NORM_L2:
            descriptors1 = descriptors1.astype(np.float32)
            descriptors2 = descriptors2.astype(np.float32)
        matcher = cv2.BFMatcher(norm)

        forward = self._ratio_test(matcher.knnMatch(descriptors1, descriptors2, k=2))
        if self.keep_only_symmetric_matches:
            backward = self._ratio_test(matcher.knnMatch(descriptors2, descriptors1, k=2))
            forward = {i: j for i, j in forward.items() if backward.get(j) == i}

        if not forward:
            return np.empty((0, 2), dtype=np.int64)
        return np.array(sorted(forward.items()), dtype=np.int64)

    def _ratio_test(self, knn_matches) -> Dict[int, int]:
        good = {}
        for candidates in knn_matches:
            if len(candidates) < 2:
                continue
            best, second = candidates[0], candidates[1]
            if best.distance < self.lowes_ratio * second.distance:
                good[best.queryIdx] = best.trainIdx
        return good

    def _match_lightglue(self, features1: ImageFeatures, features2: ImageFeatures) -> np.ndarray:
        """Match SuperPoint features with LightGlue."""
        import torch

        if self._lightglue is None:
            from lightglue import LightGlue

            self.device = torch.device(self.device_name if torch.cuda.is_available() else 'cpu')
            self._lightglue = LightGlue(features='superpoint').eval().to(self.device)

        def _as_input(features: ImageFeatures) -> Dict:
            height, width = features.image_size
            return {
                'keypoints': torch.from_numpy(features.keypoints).float().unsqueeze(0).to(self.device),
                'descriptors': torch.from_numpy(features.descriptors).float().unsqueeze(0).to(self.device),
                'image_size': torch.tensor([[width, height]], device=self.device).float()
            }

        with torch.no_grad():
            pred = self._lightglue({'image0': _as_input(features1), 'image1': _as_input(features2)})

        matches0 = pred['matches0'][0].cpu().numpy()
        valid = np.flatnonzero(matches0 > -1)
        return np.column_stack([valid, matches0[valid]]).astype(np.int64)
