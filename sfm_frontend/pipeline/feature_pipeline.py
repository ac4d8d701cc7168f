"""
Concurrent feature pipeline: per-image calibration and feature extraction on a
bounded worker pool, followed by pairwise matching and geometric verification.

The pipeline connects:
1. Calibration resolution (caller prior, EXIF, focal length heuristic)
2. Feature extraction with optional masks and the out-of-core feature cache
3. Feature matching and two-view verification of the candidate pairs

Per-image failures (missing file, missing calibration, unreadable image) only
remove that image from the run. An image/mask size mismatch is a configuration
error and aborts the run.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
from tqdm import tqdm

from ..core.calibration import CalibrationPrior, CalibrationResolver, CalibrationStore
from ..core.feature_extraction import FeatureExtractor
from ..core.feature_matching import FEATURE_FILE_SUFFIX, FeatureMatcher, ImagePairMatch
from ..core.outcomes import (ConfigurationError, FeatureExtractionError, ImageOutcome,
                             MaskSizeMismatchError, ProcessStatus)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class FeaturePipeline:
    """
    Extracts features from registered images in parallel and hands them to the
    matcher.

    Images are processed by ``min(num_threads, num_images)`` workers. All
    extraction tasks finish before matching starts. Calibration priors are
    returned in registration order, so the output does not depend on the
    number of threads or on task completion order.
    """

    def __init__(self, config,
                 extractor: Optional[FeatureExtractor] = None,
                 matcher: Optional[FeatureMatcher] = None,
                 resolver: Optional[CalibrationResolver] = None,
                 calibration_store: Optional[CalibrationStore] = None):
        """
        Initialize the pipeline.

        Args:
            config: Frontend configuration (see ``sfm_frontend.config``)
            extractor: Feature extractor, built from the config when omitted
            matcher: Feature matcher, built from the config when omitted
            resolver: Calibration resolver, built from the config when omitted
            calibration_store: Shared prior map, a fresh one when omitted
        """
        self.config = config
        self.num_threads = int(config.pipeline.num_threads)
        if self.num_threads < 1:
            raise ConfigurationError(f"num_threads must be at least 1, got {self.num_threads}")

        self.only_calibrated_views = bool(config.pipeline.only_calibrated_views)
        self.cache_dir: Optional[Path] = None
        if config.pipeline.cache_dir and config.pipeline.match_out_of_core:
            self.cache_dir = Path(config.pipeline.cache_dir)
            self.cache_dir.mkdir(parents=True, exist_ok=True)

        self.extractor = extractor if extractor is not None else FeatureExtractor(config)
        self.matcher = matcher if matcher is not None else FeatureMatcher(config)
        self.resolver = resolver if resolver is not None else CalibrationResolver(self.only_calibrated_views)
        self.calibration_store = calibration_store if calibration_store is not None else CalibrationStore()
        self._registration_lock = threading.Lock()

        self.image_paths: List[str] = []
        self.mask_paths: Dict[str, str] = {}
        self.outcomes: Dict[str, ImageOutcome] = {}

        logger.info(f"FeaturePipeline initialized with {self.num_threads} threads")

    def register_image(self, image_path: PathLike, prior: Optional[CalibrationPrior] = None) -> None:
        """Append an image to the run, optionally with a caller-supplied calibration prior."""
        image_path = str(image_path)
        self.image_paths.append(image_path)
        if prior is not None:
            self.calibration_store.set(image_path, prior)

    def register_mask(self, image_path: PathLike, mask_path: PathLike) -> None:
        """Associate a mask with an image; keypoints on dark mask pixels are discarded."""
        self.mask_paths[str(image_path)] = str(mask_path)

    def restrict_pairs(self, pairs: Sequence[Tuple[PathLike, PathLike]]) -> None:
        """Match only the given pairs. Paths are reduced to their filenames."""
        self.matcher.set_pairs_to_match([(Path(a).name, Path(b).name) for a, b in pairs])

    def cache_path(self, image_path: PathLike) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{Path(image_path).name}{FEATURE_FILE_SUFFIX}"

    def run(self) -> Tuple[List[CalibrationPrior], List[ImagePairMatch]]:
        """
        Process all registered images and match them.

        Returns:
            (calibration priors in registration order, verified image pairs)

        Raises:
            ConfigurationError: If an image and its mask differ in size
        """
        start_time = time.time()
        unique_paths = list(dict.fromkeys(self.image_paths))
        outcomes: Dict[str, ImageOutcome] = {}

        tasks = []
        for image_path in unique_paths:
            if Path(image_path).is_file():
                tasks.append(image_path)
            else:
                logger.error(f"Image file does not exist: {image_path}")
                outcomes[image_path] = ImageOutcome.skipped(image_path, "image file does not exist")

        try:
            if tasks:
                self._extract_all(tasks, outcomes)
        finally:
            self.outcomes = {path: outcomes[path] for path in unique_paths if path in outcomes}

        num_succeeded = sum(1 for outcome in self.outcomes.values() if outcome.ok)
        logger.info(f"Feature extraction finished for {num_succeeded}/{len(unique_paths)} images "
                    f"in {time.time() - start_time:.2f}s")

        matches = self.matcher.match_images()

        priors = [self.calibration_store.get(path, CalibrationPrior()) for path in self.image_paths]
        logger.info(f"Pipeline completed in {time.time() - start_time:.2f}s: "
                    f"{len(priors)} priors, {len(matches)} verified pairs")
        return priors, matches

    def _extract_all(self, tasks: List[str], outcomes: Dict[str, ImageOutcome]) -> None:
        num_workers = min(self.num_threads, len(tasks))
        logger.info(f"Extracting features from {len(tasks)} images with {num_workers} workers")

        with ThreadPoolExecutor(max_workers=num_workers) as executor:
            futures = {executor.submit(self._process_image, path): path for path in tasks}
            for future in tqdm(as_completed(futures), total=len(futures), desc="Extracting features"):
                outcome = future.result()
                outcomes[futures[future]] = outcome

                if outcome.status is ProcessStatus.FATAL:
                    for pending in futures:
                        pending.cancel()
                    raise ConfigurationError(outcome.reason)

    def _process_image(self, image_path: str) -> ImageOutcome:
        """Resolve calibration, extract (or reuse cached) features and register the image."""
        prior = self.calibration_store.get(image_path, CalibrationPrior())
        if not prior.focal_length.is_set:
            prior = self.resolver.resolve(image_path, prior)
            self.calibration_store.set(image_path, prior)

        if self.only_calibrated_views and not prior.focal_length.is_set:
            logger.info(f"{image_path} has no focal length prior, skipping it")
            return ImageOutcome.skipped(image_path, "no calibration available")

        image_name = Path(image_path).name
        cache_path = self.cache_path(image_path)

        if cache_path is not None and cache_path.exists():
            logger.debug(f"Using cached features for {image_path}")
            with self._registration_lock:
                self.matcher.add_image(image_name, prior)
            return ImageOutcome.success(image_path, from_cache=True)

        try:
            features = self.extractor.extract(image_path, self.mask_paths.get(image_path))
        except MaskSizeMismatchError as e:
            logger.error(str(e))
            return ImageOutcome.fatal(image_path, str(e))
        except (FeatureExtractionError, cv2.error, OSError) as e:
            logger.error(f"Could not extract features from {image_path}: {e}")
            return ImageOutcome.skipped(image_path, str(e))

        num_features = features.num_features
        if cache_path is not None:
            features.save(cache_path)
            features = None

        with self._registration_lock:
            self.matcher.add_image(image_name, prior, features)
        return ImageOutcome.success(image_path, num_features=num_features)
