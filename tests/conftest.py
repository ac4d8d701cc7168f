"""
Shared fixtures: configuration, textured test images, synthetic pairs and
stand-ins for the extractor and matcher.
"""

import threading
from pathlib import Path

import cv2
import numpy as np
import pytest

from sfm_frontend.config import load_config
from sfm_frontend.core.feature_extraction import ImageFeatures
from sfm_frontend.core.outcomes import FeatureExtractionError
from sfm_frontend.synthetic import SyntheticTwoViewGenerator


def write_textured_image(path, width=320, height=240, seed=0):
    """Blocky upsampled noise; gives SIFT/ORB plenty of corners."""
    rng = np.random.default_rng(seed)
    noise = rng.integers(0, 256, size=(max(height // 8, 1), max(width // 8, 1)), dtype=np.uint8)
    image = cv2.resize(noise, (width, height), interpolation=cv2.INTER_NEAREST)
    assert cv2.imwrite(str(path), image)
    return Path(path)


def features_for_pair(scene, seed=0):
    """
    Features whose descriptors match exactly across the pair. The second
    image's features are shuffled so matching has to recover the pairing.
    """
    rng = np.random.default_rng(seed)
    n = len(scene.points1)
    descriptors = rng.normal(size=(n, 128)).astype(np.float32)
    perm = rng.permutation(n)
    size = (scene.prior1.image_height, scene.prior1.image_width)
    features1 = ImageFeatures(scene.points1.astype(np.float32), descriptors, size)
    features2 = ImageFeatures(scene.points2[perm].astype(np.float32), descriptors[perm], size)
    return features1, features2


@pytest.fixture
def config():
    return load_config()


@pytest.fixture
def make_config(tmp_path):
    """Config factory taking dotlist overrides."""
    def _make(*overrides):
        return load_config(overrides=list(overrides))
    return _make


@pytest.fixture
def textured_image(tmp_path):
    """Factory writing a textured grayscale PNG into the test directory."""
    def _make(name="image.png", width=320, height=240, seed=0):
        return write_textured_image(tmp_path / name, width, height, seed)
    return _make


@pytest.fixture
def synthetic_scene():
    """Factory for ground-truth pairs; noise-free and outlier-free by default."""
    def _make(**kwargs):
        return SyntheticTwoViewGenerator(**kwargs).generate()
    return _make


class SpyExtractor:
    """Records every extraction; returns canned or random features."""

    def __init__(self, features_by_name=None, failing_names=()):
        self.features_by_name = dict(features_by_name or {})
        self.failing_names = set(failing_names)
        self.calls = []
        self._lock = threading.Lock()

    def extract(self, image_path, mask_path=None):
        name = Path(image_path).name
        with self._lock:
            self.calls.append(str(image_path))
        if name in self.failing_names:
            raise FeatureExtractionError(f"Could not load image: {image_path}")
        if name in self.features_by_name:
            return self.features_by_name[name]

        rng = np.random.default_rng(len(name))
        keypoints = rng.uniform(0, 100, size=(20, 2)).astype(np.float32)
        descriptors = rng.normal(size=(20, 128)).astype(np.float32)
        return ImageFeatures(keypoints, descriptors, (100, 100))


class StubMatcher:
    """Records registrations and pair restrictions; matches nothing."""

    def __init__(self):
        self.added = []
        self.pairs = None

    def add_image(self, image_name, prior, features=None):
        self.added.append((image_name, prior, features))

    def set_pairs_to_match(self, pairs):
        self.pairs = list(pairs)

    def match_images(self):
        return []

    @property
    def added_names(self):
        return sorted(name for name, _, _ in self.added)


@pytest.fixture
def spy_extractor():
    return SpyExtractor()


@pytest.fixture
def stub_matcher():
    return StubMatcher()
