"""
Unit tests for feature extraction, mask filtering and the feature file format
"""

import cv2
import numpy as np
import pytest

from sfm_frontend.core.feature_extraction import (
    FeatureExtractor,
    ImageFeatures,
    filter_keypoints_by_mask,
    load_images_from_directory,
)
from sfm_frontend.core.outcomes import ConfigurationError, FeatureExtractionError, MaskSizeMismatchError


def make_features(n=10, dim=4):
    keypoints = np.column_stack([np.arange(n), np.arange(n)]).astype(np.float32)
    descriptors = np.arange(n * dim, dtype=np.float32).reshape(n, dim)
    return ImageFeatures(keypoints, descriptors, (480, 640))


class TestMaskFiltering:
    """Bilinear mask sampling against the fixed threshold"""

    def test_all_white_mask_keeps_everything(self):
        features = make_features()
        mask = np.ones((480, 640), dtype=np.float32)

        keypoints, descriptors = filter_keypoints_by_mask(features.keypoints, features.descriptors, mask)

        assert len(keypoints) == features.num_features
        np.testing.assert_array_equal(descriptors, features.descriptors)

    def test_all_black_mask_removes_everything(self):
        features = make_features()
        mask = np.zeros((480, 640), dtype=np.float32)

        keypoints, descriptors = filter_keypoints_by_mask(features.keypoints, features.descriptors, mask)

        assert len(keypoints) == 0
        assert len(descriptors) == 0

    def test_half_mask_keeps_order(self):
        keypoints = np.array([[50.0, 10.0], [10.0, 10.0], [40.0, 30.0], [20.0, 5.0]], dtype=np.float32)
        descriptors = np.arange(4, dtype=np.float32).reshape(4, 1)
        mask = np.zeros((64, 64), dtype=np.float32)
        mask[:, :32] = 1.0

        kept_keypoints, kept_descriptors = filter_keypoints_by_mask(keypoints, descriptors, mask)

        np.testing.assert_array_equal(kept_keypoints, keypoints[[1, 3]])
        np.testing.assert_array_equal(kept_descriptors.ravel(), [1.0, 3.0])

    def test_empty_keypoints(self):
        keypoints = np.empty((0, 2), dtype=np.float32)
        descriptors = np.empty((0, 128), dtype=np.float32)
        kept, _ = filter_keypoints_by_mask(keypoints, descriptors, np.ones((10, 10)))
        assert len(kept) == 0


class TestImageFeatures:
    """Truncation and persistence"""

    def test_truncation_keeps_first_features(self):
        features = make_features(n=10)
        truncated = features.truncated(3)

        assert truncated.num_features == 3
        np.testing.assert_array_equal(truncated.keypoints, features.keypoints[:3])
        np.testing.assert_array_equal(truncated.descriptors, features.descriptors[:3])

    def test_truncation_below_limit_is_noop(self):
        features = make_features(n=5)
        assert features.truncated(10) is features

    def test_save_and_load(self, tmp_path):
        features = make_features()
        path = tmp_path / "image.png.features"

        features.save(path)
        loaded = ImageFeatures.load(path)

        assert path.exists()
        np.testing.assert_array_equal(loaded.keypoints, features.keypoints)
        np.testing.assert_array_equal(loaded.descriptors, features.descriptors)
        assert loaded.image_size == (480, 640)


class TestFeatureExtractor:
    """OpenCV-backed extraction"""

    def test_sift_extraction(self, config, textured_image):
        path = textured_image()

        features = FeatureExtractor(config).extract(path)

        assert features.num_features > 0
        assert features.keypoints.shape == (features.num_features, 2)
        assert features.descriptors.shape == (features.num_features, 128)
        assert features.image_size == (240, 320)

    def test_orb_descriptors_are_binary(self, make_config, textured_image):
        path = textured_image()
        extractor = FeatureExtractor(make_config("feature_extractor.descriptor_type=orb"))

        features = extractor.extract(path)

        assert features.descriptors.dtype == np.uint8

    def test_max_num_features_truncates_in_detection_order(self, make_config, textured_image):
        path = textured_image()
        extractor = FeatureExtractor(make_config("feature_extractor.max_num_features=10"))

        full = extractor.detect(path)
        features = extractor.extract(path)

        assert full.num_features > 10
        assert features.num_features == 10
        np.testing.assert_array_equal(features.keypoints, full.keypoints[:10])

    def test_black_mask_removes_all_features(self, config, textured_image, tmp_path):
        path = textured_image()
        mask_path = tmp_path / "mask.png"
        cv2.imwrite(str(mask_path), np.zeros((240, 320), dtype=np.uint8))

        features = FeatureExtractor(config).extract(path, mask_path)

        assert features.num_features == 0

    def test_white_mask_keeps_all_features(self, config, textured_image, tmp_path):
        path = textured_image()
        mask_path = tmp_path / "mask.png"
        cv2.imwrite(str(mask_path), np.full((240, 320), 255, dtype=np.uint8))
        extractor = FeatureExtractor(config)

        assert extractor.extract(path, mask_path).num_features == extractor.extract(path).num_features

    def test_mask_size_mismatch(self, config, textured_image, tmp_path):
        path = textured_image()
        mask_path = tmp_path / "mask.png"
        cv2.imwrite(str(mask_path), np.full((100, 100), 255, dtype=np.uint8))

        with pytest.raises(MaskSizeMismatchError) as excinfo:
            FeatureExtractor(config).extract(path, mask_path)
        assert isinstance(excinfo.value, ConfigurationError)

    def test_unreadable_image(self, config, tmp_path):
        path = tmp_path / "broken.png"
        path.write_bytes(b"not an image")

        with pytest.raises(FeatureExtractionError):
            FeatureExtractor(config).extract(path)

    @pytest.mark.parametrize("override", [
        "feature_extractor.descriptor_type=surf",
        "feature_extractor.feature_density=extreme",
        "feature_extractor.max_num_features=0",
    ])
    def test_invalid_options(self, make_config, override):
        with pytest.raises(ValueError):
            FeatureExtractor(make_config(override))


class TestLoadImages:
    """Directory listing"""

    def test_lists_images_sorted(self, textured_image, tmp_path):
        textured_image("b.png")
        textured_image("a.png")
        (tmp_path / "notes.txt").write_text("ignored")

        paths = load_images_from_directory(tmp_path)

        assert [p.name for p in paths] == ["a.png", "b.png"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_images_from_directory(tmp_path / "missing")

    def test_suffix_match_ignores_case(self, textured_image, tmp_path):
        textured_image("upper.PNG")
        textured_image("mixed.Jpg")
        (tmp_path / "folder.png").mkdir()

        paths = load_images_from_directory(tmp_path)

        assert [p.name for p in paths] == ["mixed.Jpg", "upper.PNG"]
