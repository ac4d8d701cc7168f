"""
Unit tests for configuration loading
"""

from pathlib import Path

import pytest
from omegaconf import OmegaConf
from omegaconf.errors import ValidationError

from sfm_frontend.config import load_config

BASE_CONFIG = Path(__file__).resolve().parent.parent / "config" / "base_config.yaml"


class TestLoadConfig:
    """Defaults, YAML files and dotlist overrides"""

    def test_defaults(self):
        cfg = load_config()

        assert cfg.pipeline.num_threads == 4
        assert cfg.pipeline.cache_dir is None
        assert cfg.feature_extractor.descriptor_type == "sift"
        assert cfg.feature_matching.lowes_ratio == pytest.approx(0.8)
        assert cfg.two_view.max_sampson_error_pixels == pytest.approx(6.0)

    def test_overrides(self):
        cfg = load_config(overrides=["pipeline.num_threads=8", "feature_extractor.descriptor_type=orb"])

        assert cfg.pipeline.num_threads == 8
        assert cfg.feature_extractor.descriptor_type == "orb"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        OmegaConf.save(OmegaConf.create({"feature_matching": {"min_num_inlier_matches": 12}}), path)

        cfg = load_config(path)

        assert cfg.feature_matching.min_num_inlier_matches == 12
        assert cfg.feature_matching.min_num_feature_matches == 30

    def test_base_config_matches_defaults(self):
        assert OmegaConf.to_container(load_config(BASE_CONFIG)) == OmegaConf.to_container(load_config())

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_type_checked_overrides(self):
        with pytest.raises(ValidationError):
            load_config(overrides=["pipeline.num_threads=many"])
