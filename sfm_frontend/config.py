"""
Configuration schema and loading for the SfM front end.

Defaults live in the structured dataclasses below; ``config/base_config.yaml``
mirrors them for the Hydra scripts. Components receive the merged ``DictConfig``
and read their own section (``config.feature_extractor.max_num_features`` etc.).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union
import logging

from omegaconf import DictConfig, OmegaConf

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    num_threads: int = 4
    # Skip images whose focal length cannot be read from EXIF instead of guessing one.
    only_calibrated_views: bool = False
    # Directory holding one ``<image_filename>.features`` file per image.
    cache_dir: Optional[str] = None
    match_out_of_core: bool = True


@dataclass
class FeatureExtractorConfig:
    descriptor_type: str = "sift"
    feature_density: str = "normal"
    max_num_features: int = 16384
    device: str = "cuda"


@dataclass
class FeatureMatchingConfig:
    matcher_type: str = "brute_force"
    lowes_ratio: float = 0.8
    keep_only_symmetric_matches: bool = True
    min_num_feature_matches: int = 30
    min_num_inlier_matches: int = 30


@dataclass
class TwoViewConfig:
    max_sampson_error_pixels: float = 6.0
    min_ransac_iterations: int = 10
    max_ransac_iterations: int = 1000
    expected_ransac_confidence: float = 0.9999


@dataclass
class SyntheticConfig:
    """Synthetic pair used by ``scripts/debug_two_view.py``."""
    num_points: int = 120
    focal_length: float = 800.0
    image_size: List[int] = field(default_factory=lambda: [640, 480])
    rotation_deg: List[float] = field(default_factory=lambda: [4.0, 8.0, 3.0])
    baseline: List[float] = field(default_factory=lambda: [1.0, 0.3, -0.2])
    noise_px: float = 0.3
    outlier_ratio: float = 0.2
    calibrated: List[bool] = field(default_factory=lambda: [True, True])
    seed: int = 0


@dataclass
class FrontendConfig:
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    feature_extractor: FeatureExtractorConfig = field(default_factory=FeatureExtractorConfig)
    feature_matching: FeatureMatchingConfig = field(default_factory=FeatureMatchingConfig)
    two_view: TwoViewConfig = field(default_factory=TwoViewConfig)
    synthetic: SyntheticConfig = field(default_factory=SyntheticConfig)


def load_config(path: Optional[Union[str, Path]] = None,
                overrides: Optional[List[str]] = None) -> DictConfig:
    """
    Build the run configuration.

    Args:
        path: Optional YAML file merged over the defaults
        overrides: Optional dotlist overrides, e.g. ``["pipeline.num_threads=8"]``

    Returns:
        Merged configuration
    """
    config = OmegaConf.structured(FrontendConfig)

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        config = OmegaConf.merge(config, OmegaConf.load(path))
        logger.info(f"Loaded configuration from {path}")

    if overrides:
        config = OmegaConf.merge(config, OmegaConf.from_dotlist(list(overrides)))

    return config
