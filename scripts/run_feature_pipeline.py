"""
Command-line interface for the concurrent feature pipeline.

Extracts features from a directory of images, matches the image pairs and
writes a JSON summary of the calibration priors and verified pairs.

Usage:
    python -m scripts.run_feature_pipeline --images data/test_data/ --output outputs/features.json
    python -m scripts.run_feature_pipeline --images data/scene/ --cache outputs/cache --threads 8
    python -m scripts.run_feature_pipeline --images data/scene/ --masks data/scene_masks/ --pairs pairs.txt
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sfm_frontend.config import load_config
from sfm_frontend.core.calibration import CalibrationPrior
from sfm_frontend.core.feature_extraction import load_images_from_directory
from sfm_frontend.core.feature_matching import ImagePairMatch
from sfm_frontend.core.outcomes import ConfigurationError
from sfm_frontend.pipeline.feature_pipeline import FeaturePipeline

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def setup_logging(log_file: Path) -> None:
    """Log to a file in addition to the console."""
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    logging.getLogger().addHandler(file_handler)
    logger.info(f"Logging to file: {log_file}")


def find_mask(mask_dir: Path, image_path: Path) -> Optional[Path]:
    """Mask with the image's filename, or its stem with a .png extension."""
    for candidate in (mask_dir / image_path.name, mask_dir / f"{image_path.stem}.png"):
        if candidate.exists():
            return candidate
    return None


def read_pairs(pairs_file: Path) -> List[Tuple[str, str]]:
    """Read whitespace-separated image pairs, one per line; '#' starts a comment."""
    pairs = []
    with open(pairs_file) as f:
        for line_number, line in enumerate(f, start=1):
            line = line.split('#', 1)[0].strip()
            if not line:
                continue
            fields = line.split()
            if len(fields) != 2:
                raise ValueError(f"{pairs_file}:{line_number}: expected two image names, got {len(fields)}")
            pairs.append((fields[0], fields[1]))
    return pairs


def prior_to_dict(image_path: str, prior: CalibrationPrior) -> Dict:
    return {
        'image': image_path,
        'width': prior.image_width,
        'height': prior.image_height,
        'focal_length': prior.focal_length.value if prior.focal_length.is_set else None,
        'focal_length_is_heuristic': prior.focal_length_is_heuristic,
        'principal_point': list(prior.principal_point.value) if prior.principal_point.is_set else None,
    }


def match_to_dict(match: ImagePairMatch) -> Dict:
    info = match.twoview_info
    return {
        'image1': match.image1,
        'image2': match.image2,
        'rotation': info.rotation.tolist(),
        'position': info.position.tolist(),
        'focal_lengths': list(info.focal_lengths),
        'num_verified_matches': info.num_verified_matches,
        'visibility_score': info.visibility_score,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Extract, match and verify features for a set of images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m scripts.run_feature_pipeline --images data/test_data/
  python -m scripts.run_feature_pipeline --images data/scene/ --config config/base_config.yaml --threads 8
        """
    )

    parser.add_argument('--images', '-i', type=str, required=True,
                        help='Directory containing the input images')
    parser.add_argument('--config', '-c', type=str, default=None,
                        help='YAML config merged over the defaults')
    parser.add_argument('--output', '-o', type=str, default='outputs/feature_pipeline.json',
                        help='JSON summary file (default: outputs/feature_pipeline.json)')
    parser.add_argument('--cache', type=str, default=None,
                        help='Out-of-core feature cache directory')
    parser.add_argument('--masks', type=str, default=None,
                        help='Directory with one mask per image (same filename or <stem>.png)')
    parser.add_argument('--pairs', type=str, default=None,
                        help='Text file restricting matching to the listed image pairs')
    parser.add_argument('--threads', '-t', type=int, default=None,
                        help='Number of extraction threads')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    parser.add_argument('overrides', nargs='*',
                        help='Config overrides, e.g. feature_extractor.descriptor_type=orb')

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Verbose logging enabled")

    overrides = list(args.overrides)
    if args.cache:
        overrides.append(f"pipeline.cache_dir={args.cache}")
    if args.threads is not None:
        overrides.append(f"pipeline.num_threads={args.threads}")

    try:
        cfg = load_config(args.config, overrides)
        image_paths = load_images_from_directory(args.images)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)

    if len(image_paths) < 2:
        logger.error(f"At least 2 images required, found {len(image_paths)} in {args.images}")
        sys.exit(1)

    output_file = Path(args.output)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    setup_logging(output_file.with_suffix('.log'))

    pipeline = FeaturePipeline(cfg)
    for image_path in image_paths:
        pipeline.register_image(image_path)
        if args.masks:
            mask_path = find_mask(Path(args.masks), image_path)
            if mask_path is not None:
                pipeline.register_mask(image_path, mask_path)

    if args.pairs:
        pipeline.restrict_pairs(read_pairs(Path(args.pairs)))

    try:
        priors, matches = pipeline.run()
    except ConfigurationError as e:
        logger.error(f"Feature pipeline aborted: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Feature pipeline interrupted by user")
        sys.exit(1)

    summary = {
        'images': [prior_to_dict(str(path), prior) for path, prior in zip(pipeline.image_paths, priors)],
        'outcomes': {path: outcome.status.value for path, outcome in pipeline.outcomes.items()},
        'pairs': [match_to_dict(match) for match in matches],
    }
    with open(output_file, 'w') as f:
        json.dump(summary, f, indent=2)

    logger.info(f"Verified {len(matches)} pairs across {len(image_paths)} images")
    logger.info(f"Summary written to {output_file}")


if __name__ == "__main__":
    main()
