"""
Unit tests for the visibility pyramid and the two-view visibility score
"""

import numpy as np
import pytest

from sfm_frontend.core.calibration import CalibrationPrior
from sfm_frontend.core.pose_estimation import compute_visibility_score
from sfm_frontend.core.visibility import VisibilityPyramid

# 2 + 4 + 8 + 16 + 32 + 64
SINGLE_POINT_SCORE_6_LEVELS = 126


class TestVisibilityPyramid:
    """Coverage score accumulation"""

    def test_empty_pyramid_scores_zero(self):
        assert VisibilityPyramid(640, 480, 6).compute_score() == 0

    def test_single_point_marks_one_cell_per_level(self):
        pyramid = VisibilityPyramid(640, 480, 6)
        pyramid.add_point((100.0, 100.0))
        assert pyramid.compute_score() == SINGLE_POINT_SCORE_6_LEVELS

    def test_repeated_point_adds_nothing(self):
        pyramid = VisibilityPyramid(640, 480, 6)
        pyramid.add_point((100.0, 100.0))
        pyramid.add_point((100.5, 100.5))
        assert pyramid.compute_score() == SINGLE_POINT_SCORE_6_LEVELS

    def test_spread_points_score_higher_than_clustered(self):
        spread = VisibilityPyramid(640, 480, 6)
        clustered = VisibilityPyramid(640, 480, 6)
        for x, y in [(10, 10), (630, 10), (10, 470), (630, 470)]:
            spread.add_point((x, y))
        for x, y in [(10, 10), (11, 10), (10, 11), (11, 11)]:
            clustered.add_point((x, y))
        assert spread.compute_score() > clustered.compute_score()

    def test_score_is_monotone(self):
        rng = np.random.default_rng(3)
        pyramid = VisibilityPyramid(640, 480, 6)
        previous = 0
        for point in rng.uniform([0, 0], [640, 480], size=(300, 2)):
            pyramid.add_point(point)
            score = pyramid.compute_score()
            assert score >= previous
            previous = score

    def test_points_outside_image_are_ignored(self):
        pyramid = VisibilityPyramid(640, 480, 6)
        for point in [(-1.0, 10.0), (10.0, -0.5), (640.0, 10.0), (10.0, 480.0)]:
            pyramid.add_point(point)
        assert pyramid.compute_score() == 0

    @pytest.mark.parametrize("width,height,levels", [(0, 480, 6), (640, -1, 6), (640, 480, 0)])
    def test_invalid_arguments(self, width, height, levels):
        with pytest.raises(ValueError):
            VisibilityPyramid(width, height, levels)


class TestVisibilityScore:
    """Two-image score used by the estimator"""

    def test_unknown_dimensions_fall_back_to_inlier_count(self):
        known = CalibrationPrior.from_values(image_width=640, image_height=480)
        unknown = CalibrationPrior()
        points = np.full((10, 2), 50.0)

        assert compute_visibility_score(known, unknown, points, points, [0, 3, 7]) == 3

    def test_sums_both_images(self):
        prior = CalibrationPrior.from_values(image_width=640, image_height=480)
        points = np.array([[100.0, 100.0]])

        assert compute_visibility_score(prior, prior, points, points, [0]) == 2 * SINGLE_POINT_SCORE_6_LEVELS

    def test_only_inliers_count(self):
        prior = CalibrationPrior.from_values(image_width=640, image_height=480)
        points = np.array([[100.0, 100.0], [600.0, 400.0]])

        assert compute_visibility_score(prior, prior, points, points, []) == 0
