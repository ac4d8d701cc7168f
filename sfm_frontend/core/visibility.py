"""
Multi-resolution spatial coverage of image points.
"""

from typing import Sequence

import numpy as np


class VisibilityPyramid:
    """
    Scores how well a set of points covers an image.

    Level ``l`` splits the image into a ``2^(l+1) x 2^(l+1)`` grid. The first
    point landing in a cell adds the level's side length to the score, so
    points spread over many fine cells score higher than the same number of
    points clustered in one region. Adding a point never lowers the score.
    """

    def __init__(self, width: int, height: int, num_levels: int):
        if width <= 0 or height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {width}x{height}")
        if num_levels <= 0:
            raise ValueError(f"Number of pyramid levels must be positive, got {num_levels}")

        self.width = width
        self.height = height
        self.num_levels = num_levels
        self._levels = [np.zeros((2 ** (level + 1), 2 ** (level + 1)), dtype=np.int32)
                        for level in range(num_levels)]
        self._score = 0

    def add_point(self, point: Sequence[float]) -> None:
        x, y = float(point[0]), float(point[1])
        # Points outside the image carry no coverage information.
        if not (0.0 <= x < self.width and 0.0 <= y < self.height):
            return

        for grid in self._levels:
            cells = grid.shape[0]
            col = min(int(x / self.width * cells), cells - 1)
            row = min(int(y / self.height * cells), cells - 1)
            if grid[row, col] == 0:
                self._score += cells
            grid[row, col] += 1

    def compute_score(self) -> int:
        return self._score
