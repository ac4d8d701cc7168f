"""
Synthetic data generation for testing the two-view estimator.

Generates image pairs with known relative pose and correspondences, with
optional pixel noise and outliers.
"""

from .two_view import SyntheticTwoView, SyntheticTwoViewGenerator, rotation_error_deg, rotation_from_euler_deg

__all__ = [
    'SyntheticTwoView',
    'SyntheticTwoViewGenerator',
    'rotation_error_deg',
    'rotation_from_euler_deg'
]
