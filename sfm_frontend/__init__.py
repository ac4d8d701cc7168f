"""
Feature front end for Structure-from-Motion: concurrent feature extraction,
pairwise matching and robust two-view geometry estimation.
"""

__version__ = "0.1.0"
