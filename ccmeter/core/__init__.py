"""
Core modules for ccmeter.

This package contains the pure engine stages: cost resolution, block
segmentation, rollups, burn-rate forecasting and percentage calculation.
"""
