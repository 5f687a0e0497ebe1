"""
ccmeter - usage aggregation and billing-block engine.

Turns AI coding-assistant usage logs into costed events, billing blocks,
period rollups, burn-rate forecasts and usage percentages.
"""

__version__ = "0.1.0"
