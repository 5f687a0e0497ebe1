"""Usage event models and log loading."""
