"""Placement resolution, replica decisions and compliance roll-up for governance policies."""

__version__ = "0.1.0"
__all__ = ["aggregation", "metrics", "models", "propagation", "replicated", "store"]