from .client import ScoringClient

__all__ = ["ScoringClient"]
