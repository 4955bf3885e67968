"""Background maintenance workers."""

from .token_pruner import PruneState, TokenPruner

__all__ = ["PruneState", "TokenPruner"]
