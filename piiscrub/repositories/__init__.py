"""Storage backends."""

from .token_repo import TokenStore, TokenStoreError

__all__ = ["TokenStore", "TokenStoreError"]
