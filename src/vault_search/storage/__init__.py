"""Vault access and content caching for the vault search service."""

from vault_search.storage.content_cache import VaultContentCache
from vault_search.storage.vault_client import LocalVault, ObsidianRestVault

__all__ = [
    "VaultContentCache",
    "LocalVault",
    "ObsidianRestVault",
]
