"""
Vault Search - tiered related-note retrieval for an Obsidian-style vault.
This package ranks notes for a free-text query or a reference note path by
trying, in order, a remote semantic-search endpoint, a local precomputed
embedding store, and a lexical TF-IDF fallback over cached note content.

This version uses asynchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vault-search")
except PackageNotFoundError:
    __version__ = "0.3.0"
