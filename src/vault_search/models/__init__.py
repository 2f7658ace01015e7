"""Data models for the vault search service."""
