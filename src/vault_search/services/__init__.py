"""Retrieval tiers and their helpers."""
