"""Meilisearch engine."""
