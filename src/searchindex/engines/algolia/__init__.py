"""Algolia engine."""
