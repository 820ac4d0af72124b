"""Typesense engine."""
