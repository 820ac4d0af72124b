"""Elasticsearch engine (v8+)."""
