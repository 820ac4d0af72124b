"""OpenSearch engine (v2+)."""
