"""Elastic-compatible base — Shared DSL, bulk and alias-swap logic."""
