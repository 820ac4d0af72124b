"""Data models — Index configuration, unified options and results."""
