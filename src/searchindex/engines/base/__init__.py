"""Base engine interface — Contract, errors and registry shared by all backends."""
