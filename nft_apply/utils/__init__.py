"""Shared utilities: configuration, logging, error handling, subprocess and timeout management."""
