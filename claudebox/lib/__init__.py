"""Shared utilities: logging, errors and token verification."""
