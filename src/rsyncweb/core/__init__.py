"""Shared infrastructure: logging, errors, constants, task helpers."""
