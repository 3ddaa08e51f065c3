"""Shared console, command execution and archive helpers."""
