"""Shared models and storage helpers."""
