"""Fetch Japanese web novels and translate them chapter by chapter."""

__version__ = "0.1.0"
