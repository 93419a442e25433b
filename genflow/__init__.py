"""Durable workflow engine for multi-step generation pipelines."""

__version__ = "1.0.0"
