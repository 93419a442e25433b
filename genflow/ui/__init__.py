"""Console output for the genflow CLI."""

from .console import ConsoleManager

__all__ = ["ConsoleManager"]
