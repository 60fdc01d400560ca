"""Workbench: session-scoped coding agent execution with streamed output."""

__version__ = "0.1.0"

__all__ = ["__version__"]
