"""Resumable pipelines of assistant CLI invocations."""

__version__ = "0.1.0"
