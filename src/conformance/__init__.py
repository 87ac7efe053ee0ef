"""Conformance harness for generated agent-server projects."""

__version__ = "1.0.0"
