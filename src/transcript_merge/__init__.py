"""Conversation transcript normalization and streaming merge engine."""

__version__ = "0.1.0"
