"""Streaming conversational turn orchestration for the facilitator assistant."""

__version__ = "0.1.0"

__all__ = ["__version__"]
