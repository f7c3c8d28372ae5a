"""Multi-target generation pipeline: dispatch, track and chain LLM work units."""

__version__ = "0.1.0"
