"""Structured LLM generation with model fallback and streamed array items."""

__version__ = "0.1.0"
