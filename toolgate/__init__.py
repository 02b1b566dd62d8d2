"""Ollama/OpenAI compatibility gateway for a single OpenAI-style backend."""

__version__ = "0.1.0"
