"""relaychat: a streaming chat front end for a local Ollama server."""

__version__ = "0.1.0"
