"""Chat Relay - streaming chat-completion relay with persistence."""

__version__ = "0.1.0"
