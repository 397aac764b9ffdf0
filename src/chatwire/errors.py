"""Base exception for the chatwire package."""


class ChatwireError(Exception):
    """Root of every error raised by chatwire."""
