"""Promind - token-metered AI generation core for the chat bot."""

__version__ = "0.3.0"
