"""Maitre: a conversational agent engine for reservation and menu assistants."""

__version__ = "0.1.0"
