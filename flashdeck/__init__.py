"""Flashdeck: flashcard generation and study service."""

__version__ = '1.0.0'
