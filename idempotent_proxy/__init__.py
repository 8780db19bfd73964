"""Idempotent proxy request routing with signed proxy tokens and cycles accounting."""

__version__ = "1.2.0"