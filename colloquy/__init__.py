"""Colloquy: live duplex voice sessions with Gemini Live."""

__version__ = "0.1.0"
