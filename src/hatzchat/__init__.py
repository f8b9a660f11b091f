"""hatzchat: a streaming chat client for the Hatz AI API."""

__version__ = "0.1.0"
