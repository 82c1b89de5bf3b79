"""Real-time chat session client for the flat-sharing marketplace."""

__version__ = "0.1.0"
