"""Sequential task queue for rate-limited interactive sessions."""

__version__ = "0.4.0"
