"""Repository knowledge generation from a single streamed agent call."""

__version__ = "0.1.0"
