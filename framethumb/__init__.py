"""Video frame thumbnails served on demand and cached."""

__version__ = "0.1.0"
