"""Prize drawing and stock allocation engine for instant-win campaigns."""

__version__ = "0.1.0"
