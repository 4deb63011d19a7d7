"""Order lifecycle and inventory consistency core."""

__version__ = "0.1.0"
