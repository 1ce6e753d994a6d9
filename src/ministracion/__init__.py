"""Motor de consistencia de ministración del quórum."""

__version__ = "1.0.0"
