"""CSV product feed importer with price history tracking."""

__version__ = "0.1.0"
