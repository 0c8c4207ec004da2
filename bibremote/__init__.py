"""Single-instance coordination for a reference-manager desktop application."""

__version__ = "0.3.0"
