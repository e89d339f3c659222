"""devdeck: dev-process supervisor, log capture and AI task delegation."""

__version__ = "0.3.0"
