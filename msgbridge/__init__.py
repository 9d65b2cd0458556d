"""Template-driven SMS/WhatsApp delivery gateway."""

__version__ = "1.0.0"
