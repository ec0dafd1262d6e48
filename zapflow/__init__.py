"""ZapFlow Hub: WhatsApp customer-service inbox reconciled over the Evolution API."""

__version__ = "1.0.0"
