"""Payment reconciliation engine for Paystack-backed student payments."""

__version__ = "0.1.0"
