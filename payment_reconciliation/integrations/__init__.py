"""External integrations for payment reconciliation."""
from .paystack_client import GatewayTransaction, InitializedTransaction, PaystackClient

__all__ = ["PaystackClient", "GatewayTransaction", "InitializedTransaction"]
