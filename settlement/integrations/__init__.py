"""External integrations: payment gateway, signatures and collaborators."""
from .collaborators import CollaboratorDispatcher
from .razorpay_client import GatewayError, RazorpayClient
from .signature import SignatureVerifier, verify_payment_signature

__all__ = [
    "CollaboratorDispatcher",
    "GatewayError",
    "RazorpayClient",
    "SignatureVerifier",
    "verify_payment_signature",
]
