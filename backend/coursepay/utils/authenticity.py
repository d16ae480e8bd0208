"""
Request Authenticity — one interface, two trust models.

Browser-originated calls prove authenticity with a double-submit CSRF token
(CsrfGuard); gateway-originated calls prove it with an HMAC signature over the
payload (GatewaySignatureVerifier). The two are never interchangeable.
"""
from abc import ABC, abstractmethod

from fastapi import Request


class RequestAuthenticity(ABC):
    """Decides whether an inbound request really comes from who it claims."""

    @abstractmethod
    def verify(self, request: Request, body: bytes = b"") -> bool:
        """Return True iff the request is authentic. Never raises on bad input."""
