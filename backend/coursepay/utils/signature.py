"""
Gateway Signature Verifier — HMAC-SHA256 authenticity for server-to-server calls.

Webhooks (POST) sign the raw request body and send the hex digest in the
X-Gateway-Signature header. Browser redirects from the hosted checkout (GET)
carry a `signature` query parameter computed over the remaining parameters
sorted by name and joined as k=v&k=v.
"""
from typing import Callable, Mapping

from fastapi import Request

from coursepay.utils.authenticity import RequestAuthenticity
from coursepay.utils.hashing import hmac_sha256, constant_time_equals

SIGNATURE_HEADER = "X-Gateway-Signature"
SIGNATURE_PARAM = "signature"


def canonical_query(params: Mapping[str, str]) -> str:
    return "&".join(
        f"{k}={params[k]}" for k in sorted(params) if k != SIGNATURE_PARAM
    )


class GatewaySignatureVerifier(RequestAuthenticity):
    """Verifies gateway signatures with the merchant api_secret.

    The secret is looked up per request so a config update takes effect immediately.
    """

    def __init__(self, secret_provider: Callable[[], str]):
        self.secret_provider = secret_provider

    def sign_body(self, body: bytes) -> str:
        return hmac_sha256(self.secret_provider(), body)

    def sign_params(self, params: Mapping[str, str]) -> str:
        return hmac_sha256(self.secret_provider(), canonical_query(params))

    def verify_body(self, body: bytes, signature: str | None) -> bool:
        if not signature or not self.secret_provider():
            return False
        return constant_time_equals(signature.strip().lower(), self.sign_body(body))

    def verify_params(self, params: Mapping[str, str]) -> bool:
        signature = params.get(SIGNATURE_PARAM)
        if not signature or not self.secret_provider():
            return False
        return constant_time_equals(signature.strip().lower(), self.sign_params(params))

    def verify(self, request: Request, body: bytes = b"") -> bool:
        if request.method == "GET":
            return self.verify_params(dict(request.query_params))
        return self.verify_body(body, request.headers.get(SIGNATURE_HEADER))
