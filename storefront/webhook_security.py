"""
Square webhook signature verification
https://developer.squareup.com/docs/webhooks/step3validate

Square signs HMAC-SHA256(signature_key, notification_url + raw_body) and sends
it base64 encoded in the x-square-hmacsha256-signature header. The body must
be the exact bytes received - a parsed and re-serialized body will not match.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-hmacsha256-signature"


@dataclass(frozen=True)
class WebhookRequest:
    """The parts of an inbound webhook that take part in signature verification"""

    headers: Mapping[str, str]
    scheme: str
    host: str
    path: str
    query: str = ""
    raw_body: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def from_request(cls, request: Request, raw_body: Optional[bytes]) -> "WebhookRequest":
        return cls(
            headers={k.lower(): v for k, v in request.headers.items()},
            scheme=request.url.scheme,
            host=request.headers.get("host") or request.url.netloc,
            path=request.url.path,
            query=request.url.query,
            raw_body=raw_body,
        )

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256_base64(secret: str, payload: bytes) -> str:
    signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(signature).decode("utf-8")


class SquareWebhookVerifier:
    def __init__(self, signature_key: Optional[str]):
        self._signature_key = signature_key

    @staticmethod
    def notification_url(request: WebhookRequest) -> str:
        """Rebuild the URL Square called, honouring reverse-proxy headers"""
        proto = (request.header("x-forwarded-proto") or request.scheme).split(",")[0].strip()
        host = (request.header("x-forwarded-host") or request.host).split(",")[0].strip()
        url = f"{proto}://{host}{request.path}"
        if request.query:
            url = f"{url}?{request.query}"
        return url

    def is_valid(self, request: WebhookRequest) -> bool:
        if not self._signature_key:
            logger.error("❌ SQUARE_WEBHOOK_SIGNATURE_KEY not configured, rejecting webhook")
            return False

        signature = request.header(SIGNATURE_HEADER)
        if not signature:
            logger.warning("🚫 Missing Square webhook signature header")
            return False

        if not request.raw_body:
            logger.warning("🚫 Missing raw webhook body")
            return False

        url = self.notification_url(request)
        expected = compute_hmac_sha256_base64(self._signature_key, url.encode("utf-8") + request.raw_body)

        if len(expected) != len(signature):
            logger.warning("🚫 Square webhook signature has unexpected length")
            return False

        is_valid = constant_time_compare(expected, signature)
        if not is_valid:
            logger.warning(f"🚫 Square webhook signature mismatch for {url}")
        return is_valid
