"""HMAC-SHA256 signature verification for inbound webhooks.

Providers sign the raw request body with a shared secret and send the
digest in a header. The header name and digest encoding differ per
provider and are configured per subscription:

- hex: lowercase hex digest (Linear, most custom senders)
- prefixed_hex: ``sha256=`` followed by the hex digest (GitHub)
- base64: standard base64 of the raw digest (Shopify, Svix)

Comparison uses hmac.compare_digest so verification time does not
depend on how many leading characters match.
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional, Union

from src.gateway.storage.models import SignatureEncoding

logger = logging.getLogger(__name__)

PREFIX = "sha256="


def _coerce_encoding(encoding: Union[SignatureEncoding, str]) -> SignatureEncoding:
    return encoding if isinstance(encoding, SignatureEncoding) else SignatureEncoding(encoding)


class CredentialVerifier:
    """Stateless signer and verifier; one instance serves every subscription."""

    def sign(
        self,
        secret: str,
        body: bytes,
        encoding: Union[SignatureEncoding, str] = SignatureEncoding.HEX,
    ) -> str:
        """Compute the signature header value for a body.

        Args:
            secret: Shared secret configured on the subscription.
            body: Raw request body.
            encoding: Digest encoding used by the provider.

        Returns:
            The encoded HMAC-SHA256 digest.
        """
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
        encoding = _coerce_encoding(encoding)
        if encoding == SignatureEncoding.BASE64:
            return base64.b64encode(digest).decode("ascii")
        if encoding == SignatureEncoding.PREFIXED_HEX:
            return PREFIX + digest.hex()
        return digest.hex()

    def verify(
        self,
        header_value: Optional[str],
        secret: str,
        body: bytes,
        encoding: Union[SignatureEncoding, str] = SignatureEncoding.HEX,
    ) -> bool:
        """Check a received signature header against the body.

        Args:
            header_value: Value of the signature header, or None if absent.
            secret: Shared secret configured on the subscription.
            body: Raw request body, exactly as received.
            encoding: Digest encoding used by the provider.

        Returns:
            True if the signature matches, False otherwise (including a
            missing or empty header).
        """
        if not header_value:
            return False

        encoding = _coerce_encoding(encoding)
        received = header_value.strip()
        if encoding in (SignatureEncoding.HEX, SignatureEncoding.PREFIXED_HEX):
            received = received.lower()

        expected = self.sign(secret, body, encoding)
        try:
            return hmac.compare_digest(received, expected)
        except TypeError:
            # compare_digest rejects non-ASCII str arguments
            logger.debug("Signature header contains non-ASCII characters")
            return False
