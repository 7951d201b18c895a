"""Webhook signature verification: constant-time HMAC for each provider.

Security contract:
- All verifications use hmac.compare_digest() (constant-time, no timing attacks)
- Verification failure -> 401 immediately, no payload processing
- Missing signing secret -> verification always fails (fail-closed)
- Signatures are computed over the raw body bytes, never a re-serialization
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from invoice_sync.config import Settings
from invoice_sync.webhooks.models import Provider

logger = logging.getLogger(__name__)

# Providers that push webhooks; RPC is pull-only and never signs anything.
SIGNED_PROVIDERS = (Provider.ALCHEMY, Provider.CDP)


def compute_signature(secret: str, body: bytes) -> str:
    """Hex-encoded HMAC-SHA256 of *body* under *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _normalize_header(signature_header: str) -> str:
    value = signature_header.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256=") :]
    return value.lower()


def verify_signature(
    provider: Provider | str,
    raw_body: bytes,
    signature_header: str | None,
    settings: Settings,
) -> bool:
    """Verify a provider's HMAC-SHA256 hex signature over the raw body.

    Both Alchemy (X-Alchemy-Signature) and CDP (X-Webhook-Signature) send a
    hex digest; an optional ``sha256=`` prefix and upper-case hex are accepted.

    Args:
        provider: 'alchemy' or 'cdp'
        raw_body: Raw request body bytes
        signature_header: Value of the provider's signature header
        settings: Source of the provider signing secret

    Returns:
        True if signature is valid
    """
    name = provider.value if isinstance(provider, Provider) else str(provider)
    secret = settings.signing_secret(name)
    if not secret:
        logger.warning("No signing secret configured for %s, rejecting webhook", name)
        return False
    if not signature_header:
        return False

    expected = compute_signature(secret, raw_body)
    # Non-ASCII header bytes become "?" so they can never match a hex digest.
    provided = _normalize_header(signature_header).encode("ascii", "replace")
    return hmac.compare_digest(expected.encode("ascii"), provided)


def verify_webhook(
    provider: Provider | str, body: bytes, headers: dict[str, str], settings: Settings
) -> bool:
    """Verify webhook signature for a given provider.

    Args:
        provider: One of 'alchemy', 'cdp'
        body: Raw request body
        headers: Request headers (lowercase keys)
        settings: Service settings

    Returns:
        True if signature is valid
    """
    name = provider.value if isinstance(provider, Provider) else str(provider)
    header_name = settings.signature_header(name)
    if header_name is None:
        logger.warning("Unknown webhook provider: %s", name)
        return False
    return verify_signature(name, body, headers.get(header_name.lower()), settings)
