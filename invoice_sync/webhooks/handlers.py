"""Webhook HTTP handlers: FastAPI routes for blockchain provider webhooks.

Each handler:
1. Reads raw body (needed for HMAC verification)
2. Verifies provider-specific signature
3. Normalizes the payload into canonical events
4. Queues the events (or applies them inline when configured)
5. Returns 200 with a small JSON summary

Security contract:
- Return 401 only for signature failures, 404 only for unknown providers
- Everything else is acknowledged with 200 so providers do not retry-storm;
  lost events are recovered by reconciliation, not redelivery
- Never return error details to the webhook caller
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from invoice_sync.config import Settings
from invoice_sync.exceptions import MalformedPayloadError
from invoice_sync.lifecycle.models import AppliedOutcome, ApplyResult
from invoice_sync.webhooks.models import Provider
from invoice_sync.webhooks.normalizer import normalize
from invoice_sync.webhooks.queue import PartitionedEventQueue
from invoice_sync.webhooks.verification import SIGNED_PROVIDERS, verify_webhook

logger = logging.getLogger(__name__)


def _summarize(results: list[ApplyResult], errors: int) -> dict[str, int]:
    summary = Counter(
        "duplicates" if r.duplicate else (r.outcome.value if r.outcome else "unknown")
        for r in results
    )
    return {
        "applied": summary[AppliedOutcome.APPLIED.value],
        "duplicates": summary["duplicates"],
        "rejected": summary[AppliedOutcome.REJECTED.value],
        "ignored": summary[AppliedOutcome.IGNORED.value],
        "errors": errors,
    }


def register_webhook_routes(
    app: FastAPI, *, settings: Settings, queue: PartitionedEventQueue
) -> None:
    """Register blockchain webhook routes on the FastAPI app."""
    webhook_counts: Counter[str] = Counter()

    def _log_webhook(provider: str, events: int, status: str) -> None:
        """Audit log for webhook activity."""
        webhook_counts[provider] += 1
        webhook_counts[f"{provider}:{status}"] += 1
        logger.info(
            "WEBHOOK_AUDIT provider=%s events=%d status=%s count=%d",
            provider,
            events,
            status,
            webhook_counts[provider],
        )

    def _reply(status: str, provider: str, received: int, **extra: Any) -> JSONResponse:
        return JSONResponse(
            {"status": status, "provider": provider, "eventsReceived": received, **extra},
            status_code=200,
        )

    async def _handle_webhook(request: Request, provider: str) -> JSONResponse:
        """Generic webhook handler for any provider.

        Returns 200 on everything but signature failure (401) and unknown
        provider (404). Never returns error details.
        """
        start = time.time()

        try:
            provider_enum = Provider(provider)
        except ValueError:
            provider_enum = None
        if provider_enum not in SIGNED_PROVIDERS:
            logger.warning("Webhook for unknown provider: %s", provider)
            return JSONResponse({"status": "not_found"}, status_code=404)

        # Read raw body for signature verification
        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}

        # 1. Verify signature
        if not verify_webhook(provider_enum, body, headers, settings):
            _log_webhook(provider, 0, "signature_failed")
            return JSONResponse({"status": "unauthorized"}, status_code=401)

        # 2. Normalize
        try:
            events = normalize(provider_enum, body, settings)
        except MalformedPayloadError as exc:
            logger.warning("Malformed %s payload: %s", provider, exc)
            _log_webhook(provider, 0, "invalid_payload")
            return _reply("ignored", provider, 0)
        except Exception:
            logger.exception("Failed to normalize %s webhook", provider)
            _log_webhook(provider, 0, "normalize_failed")
            return _reply("error", provider, 0)

        if not events:
            _log_webhook(provider, 0, "no_events")
            return _reply("ignored", provider, 0)

        # 3. Hand off
        if settings.process_inline:
            results: list[ApplyResult] = []
            errors = 0
            for event in events:
                try:
                    results.append(await queue.process_now(event))
                except Exception:
                    errors += 1
                    logger.error(
                        "Failed to apply event provider=%s event=%s tx=%s log=%d",
                        provider,
                        event.event_name.value,
                        event.transaction_hash,
                        event.log_index,
                        exc_info=True,
                    )
            status = "error" if errors else "processed"
            _log_webhook(provider, len(events), status)
            response = _reply(status, provider, len(events), **_summarize(results, errors))
        else:
            try:
                queued = await queue.enqueue(events)
            except Exception:
                logger.exception("Failed to queue %d %s events", len(events), provider)
                _log_webhook(provider, len(events), "queue_failed")
                return _reply("error", provider, len(events))
            _log_webhook(provider, len(events), "accepted")
            response = _reply("accepted", provider, len(events), eventsQueued=queued)

        elapsed_ms = (time.time() - start) * 1000
        logger.debug("Webhook handled in %.1fms: %s (%d events)", elapsed_ms, provider, len(events))
        return response

    # Fixed paths first so they are not captured by /{provider}.
    @app.post("/webhooks/blockchain/health")
    async def blockchain_webhook_health():
        """Liveness plus queue depth and configured providers."""
        return {
            "status": "ok",
            "queueDepth": queue.depth(),
            "queueRunning": queue.running,
            "processInline": settings.process_inline,
            "providers": {p.value: bool(settings.signing_secret(p.value)) for p in SIGNED_PROVIDERS},
        }

    @app.get("/webhooks/blockchain/status")
    async def blockchain_webhook_status():
        """Webhook receive counts."""
        return {"counts": dict(webhook_counts), "queue": dict(queue.stats)}

    @app.post("/webhooks/blockchain")
    async def legacy_blockchain_webhook(request: Request):
        """Legacy CDP endpoint."""
        return await _handle_webhook(request, Provider.CDP.value)

    @app.post("/webhooks/blockchain/{provider}")
    async def blockchain_webhook(request: Request, provider: str):
        """Receive provider webhooks (signature-verified)."""
        return await _handle_webhook(request, provider)

    logger.info("Webhook routes registered: /webhooks/blockchain/{alchemy,cdp}")
