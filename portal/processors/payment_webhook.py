# portal/processors/payment_webhook.py
"""
Payment status state machine, driven by provider webhooks.

    pending -> payment_pending -> payment_confirmed | payment_failed

Provider statuses map onto request statuses:
- approved, transferred -> payment_confirmed
- declined, canceled    -> payment_failed
- anything else         -> pending

Env vars:
- FEDAPAY_WEBHOOK_SECRET — shared HMAC secret (required)
- MONOTONIC_PAYMENT_STATUS (default: true) — never move a request backwards
"""

import os
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from fastapi.concurrency import run_in_threadpool

# Import modules (not bare functions) so monkeypatching in tests works correctly
import portal.connectors.email_connector as _email
from portal import db as dbmod
from portal import monitoring
from portal.errors import ConfigurationError, Unauthenticated, ValidationFailed
from portal.signature import verify_signature

FEDAPAY_WEBHOOK_SECRET = os.getenv("FEDAPAY_WEBHOOK_SECRET", "").strip()
MONOTONIC_PAYMENT_STATUS = os.getenv("MONOTONIC_PAYMENT_STATUS", "true").lower() in ("1", "true", "yes")

STATUS_PENDING = "pending"
STATUS_PAYMENT_PENDING = "payment_pending"
STATUS_PAYMENT_CONFIRMED = "payment_confirmed"
STATUS_PAYMENT_FAILED = "payment_failed"
STATUS_COMPLETED = "completed"

PROVIDER_STATUS_MAP = {
    "approved": STATUS_PAYMENT_CONFIRMED,
    "transferred": STATUS_PAYMENT_CONFIRMED,
    "declined": STATUS_PAYMENT_FAILED,
    "canceled": STATUS_PAYMENT_FAILED,
}

PAID_STATUSES = {STATUS_PAYMENT_CONFIRMED, STATUS_COMPLETED}
UNPAID_STATUSES = {STATUS_PAYMENT_PENDING, STATUS_PENDING}

# Statuses outside this order belong to staff workflows and are left alone
_STATUS_ORDER = {
    STATUS_PENDING: 0,
    STATUS_PAYMENT_PENDING: 1,
    STATUS_PAYMENT_FAILED: 2,
    STATUS_PAYMENT_CONFIRMED: 3,
}

Notifier = Callable[[str, Optional[str], Optional[str], str], Awaitable[Any]]


@dataclass
class WebhookEvent:
    transaction_id: Any
    provider_status: Optional[str]
    request_id: str
    request_type: str


def map_provider_status(provider_status: Optional[str]) -> str:
    if not isinstance(provider_status, str):
        return STATUS_PENDING
    return PROVIDER_STATUS_MAP.get(provider_status, STATUS_PENDING)


def is_paid(status: Optional[str]) -> bool:
    return status in PAID_STATUSES


def should_apply_status(current: Optional[str], new: str) -> bool:
    """Whether a webhook may overwrite `current` with `new`."""
    if not MONOTONIC_PAYMENT_STATUS or current is None:
        return True
    if current not in _STATUS_ORDER:
        return False
    return _STATUS_ORDER[new] >= _STATUS_ORDER[current]


def parse_webhook_body(raw_body: Union[bytes, str]) -> WebhookEvent:
    try:
        data = json.loads(raw_body)
    except (ValueError, TypeError) as e:
        raise ValidationFailed("Malformed webhook payload") from e
    if not isinstance(data, dict):
        raise ValidationFailed("Malformed webhook payload")

    transaction = data.get("entity") if isinstance(data.get("entity"), dict) else data
    metadata = transaction.get("custom_metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    request_id = metadata.get("request_id")
    if not request_id:
        raise ValidationFailed("Missing request_id", details={"transaction_id": transaction.get("id")})

    return WebhookEvent(
        transaction_id=transaction.get("id"),
        provider_status=transaction.get("status"),
        request_id=str(request_id),
        request_type=dbmod.normalize_request_type(metadata.get("request_type")),
    )


async def _notify_confirmation(event: WebhookEvent, notifier: Optional[Notifier]) -> None:
    send = notifier or _email.send_payment_confirmation
    try:
        request = await run_in_threadpool(dbmod.get_request, event.request_type, event.request_id)
        if not request or not request.get("email"):
            monitoring.logger.warning(
                "No recipient for payment confirmation",
                extra={"request_id": event.request_id, "transaction_id": event.transaction_id},
            )
            return
        monitoring.logger.info(
            "Sending payment confirmation",
            extra={"request_id": event.request_id, "transaction_id": event.transaction_id},
        )
        await send(request["email"], request.get("contact_name"), request.get("tracking_number"), event.request_id)
    except Exception:
        # The status change is already committed; a lost email must not fail the webhook
        monitoring.inc_notification_failure("payment_confirmation")
        monitoring.logger.exception(
            "Payment confirmation dispatch failed",
            extra={"request_id": event.request_id, "transaction_id": event.transaction_id},
        )


async def handle_webhook(
    raw_body: Union[bytes, str],
    signature: Optional[str],
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    """
    Verify, parse and apply one provider webhook.

    Returns {"success": True, "status": <persisted status>}. Safe to replay: a
    repeated delivery re-applies the same status and does not notify again.
    """
    if not FEDAPAY_WEBHOOK_SECRET:
        monitoring.inc_webhook("config_error")
        raise ConfigurationError("Webhook secret not configured")

    if not verify_signature(raw_body, signature, FEDAPAY_WEBHOOK_SECRET):
        monitoring.inc_webhook("invalid_signature")
        raise Unauthenticated("Invalid signature")

    try:
        event = parse_webhook_body(raw_body)
    except ValidationFailed:
        monitoring.inc_webhook("malformed")
        raise

    new_status = map_provider_status(event.provider_status)
    monitoring.logger.info(
        "Payment webhook received",
        extra={
            "transaction_id": event.transaction_id,
            "request_id": event.request_id,
            "provider_status": event.provider_status,
            "mapped_status": new_status,
        },
    )

    result = await run_in_threadpool(
        dbmod.apply_payment_status, event.request_type, event.request_id, new_status, should_apply_status
    )
    if result is None:
        monitoring.inc_webhook("unknown_request")
        monitoring.logger.warning(
            "Webhook for unknown request",
            extra={"request_id": event.request_id, "transaction_id": event.transaction_id},
        )
        return {"success": True, "status": new_status}

    monitoring.inc_status_transition(new_status, result["applied"])
    if not result["applied"]:
        monitoring.logger.warning(
            "Ignored status regression",
            extra={
                "request_id": event.request_id,
                "transaction_id": event.transaction_id,
                "current_status": result["previous_status"],
                "mapped_status": new_status,
            },
        )
    else:
        monitoring.logger.info(
            "Request status updated",
            extra={"request_id": event.request_id, "status": new_status},
        )

    if (
        result["applied"]
        and new_status == STATUS_PAYMENT_CONFIRMED
        and result["previous_status"] != STATUS_PAYMENT_CONFIRMED
    ):
        await _notify_confirmation(event, notifier)

    monitoring.inc_webhook("processed")
    return {"success": True, "status": result["status"]}


def payment_totals(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Amount totals over request records, as shown on the payments dashboard."""
    total = paid = pending = 0.0
    count = 0
    for r in records:
        price = r.get("estimated_price") or 0
        count += 1
        total += price
        if r.get("status") in PAID_STATUSES:
            paid += price
        elif r.get("status") in UNPAID_STATUSES:
            pending += price
    return {"total": total, "paid": paid, "pending": pending, "count": count}
