# portal/processors/payment_initiation.py
"""
Payment initiation: authorize the request owner, open a provider transaction,
return the hosted checkout URL.

Env vars:
- PUBLIC_BASE_URL — where the provider reaches /payment-webhook
- PAYMENT_CURRENCY (default: XOF)
- PAYMENT_COUNTRY (default: CI) — country of customer phone numbers
"""

import os
from typing import Any, Dict, Optional

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from portal import auth as authmod
from portal import db as dbmod
from portal import monitoring
from portal.connectors.fedapay_connector import PaymentProvider
from portal.errors import Forbidden, NotFound, PortalError, UpstreamFailure, ValidationFailed
from portal.processors.payment_webhook import STATUS_PAYMENT_PENDING
from portal.schemas import CreatePaymentRequest

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "XOF")
PAYMENT_COUNTRY = os.getenv("PAYMENT_COUNTRY", "CI")


def split_customer_name(full_name: str):
    """First word is the first name; the rest (or the whole name) the last name."""
    parts = full_name.split()
    if not parts:
        return full_name, full_name
    first = parts[0]
    last = " ".join(parts[1:]) or full_name
    return first, last


def build_transaction_params(payload: CreatePaymentRequest, request_type: str) -> Dict[str, Any]:
    firstname, lastname = split_customer_name(payload.customer_name)
    return {
        "description": payload.description,
        "amount": payload.amount,
        "currency": {"iso": PAYMENT_CURRENCY},
        "callback_url": f"{PUBLIC_BASE_URL}/payment-webhook",
        "customer": {
            "firstname": firstname,
            "lastname": lastname,
            "email": payload.customer_email,
            "phone_number": {"number": payload.customer_phone, "country": PAYMENT_COUNTRY},
        },
        "custom_metadata": {
            "request_id": payload.request_id,
            "request_type": request_type,
        },
    }


def parse_payment_request(body: Any) -> CreatePaymentRequest:
    try:
        return CreatePaymentRequest.model_validate(body)
    except ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationFailed("Invalid payment request", details={"fields": fields}) from e


async def initiate_payment(authorization: Optional[str], body: Any, provider: PaymentProvider) -> Dict[str, Any]:
    """
    Returns {"success": True, "paymentUrl", "transactionId"}.

    The caller is authenticated before the body is looked at. Raises
    Unauthenticated, ValidationFailed, NotFound, Forbidden or UpstreamFailure.
    Nothing is written to the request before the provider has issued a
    checkout URL.
    """
    user_id = authmod.resolve_user_id(authorization)
    payload = parse_payment_request(body)
    request_type = dbmod.normalize_request_type(payload.request_type)

    request = await run_in_threadpool(dbmod.get_request, request_type, payload.request_id)
    if not request:
        raise NotFound("Request not found", details={"request_id": payload.request_id})
    if request["user_id"] != user_id:
        monitoring.logger.warning(
            "Payment attempt on another user's request",
            extra={"request_id": payload.request_id, "user_id": user_id},
        )
        raise Forbidden("Unauthorized - You can only create payments for your own requests")

    monitoring.logger.info("Creating payment transaction", extra={"request_id": payload.request_id})
    try:
        transaction = await provider.create_transaction(build_transaction_params(payload, request_type))
        checkout = await provider.create_checkout_token(transaction["id"])
    except PortalError:
        monitoring.inc_payment_initiation("provider_error")
        raise
    except Exception as e:
        monitoring.inc_payment_initiation("provider_error")
        monitoring.logger.exception("Payment initiation failed", extra={"request_id": payload.request_id})
        raise UpstreamFailure("Payment initiation failed") from e

    transaction_id = transaction["id"]
    monitoring.logger.info(
        "Payment checkout created",
        extra={"request_id": payload.request_id, "transaction_id": transaction_id},
    )

    try:
        await run_in_threadpool(dbmod.set_request_status, request_type, payload.request_id, STATUS_PAYMENT_PENDING)
    except Exception:
        # The checkout already exists on the provider side; the webhook will settle the status
        monitoring.logger.exception(
            "Could not mark request as payment_pending",
            extra={"request_id": payload.request_id, "transaction_id": transaction_id},
        )

    monitoring.inc_payment_initiation("created")
    return {"success": True, "paymentUrl": checkout["url"], "transactionId": transaction_id}
