# portal/processors/public_tracking.py
"""
Anonymous request lookup by phone number.

A caller gives the phone number used on their application and gets back the
requests filed under it, with a restricted set of fields. Lookups are rate
limited per (caller IP, phone).
"""

from typing import Any, Dict, List, Optional

from portal import db as dbmod
from portal import monitoring
from portal.errors import RateLimited, ValidationFailed

PHONE_MIN_LENGTH = 8
PHONE_MAX_LENGTH = 20


def validate_phone(phone: Any) -> str:
    if not isinstance(phone, str) or not (PHONE_MIN_LENGTH <= len(phone) <= PHONE_MAX_LENGTH):
        raise ValidationFailed("Invalid phone number format")
    return phone


def client_ip(headers, peer_host: Optional[str] = None) -> str:
    xff = headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip() or "unknown"
    xrip = headers.get("x-real-ip")
    if xrip:
        return xrip.strip()
    return peer_host or "unknown"


def lookup(phone: Any, caller_ip: str, limiter) -> List[Dict[str, Any]]:
    phone = validate_phone(phone)

    allowed, blocked_until = limiter.check_and_record_attempt(caller_ip, phone)
    if not allowed:
        monitoring.inc_tracking_lookup("rate_limited")
        monitoring.inc_rate_limit_denial("tracking")
        monitoring.logger.warning(
            "Public tracking rate limited",
            extra={"ip": caller_ip, "blocked_until": blocked_until.isoformat() if blocked_until else None},
        )
        raise RateLimited("Too many requests. Please try again later.", blocked_until=blocked_until)

    entries = dbmod.list_tracking_entries(phone)
    ids_by_type: Dict[str, List[str]] = {"company": [], "service": []}
    for request_id, request_type in entries:
        if request_type in ids_by_type:
            ids_by_type[request_type].append(request_id)

    results: List[Dict[str, Any]] = []
    for request_type, ids in ids_by_type.items():
        results.extend(dbmod.fetch_public_requests(request_type, ids))

    monitoring.inc_tracking_lookup("found" if results else "empty")
    monitoring.logger.info("Public tracking lookup", extra={"ip": caller_ip, "results": len(results)})
    return results
