# portal/connectors/email_connector.py
"""
Outbound email.

Delivers through the Resend HTTP API when RESEND_API_KEY is set; otherwise the
message is only logged (development).

Env vars:
- RESEND_API_KEY
- EMAIL_FROM (default: "LegalForm <notifications@legalform.ci>")
- BRAND_NAME (default: LegalForm)
"""

import os
import html as htmlmod
from typing import Any, Dict, Optional

import httpx

from portal import monitoring
from portal.errors import UpstreamFailure

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
RESEND_API_URL = "https://api.resend.com/emails"
EMAIL_FROM = os.getenv("EMAIL_FROM", "LegalForm <notifications@legalform.ci>")
BRAND_NAME = os.getenv("BRAND_NAME", "LegalForm")
EMAIL_TIMEOUT_SECONDS = 10.0

_transport: Optional[httpx.AsyncBaseTransport] = None


async def send_email(to: str, subject: str, html: str) -> Dict[str, Any]:
    """Send one HTML email. Raises UpstreamFailure when delivery fails."""
    if not RESEND_API_KEY:
        monitoring.logger.info(
            "Email delivery not configured, logging message",
            extra={"to": to, "subject": subject, "html_length": len(html or "")},
        )
        return {"delivered": False, "id": None}

    payload = {"from": EMAIL_FROM, "to": [to], "subject": subject, "html": html}
    headers = {"Authorization": f"Bearer {RESEND_API_KEY}", "Content-Type": "application/json"}
    try:
        async with httpx.AsyncClient(timeout=EMAIL_TIMEOUT_SECONDS, transport=_transport) as client:
            response = await client.post(RESEND_API_URL, json=payload, headers=headers)
    except httpx.HTTPError as e:
        raise UpstreamFailure("Email provider unavailable") from e
    if response.status_code >= 400:
        monitoring.logger.error(
            "Email provider error",
            extra={"to": to, "http_status": response.status_code, "body": response.text[:500]},
        )
        raise UpstreamFailure("Email provider rejected the message", details={"http_status": response.status_code})
    monitoring.logger.info("Email sent", extra={"to": to, "subject": subject})
    return {"delivered": True, "id": response.json().get("id")}


_CONFIRMATION_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #5a67d8; color: white; padding: 30px; text-align: center; border-radius: 10px 10px 0 0; }}
    .content {{ background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }}
    .footer {{ text-align: center; margin-top: 30px; color: #666; font-size: 12px; }}
    code {{ background: #e0e0e0; padding: 5px 10px; border-radius: 3px; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>Paiement confirmé</h1></div>
    <div class="content">
      <p>Bonjour <strong>{contact_name}</strong>,</p>
      <p>Nous avons bien reçu votre paiement.</p>
      <p><strong>Numéro de suivi :</strong> <code>{tracking_number}</code></p>
      <p>Notre équipe va maintenant traiter votre dossier. Vous recevrez une notification à chaque étape importante.</p>
      <p>Vous pouvez suivre l'avancement de votre dossier à tout moment sur notre plateforme.</p>
      <div class="footer"><p>Cordialement,<br><strong>L'équipe {brand}</strong></p></div>
    </div>
  </div>
</body>
</html>
"""


def render_payment_confirmation(contact_name: Optional[str], tracking_number: str) -> str:
    return _CONFIRMATION_TEMPLATE.format(
        contact_name=htmlmod.escape(contact_name or ""),
        tracking_number=htmlmod.escape(tracking_number),
        brand=htmlmod.escape(BRAND_NAME),
    )


async def send_payment_confirmation(
    email: str,
    contact_name: Optional[str],
    tracking_number: Optional[str],
    request_id: str,
) -> Dict[str, Any]:
    subject = f"Confirmation de paiement - {BRAND_NAME}"
    body = render_payment_confirmation(contact_name, tracking_number or request_id)
    return await send_email(email, subject, body)
