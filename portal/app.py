# portal/app.py
import time
from typing import Optional

# Load .env BEFORE any portal imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, Header, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, PlainTextResponse

from portal import monitoring
from portal import auth as authmod
from portal import db as dbmod
from portal import rate_limit as ratelimod
import portal.connectors.email_connector as _email
import portal.connectors.fedapay_connector as _fedapay
import portal.processors.payment_initiation as _initiation
import portal.processors.payment_webhook as _webhook
import portal.processors.public_tracking as _tracking
from portal.errors import PortalError, InternalError, E_VALIDATION
from portal.schemas import TrackingLookupRequest, NotificationRequest
from portal.signature import SIGNATURE_HEADER

app = FastAPI(title="LegalForm Portal Payments API")

# Initialize DB tables on startup
dbmod.init_db()

# collaborators created once; tests monkeypatch these module attributes
provider = _fedapay.get_provider()
limiter = ratelimod.get_limiter()

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type", SIGNATURE_HEADER]


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=CORS_ALLOW_HEADERS,
)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------
@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    log = monitoring.logger.error if exc.status_code >= 500 else monitoring.logger.info
    log(
        "Request failed",
        extra={"path": request.url.path, "error_code": exc.error_code, "error": exc.message, **exc.details},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    monitoring.logger.info("Invalid request body", extra={"path": request.url.path, "fields": fields})
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "error_code": E_VALIDATION, "fields": fields},
    )


def _internal_error(context: str, exc: Exception, **extra) -> InternalError:
    monitoring.logger.exception(f"Unexpected error in {context}", extra=extra)
    return InternalError("Internal server error")


def require_internal_key(x_internal_api_key: Optional[str] = Header(None)):
    authmod.check_internal_key(x_internal_api_key)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.post("/create-payment")
async def create_payment(request: Request, authorization: Optional[str] = Header(None)):
    """
    POST /create-payment
    Headers: Authorization: Bearer <token>
    Body: { "amount", "description", "requestId", "requestType"?, "customerEmail",
            "customerName", "customerPhone" }
    """
    try:
        try:
            body = await request.json()
        except ValueError:
            body = None
        result = await _initiation.initiate_payment(authorization, body, provider)
    except PortalError as e:
        if e.status_code < 500:
            monitoring.inc_payment_initiation("rejected")
        raise
    except Exception as e:
        raise _internal_error("/create-payment", e) from e
    return JSONResponse(status_code=200, content=result)


@app.post("/payment-webhook")
async def payment_webhook(request: Request):
    """
    POST /payment-webhook
    Headers: x-fedapay-signature: <hex hmac-sha256 of the raw body>
    Body: provider transaction payload ({"entity": {...}})
    """
    # signature covers the exact bytes received, so read the raw body
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    try:
        result = await _webhook.handle_webhook(raw_body, signature)
    except PortalError:
        raise
    except Exception as e:
        raise _internal_error("/payment-webhook", e) from e
    return JSONResponse(status_code=200, content=result)


@app.post("/secure-public-tracking")
def secure_public_tracking(req: TrackingLookupRequest, request: Request):
    """
    POST /secure-public-tracking
    Body: { "phone": "..." }

    Sync handler: runs in the threadpool, off the event loop.
    """
    ip = _tracking.client_ip(request.headers, request.client.host if request.client else None)
    try:
        requests = _tracking.lookup(req.phone, ip, limiter)
    except PortalError:
        raise
    except Exception as e:
        raise _internal_error("/secure-public-tracking", e, ip=ip) from e
    return JSONResponse(status_code=200, content={"requests": requests})


@app.post("/send-payment-notification", dependencies=[Depends(require_internal_key)])
async def send_payment_notification(req: NotificationRequest):
    """
    POST /send-payment-notification (internal)
    Body: { "to", "subject", "html" }
    """
    try:
        await _email.send_email(req.to, req.subject, req.html)
    except PortalError:
        monitoring.inc_notification_failure("email")
        raise
    except Exception as e:
        monitoring.inc_notification_failure("email")
        raise _internal_error("/send-payment-notification", e) from e
    return JSONResponse(status_code=200, content={"success": True})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
