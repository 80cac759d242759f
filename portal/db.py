# portal/db.py
import os
import threading
import datetime
from typing import Optional, Dict, Any, List, Tuple, Callable

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session

# Default dev DB — on Vercel api/index.py sets DATABASE_URL to /tmp before import
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./legalform_portal.db")

def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)

engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# SQLite ignores SELECT ... FOR UPDATE; serialize row updates in-process instead
_write_lock = threading.Lock()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    # Create tables if they don't exist
    try:
        import portal.models as models  # noqa: F841
        Base.metadata.create_all(bind=engine)
    except Exception:
        # Surface in logs; don't crash the app at import time
        from portal import monitoring
        monitoring.logger.exception("DB init failed")


def normalize_request_type(request_type: Optional[str]) -> str:
    """Anything other than 'service' is a company request."""
    return "service" if request_type == "service" else "company"


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"


def _model_for(request_type: str):
    from portal.models import REQUEST_MODELS
    return REQUEST_MODELS[normalize_request_type(request_type)]


def _request_to_dict(row, request_type: str) -> Dict[str, Any]:
    from portal.models import CATEGORY_FIELDS
    field = CATEGORY_FIELDS[request_type]
    return {
        "id": row.id,
        "type": request_type,
        "tracking_number": row.tracking_number,
        "user_id": row.user_id,
        "status": row.status,
        "payment_status": row.payment_status,
        "email": row.email,
        "phone": row.phone,
        "contact_name": row.contact_name,
        "estimated_price": row.estimated_price,
        field: getattr(row, field),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def get_request(request_type: str, request_id: str) -> Optional[Dict[str, Any]]:
    """
    Return the request as a dict, or None when absent.
    """
    request_type = normalize_request_type(request_type)
    model = _model_for(request_type)
    db: Session = SessionLocal()
    try:
        row = db.query(model).filter(model.id == request_id).first()
        if not row:
            return None
        return _request_to_dict(row, request_type)
    finally:
        db.close()


def set_request_status(request_type: str, request_id: str, status: str) -> bool:
    """Unconditionally set status. Returns False when no row matched."""
    from portal.models import utcnow
    model = _model_for(request_type)
    db: Session = SessionLocal()
    try:
        count = (
            db.query(model)
            .filter(model.id == request_id)
            .update({"status": status, "updated_at": utcnow()}, synchronize_session=False)
        )
        db.commit()
        return count > 0
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def apply_payment_status(
    request_type: str,
    request_id: str,
    new_status: str,
    should_apply: Callable[[Optional[str], str], bool],
) -> Optional[Dict[str, Any]]:
    """
    Write a payment-driven status under a row lock.

    `should_apply(current_status, new_status)` decides whether the write happens.
    Returns None when the request does not exist, else
    {"previous_status", "status", "applied"} where status is the persisted value.
    """
    from portal.models import utcnow
    model = _model_for(request_type)
    with _write_lock:
        db: Session = SessionLocal()
        try:
            row = db.query(model).filter(model.id == request_id).with_for_update().first()
            if not row:
                db.rollback()
                return None
            previous = row.status
            applied = should_apply(previous, new_status)
            if applied:
                row.status = new_status
                row.payment_status = "paid"
                row.updated_at = utcnow()
                db.commit()
            else:
                db.rollback()
            return {"previous_status": previous, "status": new_status if applied else previous, "applied": applied}
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def list_tracking_entries(phone: str) -> List[Tuple[str, str]]:
    """All (request_id, request_type) pairs indexed under a phone number."""
    from portal.models import PublicTracking
    db: Session = SessionLocal()
    try:
        rows = db.query(PublicTracking).filter(PublicTracking.phone == phone).all()
        return [(r.request_id, r.request_type) for r in rows]
    finally:
        db.close()


def fetch_public_requests(request_type: str, request_ids: List[str]) -> List[Dict[str, Any]]:
    """
    Batch-fetch requests of one category, limited to the publicly visible fields.
    """
    from portal.models import CATEGORY_FIELDS
    if not request_ids:
        return []
    request_type = normalize_request_type(request_type)
    model = _model_for(request_type)
    field = CATEGORY_FIELDS[request_type]
    db: Session = SessionLocal()
    try:
        rows = db.query(model).filter(model.id.in_(request_ids)).all()
        return [
            {
                "id": r.id,
                "tracking_number": r.tracking_number,
                "status": r.status,
                "created_at": _iso(r.created_at),
                field: getattr(r, field),
                "contact_name": r.contact_name,
                "type": request_type,
            }
            for r in rows
        ]
    finally:
        db.close()
