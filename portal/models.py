# portal/models.py
from sqlalchemy import Column, Integer, String, DateTime, Float, UniqueConstraint
import datetime

from portal.db import Base


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp (SQLite drops tzinfo on read)."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class RequestMixin:
    id = Column(String(64), primary_key=True, index=True)
    tracking_number = Column(String(64), unique=True, index=True, nullable=True)
    user_id = Column(String(64), index=True, nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    payment_status = Column(String(32), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    contact_name = Column(String(255), nullable=True)
    estimated_price = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CompanyRequest(RequestMixin, Base):
    __tablename__ = "company_requests"

    company_name = Column(String(255), nullable=True)


class ServiceRequest(RequestMixin, Base):
    __tablename__ = "service_requests"

    service_type = Column(String(128), nullable=True)


class PublicTracking(Base):
    """Phone -> (request id, category) index, written when a request is created."""
    __tablename__ = "public_tracking"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(32), index=True, nullable=False)
    request_id = Column(String(64), nullable=False)
    request_type = Column(String(16), nullable=False)


class TrackingRateLimit(Base):
    __tablename__ = "public_tracking_rate_limit"
    __table_args__ = (UniqueConstraint("ip_address", "phone", name="uq_tracking_rate_limit_ip_phone"),)

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(64), nullable=False)
    phone = Column(String(32), nullable=False)
    attempt_count = Column(Integer, nullable=False, default=1)
    first_attempt_at = Column(DateTime, nullable=False)
    last_attempt_at = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=True)


REQUEST_MODELS = {
    "company": CompanyRequest,
    "service": ServiceRequest,
}

# Category-specific column exposed by public tracking
CATEGORY_FIELDS = {
    "company": "company_name",
    "service": "service_type",
}
