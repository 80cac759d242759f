# portal/schemas.py
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float = Field(gt=0)
    description: str
    request_id: str = Field(alias="requestId", min_length=1)
    request_type: Optional[Literal["company", "service"]] = Field(default="company", alias="requestType")
    customer_email: str = Field(alias="customerEmail")
    customer_name: str = Field(alias="customerName")
    customer_phone: str = Field(alias="customerPhone")


class TrackingLookupRequest(BaseModel):
    # length is checked by the resolver so the error matches other invalid phones
    phone: str


class NotificationRequest(BaseModel):
    to: str
    subject: str
    html: str
