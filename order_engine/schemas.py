from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from order_engine.models import (
    AttemptStatus,
    FailureReason,
    OrderStatus,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
)


class ShippingAddress(BaseModel):
    name: str = Field(..., min_length=1, examples=["Asha Rao"])
    phone: str = Field(..., min_length=6, examples=["9876543210"])
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=3, examples=["560001"])
    country: str = "India"


class Item(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: str = Field(..., examples=["prod-tee"])
    quantity: int = Field(..., gt=0, examples=[2])
    size: Optional[str] = Field(None, examples=["M"])
    # Accepted from older clients and discarded; prices come from the catalog.
    price: Optional[Decimal] = None

    @field_validator("size")
    @classmethod
    def blank_size_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class OrderCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items: List[Item] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_gateway: Optional[PaymentGateway] = None
    promo_code: Optional[str] = None
    # Ignored; totals are computed server-side.
    total_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    quantity: int
    size: Optional[str]
    unit_price: Decimal


class PaymentAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attempt_number: int
    gateway: PaymentGateway
    gateway_order_ref: str
    provider_order_id: Optional[str]
    status: AttemptStatus
    amount: Decimal
    initiated_at: datetime
    completed_at: Optional[datetime]


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    user_id: str
    items: List[OrderItemRead]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    order_status: OrderStatus
    delivery_status: OrderStatus
    payment_gateway: Optional[PaymentGateway]
    failure_reason: Optional[FailureReason]
    payment_id: Optional[str]
    subtotal: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    promo_code: Optional[str]
    tracking_number: Optional[str]
    courier_name: Optional[str]
    payment_initiated_at: Optional[datetime]
    last_payment_attempt_at: Optional[datetime]
    paid_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    attempts: List[PaymentAttemptRead] = []


class PaymentSessionRequest(BaseModel):
    gateway: Optional[PaymentGateway] = None


class RazorpayCheckoutConfirm(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class PaymentSessionRead(BaseModel):
    order_id: str
    gateway: PaymentGateway
    attempt_number: int
    gateway_order_ref: str
    provider_order_id: Optional[str]
    session_handle: Optional[str]
    redirect_url: Optional[str]
    client_payload: Dict[str, Any] = {}
    amount: Decimal
    currency: str


class PaymentStatusRead(BaseModel):
    order_id: str
    order_status: OrderStatus
    payment_status: PaymentStatus
    failure_reason: Optional[FailureReason]
    payment_gateway: Optional[PaymentGateway]
    can_retry: bool
    next_allowed_check_at: Optional[datetime] = None


class CheckoutConfirmRead(PaymentStatusRead):
    result: str


class AdminStatusUpdate(BaseModel):
    order_status: Optional[OrderStatus] = None
    delivery_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = Field(None, max_length=100)
    courier_name: Optional[str] = Field(None, max_length=100)


class WebhookAck(BaseModel):
    success: bool = True
    result: str


class HealthRead(BaseModel):
    status: str
    database: Dict[str, Any]
