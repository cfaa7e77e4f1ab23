import enum
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from order_engine.database import Base


def utcnow() -> datetime:
    # Naive UTC throughout; the columns are timezone-less.
    return datetime.utcnow()


def new_order_id() -> str:
    return uuid4().hex


class PaymentMethod(str, enum.Enum):
    COD = "COD"
    PREPAID = "Prepaid"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class OrderStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentGateway(str, enum.Enum):
    PHONEPE = "PhonePe"
    CASHFREE = "Cashfree"
    RAZORPAY = "Razorpay"


class AttemptStatus(str, enum.Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class FailureReason(str, enum.Enum):
    TIMEOUT = "Timeout"
    PAYMENT_FAILED = "PaymentFailed"
    SESSION_EXPIRED = "SessionExpired"
    PAYMENT_CANCELLED = "PaymentCancelled"
    ADMIN_MARKED_FAILED = "AdminMarkedFailed"


class OutcomeSource(str, enum.Enum):
    WEBHOOK = "webhook"
    POLL = "poll"
    ADMIN = "admin"
    RETRY = "retry"
    TIMEOUT = "timeout"
    SESSION = "session"
    CHECKOUT = "checkout"


def _enum(enum_cls, **kwargs):
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
        **kwargs,
    )


# --- Collaborator tables (identity, cart, coupons) ---


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id"), index=True, nullable=False)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    size = Column(String(32), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)


class CouponType(str, enum.Enum):
    PERCENTAGE = "Percentage"
    FIXED_AMOUNT = "Fixed Amount"


class Coupon(Base):
    __tablename__ = "coupons"

    code = Column(String(50), primary_key=True)
    type = Column(_enum(CouponType), nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    min_order = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    max_discount = Column(Numeric(12, 2), nullable=False)
    usage_limit = Column(Integer, nullable=False, default=1)
    used_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    def is_available(self, now: datetime) -> bool:
        return bool(self.active) and now <= self.expires_at and self.used_count < self.usage_limit

    def calculate_discount(self, order_amount: Decimal) -> Decimal:
        if order_amount < Decimal(self.min_order or 0):
            return Decimal("0.00")
        if self.type is CouponType.PERCENTAGE:
            discount = order_amount * Decimal(self.value) / Decimal("100")
            discount = min(discount, Decimal(self.max_discount))
        else:
            discount = Decimal(self.value)
        discount = min(discount, order_amount)
        return discount.quantize(Decimal("0.01"))


# --- Catalog / stock store ---


class Product(Base):
    __tablename__ = "products"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    in_stock = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    sizes = relationship(
        "ProductSize",
        back_populates="product",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="ProductSize.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_sizes(self) -> bool:
        return bool(self.sizes)

    def find_size(self, size: Optional[str]) -> Optional["ProductSize"]:
        if not size:
            return None
        wanted = size.strip().upper()
        for bucket in self.sizes:
            if bucket.size and bucket.size.strip().upper() == wanted:
                return bucket
        return None


class ProductSize(Base):
    __tablename__ = "product_sizes"
    __table_args__ = (UniqueConstraint("product_id", "size", name="uq_product_size"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False, index=True)
    size = Column(String(32), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    in_stock = Column(Boolean, nullable=False, default=False)

    product = relationship("Product", back_populates="sizes")


# --- Order ledger ---


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_order_id)
    user_id = Column(String(64), ForeignKey("users.id"), index=True, nullable=False)
    shipping_address = Column(JSON, nullable=False)

    payment_method = Column(_enum(PaymentMethod), nullable=False)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    order_status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    delivery_status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    payment_gateway = Column(_enum(PaymentGateway), nullable=True)
    failure_reason = Column(_enum(FailureReason), nullable=True)
    payment_id = Column(String(128), nullable=True)

    subtotal = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_amount = Column(Numeric(12, 2), nullable=False)
    promo_code = Column(String(50), nullable=True)

    # Set in the same transaction as the stock decrement.
    stock_reduced = Column(Boolean, nullable=False, default=False)

    tracking_number = Column(String(100), nullable=True)
    courier_name = Column(String(100), nullable=True)
    payment_initiated_at = Column(DateTime, nullable=True)
    last_payment_attempt_at = Column(DateTime, nullable=True)
    last_verified_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    out_for_delivery_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    attempts = relationship(
        "PaymentAttempt",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="PaymentAttempt.attempt_number",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def order_number(self) -> str:
        return f"OZME-{self.id[-8:].upper()}"

    @property
    def latest_attempt(self) -> Optional["PaymentAttempt"]:
        return self.attempts[-1] if self.attempts else None

    @property
    def current_attempt(self) -> Optional["PaymentAttempt"]:
        for attempt in reversed(self.attempts):
            if attempt.status is not AttemptStatus.CANCELLED:
                return attempt
        return None

    @property
    def pending_attempts(self) -> List["PaymentAttempt"]:
        return [a for a in self.attempts if a.status is AttemptStatus.PENDING]

    @property
    def next_attempt_number(self) -> int:
        return (self.attempts[-1].attempt_number + 1) if self.attempts else 1

    def find_attempt(self, attempt_number: int) -> Optional["PaymentAttempt"]:
        for attempt in self.attempts:
            if attempt.attempt_number == attempt_number:
                return attempt
        return None


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    size = Column(String(32), nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.unit_price) * self.quantity


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"
    __table_args__ = (UniqueConstraint("order_id", "attempt_number", name="uq_order_attempt"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    gateway = Column(_enum(PaymentGateway), nullable=False)
    gateway_order_ref = Column(String(64), nullable=False, unique=True, index=True)
    provider_order_id = Column(String(128), nullable=True, index=True)
    session_handle = Column(String(2048), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    initiated_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="attempts")
    events = relationship(
        "PaymentAttemptEvent",
        back_populates="attempt",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="PaymentAttemptEvent.id",
    )

    @property
    def status(self) -> AttemptStatus:
        return self.events[-1].status if self.events else AttemptStatus.PENDING

    @property
    def completed_at(self) -> Optional[datetime]:
        if self.events and self.events[-1].status is not AttemptStatus.PENDING:
            return self.events[-1].recorded_at
        return None

    def record(
        self,
        status: AttemptStatus,
        source: OutcomeSource,
        now: datetime,
        reason: Optional[str] = None,
    ) -> "PaymentAttemptEvent":
        event = PaymentAttemptEvent(status=status, source=source, reason=reason, recorded_at=now)
        self.events.append(event)
        return event


class PaymentAttemptEvent(Base):
    """Append-only status history of one attempt."""

    __tablename__ = "payment_attempt_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column(Integer, ForeignKey("payment_attempts.id"), nullable=False, index=True)
    status = Column(_enum(AttemptStatus), nullable=False)
    source = Column(_enum(OutcomeSource), nullable=False)
    reason = Column(String(255), nullable=True)
    recorded_at = Column(DateTime, default=utcnow, nullable=False)

    attempt = relationship("PaymentAttempt", back_populates="events")
