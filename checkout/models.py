from sqlalchemy import Column, String, Float, DateTime, Enum, Boolean, Text, JSON
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentState(enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    correlation_key = Column(String, primary_key=True, index=True)  # CheckoutRequestID
    merchant_request_id = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    account_reference = Column(String, nullable=False)
    order = Column(JSON, nullable=True)  # normalized Order, see schemas.Order
    customer_message = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class PaymentStatus(Base):
    __tablename__ = "payment_statuses"

    # No foreign key: callbacks for keys we never recorded are still stored.
    correlation_key = Column(String, primary_key=True, index=True)
    merchant_request_id = Column(String, nullable=True)
    state = Column(Enum(PaymentState), nullable=False)
    result_code = Column(String, nullable=True)
    result_desc = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    receipt_number = Column(String, nullable=True)
    payer_phone = Column(String, nullable=True)
    transaction_timestamp = Column(DateTime, nullable=True)
    fulfilled = Column(Boolean, default=False, nullable=False)
    raw_callback = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
