from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, Float
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def utcnow() -> datetime:
    # Stored naive in UTC so SQLite and Postgres compare the same way
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Order(Base):
    __tablename__ = 'orders'
    id = Column(Integer, primary_key=True, index=True)
    # Bitrix24 deal ID, the external identifier orders are deduplicated on
    bitrix24_id = Column(String, unique=True, index=True, nullable=False)
    title = Column(Text, nullable=False)
    # Parsed from custom deal fields or the free-text title
    mode = Column(String, nullable=True)
    package = Column(String, nullable=True)
    partner = Column(String, nullable=True)
    order_number = Column(String, nullable=True, index=True)
    mobile_number = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String, nullable=True)
    pin_code = Column(String, nullable=True)
    order_date = Column(String, nullable=True)
    order_time = Column(String, nullable=True)
    time_slot = Column(String, nullable=True)
    service_date = Column(String, nullable=True)
    service_type = Column(String, nullable=True)
    commission_percentage = Column(String, nullable=True)
    advance_amount = Column(String, nullable=True)
    taxes_and_fees = Column(String, nullable=True)
    # Deal state
    stage_id = Column(String, nullable=True)
    stage_semantic_id = Column(String, nullable=True)
    status = Column(String, default="pending")  # new, pending, in_progress, completed, cancelled
    currency = Column(String, default="INR")
    amount = Column(Float, default=0.0)
    contact_id = Column(String, nullable=True)
    assigned_by_id = Column(String, nullable=True)
    category_id = Column(String, nullable=True)
    source_id = Column(String, nullable=True)
    comments = Column(Text, nullable=True)
    is_closed = Column(Boolean, default=False)
    is_new = Column(Boolean, default=False)
    date_created = Column(DateTime, nullable=True, index=True)  # Bitrix DATE_CREATE
    date_modified = Column(DateTime, nullable=True)  # Bitrix DATE_MODIFY
    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
