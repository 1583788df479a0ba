from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Dict, Any
from datetime import datetime


# Order schemas
class OrderRecord(BaseModel):
    """Internal order shape produced from a Bitrix24 deal"""
    bitrix24_id: str
    title: str
    mode: Optional[str] = None
    package: Optional[str] = None
    partner: Optional[str] = None
    order_number: Optional[str] = None
    mobile_number: Optional[str] = None
    customer_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    pin_code: Optional[str] = None
    order_date: Optional[str] = None
    order_time: Optional[str] = None
    time_slot: Optional[str] = None
    service_date: Optional[str] = None
    service_type: Optional[str] = None
    commission_percentage: Optional[str] = None
    advance_amount: Optional[str] = None
    taxes_and_fees: Optional[str] = None
    stage_id: Optional[str] = None
    stage_semantic_id: Optional[str] = None
    status: str = "pending"
    currency: str = "INR"
    amount: float = 0.0
    contact_id: Optional[str] = None
    assigned_by_id: Optional[str] = None
    category_id: Optional[str] = None
    source_id: Optional[str] = None
    comments: Optional[str] = None
    is_closed: bool = False
    is_new: bool = False
    date_created: Optional[datetime] = None
    date_modified: Optional[datetime] = None

    @field_validator('bitrix24_id')
    @classmethod
    def validate_bitrix24_id(cls, v):
        if not v or not str(v).strip():
            raise ValueError('bitrix24_id cannot be empty')
        return str(v).strip()


class OrderOut(OrderRecord):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderFilters(BaseModel):
    search: Optional[str] = None
    status: Optional[str] = None
    service_type: Optional[str] = None
    stage_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=500)


class OrderListOut(BaseModel):
    data: List[OrderOut]
    total: int
    page: int
    limit: int


class OrderStats(BaseModel):
    total_orders: int = 0
    completed_orders: int = 0
    in_progress_orders: int = 0
    new_orders: int = 0
    total_revenue: float = 0.0
    average_order_value: float = 0.0


class CleanupResult(BaseModel):
    removed: int = 0


# Sync schemas
class SyncResult(BaseModel):
    """Summary of one synchronization cycle"""
    success: bool = True
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0
    coalesced: bool = False


class SyncStatus(BaseModel):
    is_running: bool = False
    is_syncing: bool = False
    last_sync_at: Optional[datetime] = None
    retry_count: int = 0
    interval_ms: int
    next_sync_at: Optional[datetime] = None
    last_result: Optional[SyncResult] = None
    last_error: Optional[str] = None


class SyncStats(BaseModel):
    total_orders: int
    most_recent_order_timestamp: Optional[datetime] = None
    next_sync_in_seconds: Optional[float] = None


class SyncEvent(BaseModel):
    event_type: str
    timestamp: datetime
    source: str = "global_order_fetcher"
    data: Dict[str, Any] = {}
