"""
Orders router
Read access to synced orders and invalid-order cleanup
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from opsportal import schemas
from opsportal.core.dependencies import get_db, verify_sync_token
from opsportal.core.responses import success_response
from opsportal.orders import repository
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get('/orders', tags=["Orders"])
async def list_orders(
    search: Optional[str] = None,
    status: Optional[str] = None,
    service_type: Optional[str] = None,
    stage_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """List synced orders, newest first"""
    filters = schemas.OrderFilters(
        search=search,
        status=status,
        service_type=service_type,
        stage_id=stage_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit
    )
    orders, total = await repository.list_orders(db, filters)
    listing = schemas.OrderListOut(
        data=[schemas.OrderOut.model_validate(order) for order in orders],
        total=total,
        page=page,
        limit=limit
    )
    return success_response(f"Retrieved {len(orders)} of {total} orders", listing.model_dump(mode="json"))


@router.get('/orders/stats', tags=["Orders"])
async def get_order_stats(db: AsyncSession = Depends(get_db)):
    stats = await repository.get_order_stats(db)
    return success_response("Order statistics retrieved", stats.model_dump(mode="json"))


@router.post('/orders/cleanup-invalid', tags=["Orders"], dependencies=[Depends(verify_sync_token)])
async def cleanup_invalid_orders(db: AsyncSession = Depends(get_db)):
    """Remove orders stored without a business order number"""
    result = await repository.cleanup_invalid_orders(db)
    logger.info(f"Invalid order cleanup removed {result.removed} orders")
    return success_response(f"Removed {result.removed} invalid orders", result.model_dump(mode="json"))
