"""
Orders repository module
Database operations for orders synced from Bitrix24
"""
import enum
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, func, or_
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from opsportal import models, schemas
from opsportal.bitrix.transform import is_valid_order_number
from opsportal.core.exceptions import StorageUnavailableException
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)

# Connection level failures: the store itself is unreachable, not just one row
CONNECTION_ERRORS = (OperationalError, InterfaceError, OSError)

SYNCED_FIELDS = tuple(schemas.OrderRecord.model_fields.keys())


class UpsertOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


async def _rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"[ORDER_STORE] Rollback failed: {e}")


async def get_order_by_bitrix24_id(db: AsyncSession, bitrix24_id: str) -> Optional[models.Order]:
    result = await db.execute(
        select(models.Order).where(models.Order.bitrix24_id == bitrix24_id)
    )
    return result.scalar_one_or_none()


def _apply_changes(order: models.Order, record: schemas.OrderRecord) -> List[str]:
    """Copy changed synced fields onto the row, returning the changed field names"""
    changed = []
    for field in SYNCED_FIELDS:
        value = getattr(record, field)
        if getattr(order, field) != value:
            setattr(order, field, value)
            changed.append(field)
    return changed


async def upsert_order(db: AsyncSession, record: schemas.OrderRecord) -> UpsertOutcome:
    """Insert the order if its bitrix24_id is new, update it if any synced field
    changed, otherwise leave it alone.

    Commits per record. Raises StorageUnavailableException when the database
    cannot be reached; any other SQLAlchemyError is re-raised after rollback.
    """
    try:
        order = await get_order_by_bitrix24_id(db, record.bitrix24_id)

        if order is None:
            db.add(models.Order(**record.model_dump()))
            try:
                await db.commit()
                logger.debug(f"[ORDER_STORE] Created order for deal {record.bitrix24_id}")
                return UpsertOutcome.CREATED
            except IntegrityError:
                # Inserted by someone else since our lookup, fall through to update
                await db.rollback()
                logger.info(f"[ORDER_STORE] Deal {record.bitrix24_id} already stored, updating instead")
                order = await get_order_by_bitrix24_id(db, record.bitrix24_id)
                if order is None:
                    raise

        changed = _apply_changes(order, record)
        if not changed:
            return UpsertOutcome.UNCHANGED

        await db.commit()
        logger.debug(f"[ORDER_STORE] Updated order for deal {record.bitrix24_id}: {changed}")
        return UpsertOutcome.UPDATED

    except CONNECTION_ERRORS as e:
        await _rollback_quietly(db)
        raise StorageUnavailableException(
            "Order storage is unreachable", {"original_error": str(e)}
        ) from e
    except SQLAlchemyError:
        await _rollback_quietly(db)
        raise


async def count_orders(db: AsyncSession) -> int:
    try:
        result = await db.execute(select(func.count(models.Order.id)))
        return result.scalar() or 0
    except CONNECTION_ERRORS as e:
        raise StorageUnavailableException(details={"original_error": str(e)}) from e


async def most_recent_order_timestamp(db: AsyncSession) -> Optional[datetime]:
    try:
        result = await db.execute(select(func.max(models.Order.date_created)))
        return result.scalar()
    except CONNECTION_ERRORS as e:
        raise StorageUnavailableException(details={"original_error": str(e)}) from e


async def list_orders(db: AsyncSession, filters: schemas.OrderFilters) -> Tuple[List[models.Order], int]:
    """List orders newest first, hiding rows without a business order number"""
    query = select(models.Order).order_by(models.Order.date_created.desc(), models.Order.id.desc())

    if filters.search:
        pattern = f"%{filters.search}%"
        query = query.where(or_(
            models.Order.title.ilike(pattern),
            models.Order.service_type.ilike(pattern),
            models.Order.customer_name.ilike(pattern),
            models.Order.order_number.ilike(pattern)
        ))
    if filters.status:
        query = query.where(models.Order.status == filters.status)
    if filters.service_type:
        query = query.where(models.Order.service_type == filters.service_type)
    if filters.stage_id:
        query = query.where(models.Order.stage_id == filters.stage_id)
    if filters.date_from:
        query = query.where(models.Order.date_created >= filters.date_from)
    if filters.date_to:
        query = query.where(models.Order.date_created <= filters.date_to)

    query = query.where(models.Order.order_number.is_not(None), models.Order.order_number != "")

    result = await db.execute(query)
    # Numeric-only order numbers are filtered here, SQL has no portable regex
    orders = [order for order in result.scalars().all() if is_valid_order_number(order.order_number)]

    offset = (filters.page - 1) * filters.limit
    return orders[offset:offset + filters.limit], len(orders)


async def get_order_stats(db: AsyncSession) -> schemas.OrderStats:
    result = await db.execute(
        select(models.Order.status, models.Order.amount, models.Order.order_number)
    )
    rows = [row for row in result.all() if is_valid_order_number(row.order_number)]

    total_orders = len(rows)
    total_revenue = sum(row.amount or 0 for row in rows)
    return schemas.OrderStats(
        total_orders=total_orders,
        completed_orders=sum(1 for row in rows if row.status == "completed"),
        in_progress_orders=sum(1 for row in rows if row.status == "in_progress"),
        new_orders=sum(1 for row in rows if row.status == "new"),
        total_revenue=total_revenue,
        average_order_value=total_revenue / total_orders if total_orders else 0.0
    )


async def cleanup_invalid_orders(db: AsyncSession) -> schemas.CleanupResult:
    """Delete orders whose order number is empty or a bare numeric deal id"""
    result = await db.execute(select(models.Order.id, models.Order.order_number))
    invalid_ids = [row.id for row in result.all() if not is_valid_order_number(row.order_number)]

    if not invalid_ids:
        return schemas.CleanupResult()

    await db.execute(delete(models.Order).where(models.Order.id.in_(invalid_ids)))
    await db.commit()
    logger.info(f"[ORDER_STORE] Removed {len(invalid_ids)} orders without a valid order number")
    return schemas.CleanupResult(removed=len(invalid_ids))
