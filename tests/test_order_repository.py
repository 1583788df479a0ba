"""
Order repository tests
Upsert semantics, listing, statistics and cleanup on an in-memory database
"""
from datetime import datetime
import pytest
from unittest.mock import AsyncMock
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from opsportal import models, schemas
from opsportal.bitrix.transform import transform_deal_to_order
from opsportal.core.exceptions import StorageUnavailableException
from opsportal.orders import repository
from opsportal.orders.repository import UpsertOutcome
from tests.test_helpers import make_deal


def record(deal_id: int, **overrides) -> schemas.OrderRecord:
    return transform_deal_to_order(make_deal(deal_id, **overrides))


async def store(db, *records: schemas.OrderRecord) -> None:
    for item in records:
        await repository.upsert_order(db, item)


@pytest.mark.unit
@pytest.mark.asyncio
class TestUpsertOrder:

    async def test_insert_then_unchanged(self, db_session):
        assert await repository.upsert_order(db_session, record(1)) == UpsertOutcome.CREATED
        assert await repository.upsert_order(db_session, record(1)) == UpsertOutcome.UNCHANGED

        assert await repository.count_orders(db_session) == 1

    async def test_changed_fields_are_updated(self, db_session):
        await repository.upsert_order(db_session, record(1))

        outcome = await repository.upsert_order(db_session, record(1, STAGE_ID="C2:FINAL_INVOICE"))

        assert outcome == UpsertOutcome.UPDATED
        order = await repository.get_order_by_bitrix24_id(db_session, "1")
        assert order.stage_id == "C2:FINAL_INVOICE"
        assert order.status == "completed"

    async def test_no_duplicate_rows_for_same_deal(self, db_session):
        for _ in range(3):
            await repository.upsert_order(db_session, record(5))

        result = await db_session.execute(
            select(models.Order).where(models.Order.bitrix24_id == "5")
        )
        assert len(result.scalars().all()) == 1

    async def test_connection_failure_raises_storage_unavailable(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("database is down"))

        with pytest.raises(StorageUnavailableException) as exc_info:
            await repository.upsert_order(db, record(1))

        assert exc_info.value.status_code == 503
        db.rollback.assert_awaited()

    async def test_stats_queries_raise_storage_unavailable(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("database is down"))

        with pytest.raises(StorageUnavailableException):
            await repository.count_orders(db)
        with pytest.raises(StorageUnavailableException):
            await repository.most_recent_order_timestamp(db)


@pytest.mark.unit
@pytest.mark.asyncio
class TestOrderQueries:

    async def test_most_recent_order_timestamp(self, db_session):
        assert await repository.most_recent_order_timestamp(db_session) is None

        await store(db_session, record(1), record(10), record(4))

        # make_deal(10) is created on 2024-05-11 10:00 +03:00
        assert await repository.most_recent_order_timestamp(db_session) == datetime(2024, 5, 11, 7, 0)

    async def test_list_orders_newest_first_without_invalid_numbers(self, db_session):
        await store(db_session, record(1), record(3), record(2), record(4, order_number="634026"))

        orders, total = await repository.list_orders(db_session, schemas.OrderFilters())

        assert total == 3
        assert [order.bitrix24_id for order in orders] == ["3", "2", "1"]

    async def test_list_orders_pagination(self, db_session):
        await store(db_session, *[record(deal_id) for deal_id in range(1, 6)])

        orders, total = await repository.list_orders(db_session, schemas.OrderFilters(page=2, limit=2))

        assert total == 5
        assert [order.bitrix24_id for order in orders] == ["3", "2"]

    async def test_list_orders_filters(self, db_session):
        await store(
            db_session,
            record(1),
            record(2, STAGE_ID="C2:PREPAYMENT_INVOICE"),
            record(3, TITLE="Mode : Cod,Package :Deep Cleaning,Order : Nus80003"),
        )

        pending, _ = await repository.list_orders(db_session, schemas.OrderFilters(status="pending"))
        assert [order.bitrix24_id for order in pending] == ["2"]

        by_stage, _ = await repository.list_orders(db_session, schemas.OrderFilters(stage_id="C2:EXECUTING"))
        assert {order.bitrix24_id for order in by_stage} == {"1", "3"}

        by_order_number, _ = await repository.list_orders(db_session, schemas.OrderFilters(search="Nus80002"))
        assert [order.bitrix24_id for order in by_order_number] == ["2"]

        in_range, _ = await repository.list_orders(
            db_session,
            schemas.OrderFilters(date_from=datetime(2024, 5, 3), date_to=datetime(2024, 5, 4, 23, 59))
        )
        assert {order.bitrix24_id for order in in_range} == {"2", "3"}

    async def test_order_stats(self, db_session):
        await store(
            db_session,
            record(1),
            record(2, STAGE_ID="C2:FINAL_INVOICE"),
            record(3, STAGE_ID="NEW"),
            record(4, order_number="634026"),
        )

        stats = await repository.get_order_stats(db_session)

        assert stats.total_orders == 3
        assert stats.in_progress_orders == 1
        assert stats.completed_orders == 1
        assert stats.new_orders == 1
        assert stats.total_revenue == pytest.approx(1530.0)
        assert stats.average_order_value == pytest.approx(510.0)

    async def test_order_stats_on_empty_store(self, db_session):
        stats = await repository.get_order_stats(db_session)

        assert stats.total_orders == 0
        assert stats.average_order_value == 0.0

    async def test_cleanup_invalid_orders(self, db_session):
        await store(db_session, record(1), record(2, order_number="634026"), record(3, order_number="998877"))

        result = await repository.cleanup_invalid_orders(db_session)

        assert result.model_dump() == {"removed": 2}
        assert await repository.count_orders(db_session) == 1
        assert (await repository.cleanup_invalid_orders(db_session)).removed == 0
