from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, call, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.connectors.base import PipedriveError
from app.models.deal_flow import DealFlowRecord
from app.models.sync_run import SyncRun, SYNC_STATUS_COMPLETED, SYNC_STATUS_FAILED
from app.schemas.sync import SyncOptions
from app.services.status_sink import RepositoryStatusSink, SyncStatusSink
from app.services.sync_service import DealFlowSyncEngine, SyncError


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def engine(fake_connector, repository, sleep):
    return DealFlowSyncEngine(
        connector=fake_connector,
        repository=repository,
        status_sink=RepositoryStatusSink(repository),
        sleep=sleep,
    )


def pipedrive_time(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S")


DAY_ONE = (datetime.now(timezone.utc) - timedelta(days=3)).replace(microsecond=0)


@pytest.fixture
def three_deals(fake_connector, make_stage_event):
    fake_connector.deals = [{"id": deal_id, "pipeline_id": 2} for deal_id in (1, 2, 3)]
    fake_connector.flows = {
        deal_id: [
            make_stage_event(deal_id * 10, deal_id, 5, pipedrive_time(DAY_ONE)),
            make_stage_event(deal_id * 10 + 1, deal_id, 6, pipedrive_time(DAY_ONE + timedelta(days=1))),
        ]
        for deal_id in (1, 2, 3)
    }
    return fake_connector


@pytest.mark.asyncio
async def test_failing_deal_does_not_abort_run(engine, three_deals, db):
    three_deals.failing = {2}

    result = await engine.sync_deal_flow(SyncOptions(mode="full", max_retries=1))

    assert result.total_deals == 3
    assert result.processed_deals == 3
    assert result.successful_deals == 2
    assert result.failed_deals == [2]
    assert result.errors == ["Deal 2: Pipedrive resource not found: /deals/2/flow"]

    run = db.query(SyncRun).one()
    assert run.status == SYNC_STATUS_COMPLETED
    assert run.failed_deals == [2]
    assert run.successful_deals == 2
    assert db.query(DealFlowRecord).count() == 4


@pytest.mark.asyncio
async def test_empty_deal_list(engine, fake_connector):
    result = await engine.sync_deal_flow(SyncOptions(mode="incremental"))

    assert result.total_deals == 0
    assert result.processed_deals == 0
    assert result.successful_deals == 0
    assert result.failed_deals == []
    assert result.errors == []
    assert result.success_rate == "0%"
    assert fake_connector.flow_calls == []


@pytest.mark.asyncio
async def test_first_incremental_sync_fetches_last_week(engine, fake_connector):
    await engine.sync_deal_flow(SyncOptions(mode="incremental"))
    assert fake_connector.days_requested == [7]


@pytest.mark.asyncio
async def test_incremental_sync_rounds_window_up_to_whole_days(engine, fake_connector, repository):
    run = repository.record_sync_status(sync_type="incremental")
    repository.update_sync_status(
        run.id, status=SYNC_STATUS_COMPLETED, completed_at=datetime.now(timezone.utc) - timedelta(hours=30)
    )

    await engine.sync_deal_flow(SyncOptions(mode="incremental"))

    assert fake_connector.days_requested == [2]


@pytest.mark.asyncio
async def test_recent_incremental_sync_requests_at_least_one_day(engine, fake_connector, repository):
    run = repository.record_sync_status(sync_type="incremental")
    repository.update_sync_status(run.id, status=SYNC_STATUS_COMPLETED, completed_at=datetime.now(timezone.utc))

    await engine.sync_deal_flow(SyncOptions(mode="incremental"))

    assert fake_connector.days_requested == [1]


@pytest.mark.asyncio
async def test_full_sync_defaults_to_one_year(engine, fake_connector):
    await engine.sync_deal_flow(SyncOptions(mode="full"))
    assert fake_connector.days_requested == [365]


@pytest.mark.asyncio
async def test_retries_exhausted_with_exponential_backoff(engine, three_deals, sleep):
    three_deals.failing = {2}

    result = await engine.sync_deal_flow(SyncOptions(mode="full", max_retries=3))

    assert three_deals.flow_calls.count(2) == 3
    assert sleep.await_args_list == [call(2), call(4)]
    assert result.failed_deals == [2]
    assert len(result.errors) == 1


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry(engine, three_deals, sleep):
    original = three_deals.fetch_deal_flow
    attempts = []

    async def flaky(deal_id):
        attempts.append(deal_id)
        if deal_id == 3 and attempts.count(3) == 1:
            raise PipedriveError("Pipedrive API rate limit exceeded", 429)
        return await original(deal_id)

    three_deals.fetch_deal_flow = flaky
    result = await engine.sync_deal_flow(SyncOptions(mode="full", max_retries=2))

    assert result.successful_deals == 3
    assert result.failed_deals == []
    sleep.assert_awaited_once_with(2)


@pytest.mark.asyncio
async def test_full_sync_cleans_up_with_days_back(engine, repository):
    with patch.object(repository, "cleanup_old_flow_data", return_value=0) as cleanup:
        await engine.sync_deal_flow(SyncOptions(mode="full", days_back=30))
    cleanup.assert_called_once_with(30)


@pytest.mark.asyncio
async def test_full_sync_cleanup_defaults_to_one_year(engine, repository):
    with patch.object(repository, "cleanup_old_flow_data", return_value=0) as cleanup:
        await engine.sync_deal_flow(SyncOptions(mode="full"))
    cleanup.assert_called_once_with(365)


@pytest.mark.asyncio
async def test_incremental_sync_never_cleans_up(engine, repository):
    with patch.object(repository, "cleanup_old_flow_data") as cleanup:
        await engine.sync_deal_flow(SyncOptions(mode="incremental"))
    cleanup.assert_not_called()


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_fail_run(engine, repository, db):
    with patch.object(repository, "cleanup_old_flow_data", side_effect=OperationalError("DELETE", {}, Exception("locked"))):
        result = await engine.sync_deal_flow(SyncOptions(mode="full"))
    assert result.errors == []
    assert db.query(SyncRun).one().status == SYNC_STATUS_COMPLETED


@pytest.mark.asyncio
async def test_running_twice_stores_each_event_once(engine, three_deals, db, make_stage_event):
    await engine.sync_deal_flow(SyncOptions(mode="full"))
    open_row = db.query(DealFlowRecord).filter_by(pipedrive_event_id=11).one()
    assert open_row.left_at is None
    assert open_row.duration_seconds is None

    three_deals.flows[1].append(make_stage_event(12, 1, 7, pipedrive_time(DAY_ONE + timedelta(days=1, seconds=125))))
    await engine.sync_deal_flow(SyncOptions(mode="full"))

    db.expire_all()
    assert db.query(DealFlowRecord).count() == 7
    assert db.query(SyncRun).count() == 2
    updated = db.query(DealFlowRecord).filter_by(pipedrive_event_id=11).one()
    assert updated.id == open_row.id
    assert updated.duration_seconds == 125
    assert updated.left_at.replace(tzinfo=timezone.utc) == DAY_ONE + timedelta(days=1, seconds=125)


@pytest.mark.asyncio
async def test_deal_list_failure_fails_the_run(engine, fake_connector, db):
    fake_connector.fetch_error = PipedriveError("Pipedrive API error: 500", 500)

    with pytest.raises(SyncError, match="Sync failed: Pipedrive API error: 500"):
        await engine.sync_deal_flow(SyncOptions(mode="full"))

    run = db.query(SyncRun).one()
    assert run.status == SYNC_STATUS_FAILED
    assert run.errors == ["Pipedrive API error: 500"]
    assert run.duration is not None


@pytest.mark.asyncio
async def test_status_recording_failure_does_not_block_sync(engine, repository, three_deals, db):
    with patch.object(repository, "record_sync_status", side_effect=OperationalError("INSERT", {}, Exception("down"))):
        result = await engine.sync_deal_flow(SyncOptions(mode="full"))

    assert result.successful_deals == 3
    assert db.query(SyncRun).count() == 0


@pytest.mark.asyncio
async def test_checkpoint_every_tenth_batch(fake_connector, repository, make_stage_event):
    fake_connector.deals = [{"id": deal_id} for deal_id in range(1, 13)]
    sink = Mock(spec=SyncStatusSink)
    sink.record_start.return_value = 5
    engine = DealFlowSyncEngine(fake_connector, repository, status_sink=sink, sleep=AsyncMock())

    await engine.sync_deal_flow(SyncOptions(mode="full", batch_size=1))

    sink.update.assert_any_call(5, total_deals=12)
    sink.update.assert_any_call(5, processed_deals=10, successful_deals=10)
    assert sink.update.call_count == 2
    sink.complete.assert_called_once()


@pytest.mark.asyncio
async def test_retry_deals_does_not_record_a_run(engine, three_deals, db):
    three_deals.failing = {3}

    result = await engine.retry_deals([1, 3, 1], batch_size=2)

    assert result.total_deals == 2
    assert result.successful_deals == 1
    assert result.failed_deals == [3]
    assert db.query(SyncRun).count() == 0


@pytest.mark.asyncio
async def test_process_single_deal_without_stage_changes(engine, fake_connector):
    fake_connector.flows = {9: [{"object": "note", "timestamp": "2024-01-01 10:00:00", "data": {"id": 1}}]}
    assert await engine.process_single_deal({"id": 9}) == 0


@pytest.mark.asyncio
async def test_deal_pipeline_is_stored(engine, three_deals, db):
    await engine.process_single_deal({"id": 1, "pipeline_id": 2})
    assert {r.pipeline_id for r in db.query(DealFlowRecord).all()} == {2}
