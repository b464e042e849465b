"""Unit tests for the engine composition root and worker job wiring."""

from datetime import date
from types import SimpleNamespace

import pytest
from arq import Retry

from adsync.deps import Settings
from adsync.engine import SyncEngine
from adsync.services.rate_limiter import RateLimiter
from adsync.utils.tasks import drain_background_tasks
from adsync.workers import arq_worker

from adsync.tests.fakes import _FakeStore, ad, ad_group, campaign, daily_record, make_branch

DAY = date(2024, 3, 10)


class _FakeSession:
    def __init__(self):
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def close(self):
        self.closed = True


@pytest.fixture
def sessions():
    return []


@pytest.fixture
def engine(store, registry, credentials, clock, sessions):
    def _session_factory():
        session = _FakeSession()
        sessions.append(session)
        return session

    return SyncEngine(
        _session_factory,
        registry,
        RateLimiter(),
        settings=Settings(DATABASE_URL=None, INSIGHTS_AD_CHUNK_SIZE=50),
        credentials_factory=lambda session: credentials,
        store_factory=lambda session: store,
        clock=clock,
    )


async def test_each_entry_point_opens_and_closes_its_own_session(engine, account, adapter, sessions):
    adapter.campaigns = [campaign("c1")]

    result = await engine.sync_entities(account.id)
    await engine.get_account(account.id)

    assert result.count == 1
    assert len(sessions) == 2
    assert all(s.closed for s in sessions)


async def test_daily_insights_trigger_branch_rollup(account, adapter, registry, credentials, clock):
    branch = make_branch("Hanoi", ["hanoi"])
    store = _FakeStore(accounts=[account], branches=[branch])
    engine = SyncEngine(
        lambda: _FakeSession(),
        registry,
        RateLimiter(),
        settings=Settings(DATABASE_URL=None),
        credentials_factory=lambda session: credentials,
        store_factory=lambda session: store,
        clock=clock,
    )
    adapter.campaigns = [campaign("c1")]
    adapter.ad_groups = [ad_group("g1", "c1")]
    adapter.ads = [ad("a1", "g1")]
    adapter.insights_fn = lambda q: [] if q.breakdowns else [daily_record("a1", DAY, spend="30")]

    await engine.sync_entities(account.id)
    result = await engine.sync_insights(account.id, DAY, DAY)
    await drain_background_tasks(timeout=5)

    assert result.rollup_scheduled
    (rollup,) = store.rows("branch_daily_stats")
    assert rollup["branch_id"] == branch.id
    assert rollup["spend"] == 30
    assert rollup["ads_count"] == 1


async def test_sync_entities_job_reports_result_dict(engine, account, adapter):
    adapter.campaigns = [campaign("c1")]

    payload = await arq_worker.sync_entities_job({"engine": engine}, str(account.id))

    assert payload["success"] is True
    assert payload["count"] == 1
    assert payload["account_id"] == str(account.id)


async def test_failed_entity_job_asks_arq_for_a_deferred_retry(engine, account, adapter):
    adapter.fail["fetch_campaigns"] = RuntimeError("graph down")

    with pytest.raises(Retry) as excinfo:
        await arq_worker.sync_entities_job({"engine": engine, "job_try": 2}, str(account.id))

    assert excinfo.value.defer_score == arq_worker.RETRY_DEFER_SECONDS * 2 * 1000
    assert isinstance(excinfo.value.__cause__, RuntimeError)


async def test_last_try_reraises_the_original_error(engine, account, adapter):
    adapter.fail["fetch_campaigns"] = RuntimeError("graph down")

    with pytest.raises(RuntimeError, match="graph down"):
        await arq_worker.sync_entities_job({"engine": engine, "job_try": arq_worker.MAX_TRIES}, str(account.id))


async def test_rebuild_rollups_job_without_branch_covers_every_day():
    days = []

    async def _aggregate_all(day):
        days.append(day)
        return {"date": day.isoformat()}

    fake_engine = SimpleNamespace(aggregate_all=_aggregate_all)

    payload = await arq_worker.rebuild_rollups_job({"engine": fake_engine}, "2024-03-08", "2024-03-10")

    assert days == [date(2024, 3, 8), date(2024, 3, 9), date(2024, 3, 10)]
    assert len(payload["days"]) == 3


async def test_hourly_cleanup_job_reports_errors_instead_of_raising(monkeypatch, clock):
    async def _cleanup(today):
        raise RuntimeError("lock timeout")

    fake_engine = SimpleNamespace(
        cleanup_hourly_insights=_cleanup,
        settings=SimpleNamespace(DEFAULT_TIMEZONE="UTC"),
        clock=clock,
    )
    monkeypatch.setattr(arq_worker, "capture_exception", lambda e, extra=None: None)

    payload = await arq_worker.scheduled_hourly_cleanup({"engine": fake_engine})

    assert payload == {"error": "lock timeout"}
