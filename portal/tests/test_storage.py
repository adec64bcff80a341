"""Storage contract tests, run against both the in-memory and the SQL backend.

Derived counters, partial patches and id allocation must behave the same way
regardless of the backend.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from portal.db import create_sql_engine
from portal.errors import InternalError, NotFound
from portal.models import MetricsRow, SessionRow
from portal.schemas import (
    METRICS_ID, AskCreate, AskPatch, CompanyUpdateCreate, CompanyUpdatePatch, DocumentCreate, MetricsPatch,
    MilestoneCreate, MilestonePatch, Principal, SessionRecord, StakeholderCreate, StakeholderPatch,
)
from portal.seed import DEMO_MILESTONES, DEMO_STAKEHOLDERS, seed_demo_data
from portal.storage import MemoryStorage, SqlStorage
from portal.utils import utcnow

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def storage(request):
    if request.param == "memory":
        store = MemoryStorage()
    else:
        store = SqlStorage(create_sql_engine("sqlite://"))
    try:
        yield store
    finally:
        store.close()


@pytest.fixture(params=["memory", "sql"])
def shared_storage(request, tmp_path):
    """A store many threads can use at once; SQL needs a file database for that."""
    if request.param == "memory":
        store = MemoryStorage()
    else:
        store = SqlStorage(create_sql_engine(f"sqlite:///{tmp_path / 'portal.db'}"))
    try:
        yield store
    finally:
        store.close()


def _run_concurrently(jobs, workers: int = 8) -> None:
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(job) for job in jobs]
    for future in futures:
        future.result()


def _stakeholder(**overrides) -> StakeholderCreate:
    data = dict(name="Acme", title="Investor", type="Investor", shares=100, percentage=5.0,
                security_type="SAFE", initials="AC")
    data.update(overrides)
    return StakeholderCreate(**data)


def _ask(**overrides) -> AskCreate:
    data = dict(title="Intro to Stripe", description="Looking for a payments contact",
                category="Intros", urgency="High", icon="fas fa-handshake")
    data.update(overrides)
    return AskCreate(**data)


def _milestone(**overrides) -> MilestoneCreate:
    data = dict(title="Seed Round", description="Raise the seed round", date="Q1 2025",
                status="Planned", amount=1_000_000, investors=None, icon="fas fa-rocket")
    data.update(overrides)
    return MilestoneCreate(**data)


# ---------------------------------------------------------------------------
# Partial updates
# ---------------------------------------------------------------------------


class TestPartialUpdates:
    def test_stakeholder_patch_preserves_omitted_fields(self, storage):
        created = storage.create_stakeholder(_stakeholder(shares=100, percentage=5))
        updated = storage.update_stakeholder(created.id, StakeholderPatch(shares=200))
        assert updated.shares == 200
        assert updated.percentage == 5
        assert updated.name == "Acme"
        listed = {s.id: s for s in storage.list_stakeholders()}
        assert listed[created.id].shares == 200
        assert listed[created.id].percentage == 5

    def test_update_patch(self, storage):
        created = storage.create_update(CompanyUpdateCreate(
            title="March update", content="Revenue up", author="Admin", type="Monthly",
        ))
        updated = storage.update_update(created.id, CompanyUpdatePatch(type="Quarterly"))
        assert updated.type == "Quarterly"
        assert updated.title == "March update"
        assert updated.created_at == created.created_at
        assert (updated.attachments, updated.comments, updated.views) == (0, 0, 0)

    def test_milestone_nullable_fields_can_be_cleared(self, storage):
        created = storage.create_milestone(_milestone(amount=500, investors=3))
        updated = storage.update_milestone(created.id, MilestonePatch(amount=None))
        assert updated.amount is None
        assert updated.investors == 3

    def test_ask_patch_keeps_counters(self, storage):
        ask = storage.create_ask(_ask())
        storage.create_response(ask.id, "Investor", "I know someone")
        storage.increment_ask_views(ask.id)
        updated = storage.update_ask(ask.id, AskPatch(urgency="Low"))
        assert updated.urgency == "Low"
        assert updated.responses == 1
        assert updated.views == 1

    def test_empty_patch_is_noop(self, storage):
        created = storage.create_stakeholder(_stakeholder())
        updated = storage.update_stakeholder(created.id, StakeholderPatch())
        assert updated == created

    def test_update_missing_returns_none(self, storage):
        assert storage.update_stakeholder(999, StakeholderPatch(shares=1)) is None
        assert storage.update_milestone(999, MilestonePatch(title="x")) is None
        assert storage.update_update(999, CompanyUpdatePatch(title="x")) is None
        assert storage.update_ask(999, AskPatch(title="x")) is None

    def test_returned_objects_are_copies(self, storage):
        created = storage.create_stakeholder(_stakeholder(shares=100))
        created.shares = 1
        assert storage.list_stakeholders()[0].shares == 100


# ---------------------------------------------------------------------------
# Derived counters
# ---------------------------------------------------------------------------


class TestAskCounters:
    def test_response_count_is_recounted(self, storage):
        ask = storage.create_ask(_ask())
        other = storage.create_ask(_ask(title="Hiring a CFO", category="Hiring"))
        for i in range(5):
            storage.create_response(ask.id, f"Investor {i}", f"Reply {i}")
        storage.create_response(other.id, "Investor", "Other reply")
        assert storage.get_ask(ask.id).responses == 5
        assert storage.get_ask(other.id).responses == 1

    def test_responses_listed_newest_first(self, storage):
        ask = storage.create_ask(_ask())
        first = storage.create_response(ask.id, "A", "first")
        second = storage.create_response(ask.id, "B", "second")
        listed = storage.list_responses(ask.id)
        assert [r.id for r in listed] == [second.id, first.id]
        assert all(r.ask_id == ask.id for r in listed)

    def test_response_to_unknown_ask_rejected(self, storage):
        with pytest.raises(NotFound):
            storage.create_response(999, "Investor", "hello?")
        assert storage.list_responses(999) == []

    def test_views_increment_by_one(self, storage):
        ask = storage.create_ask(_ask())
        for _ in range(7):
            assert storage.increment_ask_views(ask.id) is True
        assert storage.get_ask(ask.id).views == 7
        assert storage.get_ask(ask.id).responses == 0

    def test_views_unknown_ask_is_noop(self, storage):
        assert storage.increment_ask_views(12345) is False

    def test_new_ask_counters_start_at_zero(self, storage):
        ask = storage.create_ask(_ask())
        assert ask.responses == 0
        assert ask.views == 0


class TestConcurrentCounters:
    def test_interleaved_responses_and_views(self, shared_storage):
        ask = shared_storage.create_ask(_ask())
        other = shared_storage.create_ask(_ask(title="Hiring a CFO", category="Hiring"))
        jobs = []
        for i in range(20):
            jobs.append(lambda i=i: shared_storage.create_response(ask.id, f"Investor {i}", f"Reply {i}"))
            jobs.append(lambda: shared_storage.increment_ask_views(ask.id))
        for i in range(5):
            jobs.append(lambda i=i: shared_storage.create_response(other.id, "Investor", f"Other {i}"))
        _run_concurrently(jobs)

        stored = shared_storage.get_ask(ask.id)
        assert stored.responses == 20
        assert stored.views == 20
        assert len(shared_storage.list_responses(ask.id)) == 20
        assert shared_storage.get_ask(other.id).responses == 5
        assert shared_storage.get_ask(other.id).views == 0

    def test_concurrent_first_metrics_edits(self, shared_storage):
        _run_concurrently([
            lambda n=n: shared_storage.update_metrics(MetricsPatch(team_size=n)) for n in range(1, 11)
        ])
        metrics = shared_storage.get_metrics()
        assert metrics.id == METRICS_ID
        assert metrics.team_size in range(1, 11)
        assert metrics.mrr == 0


# ---------------------------------------------------------------------------
# Create / delete / ids
# ---------------------------------------------------------------------------


class TestCollections:
    def test_milestone_round_trip(self, storage):
        data = _milestone()
        created = storage.create_milestone(data)
        matches = [m for m in storage.list_milestones() if m.id == created.id]
        assert len(matches) == 1
        assert matches[0].model_dump(exclude={"id"}) == data.model_dump()

    def test_milestone_delete(self, storage):
        created = storage.create_milestone(_milestone())
        assert storage.delete_milestone(created.id) is True
        assert created.id not in {m.id for m in storage.list_milestones()}
        assert storage.delete_milestone(created.id) is False

    def test_ids_increase_and_are_not_reused(self, storage):
        first = storage.create_milestone(_milestone(title="one"))
        second = storage.create_milestone(_milestone(title="two"))
        assert second.id > first.id
        storage.delete_milestone(second.id)
        third = storage.create_milestone(_milestone(title="three"))
        assert third.id > second.id

    def test_update_delete(self, storage):
        created = storage.create_update(CompanyUpdateCreate(
            title="Q1", content="...", author="Admin", type="Quarterly",
        ))
        assert storage.delete_update(created.id) is True
        assert storage.list_updates() == []
        assert storage.delete_update(created.id) is False

    def test_updates_newest_first(self, storage):
        a = storage.create_update(CompanyUpdateCreate(title="a", content="a", author="x", type="Monthly"))
        b = storage.create_update(CompanyUpdateCreate(title="b", content="b", author="x", type="Monthly"))
        assert [u.id for u in storage.list_updates()] == [b.id, a.id]

    def test_document_defaults(self, storage):
        before = utcnow()
        doc = storage.create_document(DocumentCreate(
            name="SAFE agreement", category="Legal", type="pdf",
            url="https://drive.example.com/safe.pdf", source="Google Drive",
        ))
        assert doc.description is None
        assert doc.date >= before
        assert [d.id for d in storage.list_documents()] == [doc.id]
        assert storage.delete_document(doc.id) is True
        assert storage.delete_document(doc.id) is False

    def test_ask_delete(self, storage):
        ask = storage.create_ask(_ask())
        assert storage.delete_ask(ask.id) is True
        assert storage.get_ask(ask.id) is None
        assert storage.delete_ask(ask.id) is False


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetrics:
    def test_no_metrics_initially(self, storage):
        assert storage.get_metrics() is None

    def test_lazy_creation_from_defaults(self, storage):
        metrics = storage.update_metrics(MetricsPatch(mrr=1000))
        assert metrics.mrr == 1000
        assert metrics.burn_rate == 0
        assert metrics.churn == 0
        assert metrics.last_fundraise == "Pre-seed"
        assert metrics.updated_at is not None
        assert storage.get_metrics() == metrics

    def test_merge_and_stamp(self, storage):
        first = storage.update_metrics(MetricsPatch(mrr=1000, runway=12))
        second = storage.update_metrics(MetricsPatch(runway=10))
        assert second.mrr == 1000
        assert second.runway == 10
        assert second.id == first.id
        assert second.updated_at >= first.updated_at


# ---------------------------------------------------------------------------
# Principals and sessions
# ---------------------------------------------------------------------------


class TestPrincipals:
    def test_upsert_inserts_then_updates(self, storage):
        principal = Principal(id="admin-001", email="hello@cynco.io", first_name="Admin",
                              last_name="User", role="admin")
        first = storage.upsert_user(principal)
        second = storage.upsert_user(principal)
        assert first.created_at is not None
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert storage.get_user("admin-001").display_name == "Admin User"

    def test_get_unknown_user(self, storage):
        assert storage.get_user("nobody") is None


class TestSessions:
    def test_create_get_delete(self, storage):
        now = utcnow()
        record = SessionRecord.new("sid-1", "admin-001", now, timedelta(days=7))
        storage.create_session(record)
        assert storage.get_session("sid-1") == record
        assert storage.delete_session("sid-1") is True
        assert storage.get_session("sid-1") is None
        assert storage.delete_session("sid-1") is False

    def test_purge_expired(self, storage):
        now = utcnow()
        storage.create_session(SessionRecord.new("old", "u", now - timedelta(days=8), timedelta(days=7)))
        storage.create_session(SessionRecord.new("new", "u", now, timedelta(days=7)))
        assert storage.purge_expired_sessions(now) == 1
        assert storage.get_session("old") is None
        assert storage.get_session("new") is not None


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


class TestSeed:
    def test_seed_once(self, storage):
        assert seed_demo_data(storage) is True
        assert len(storage.list_stakeholders()) == len(DEMO_STAKEHOLDERS)
        assert len(storage.list_milestones()) == len(DEMO_MILESTONES)
        assert storage.get_metrics().mrr == 24500
        assert seed_demo_data(storage) is False
        assert len(storage.list_stakeholders()) == len(DEMO_STAKEHOLDERS)


# ---------------------------------------------------------------------------
# SQL backend specifics
# ---------------------------------------------------------------------------


class TestSqlStorage:
    def test_sessions_persisted_in_table(self):
        store = SqlStorage(create_sql_engine("sqlite://"))
        store.create_session(SessionRecord.new("sid-9", "u", utcnow(), timedelta(days=7)))
        with store.engine.connect() as conn:
            ids = conn.execute(select(SessionRow.id)).scalars().all()
        assert ids == ["sid-9"]
        store.close()

    def test_driver_errors_surface_as_internal_error(self, caplog):
        store = SqlStorage(create_sql_engine("sqlite://"))
        with store.engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE stakeholders")
        with pytest.raises(InternalError) as excinfo:
            store.create_stakeholder(_stakeholder())
        assert isinstance(excinfo.value.__cause__, OperationalError)
        assert "entity=stakeholder" in caplog.text
        store.close()

    def test_metrics_stay_a_single_row(self, tmp_path):
        store = SqlStorage(create_sql_engine(f"sqlite:///{tmp_path / 'portal.db'}"))
        _run_concurrently([lambda n=n: store.update_metrics(MetricsPatch(mrr=n)) for n in range(10)])
        store.update_metrics(MetricsPatch(runway=6))
        with store.engine.connect() as conn:
            ids = conn.execute(select(MetricsRow.id)).scalars().all()
        assert ids == [METRICS_ID]
        assert store.get_metrics().runway == 6
        store.close()
