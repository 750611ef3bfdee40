"""Tests for the SQLAlchemy stores against a SQLite database."""

from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from grievance.core import RepositoryException
from grievance.escalation.application import StaticPolicyProvider
from grievance.escalation.domain import AuditEntry
from grievance.escalation.infrastructure import (
    AuditEntryModel,
    DashboardUserModel,
    IssueModel,
    SQLAlchemyAssigneeDirectory,
    SQLAlchemyAuditRepository,
    SQLAlchemyIssueRepository,
)
from grievance.escalation.interfaces import build_dispatcher
from grievance.infrastructure.database import Base, close_database, init_database, ping_database
from tests.conftest import MONDAY_9AM, TUESDAY_2PM, FixedClock, RecordingNotifier, utc


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escalation.db'}")

    # pysqlite needs explicit BEGIN for SAVEPOINT support
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    maker = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session


@pytest_asyncio.fixture
async def seeded(session):
    session.add_all([
        DashboardUserModel(id=1, name="Asha", email="asha@example.test", role="agent", city="Pune", cluster="west"),
        DashboardUserModel(id=2, name="Bilal", email="bilal@example.test", role="agent", city="Delhi", cluster="north"),
        DashboardUserModel(id=10, name="Chitra", email="chitra@example.test", role="manager", city="Pune", cluster="west"),
        DashboardUserModel(id=11, name="Dev", email="dev@example.test", role="manager", is_active=False),
        DashboardUserModel(id=20, name="Esha", email="esha@example.test", role="admin", city="Mumbai", cluster="west"),
    ])
    session.add_all([
        IssueModel(id=1, priority="low", status="open", created_at=utc(2024, 1, 1, 9, 0), assigned_to=1),
        IssueModel(id=2, priority="critical", status="open", created_at=MONDAY_9AM, city="Pune", cluster="west"),
        IssueModel(id=3, priority="high", status="in_progress", created_at=MONDAY_9AM, reporter_id=501),
        IssueModel(id=4, priority="critical", status="open", created_at=utc(2024, 1, 12, 9, 0), assigned_to=1),
        IssueModel(
            id=5, priority="medium", status="closed", created_at=utc(2024, 1, 10, 9, 0),
            closed_at=utc(2024, 1, 14, 10, 0), assigned_to=2
        ),
    ])
    await session.commit()
    return session


class TestIssueRepository:
    @pytest.mark.asyncio
    async def test_open_issues_ordered_by_priority_then_age(self, seeded):
        repo = SQLAlchemyIssueRepository(seeded)
        issues = await repo.find_open_issues()
        assert [issue.id for issue in issues] == [4, 2, 3, 1]

    @pytest.mark.asyncio
    async def test_unknown_ordering_rejected(self, seeded):
        with pytest.raises(RepositoryException):
            await SQLAlchemyIssueRepository(seeded).find_open_issues(["severity"])

    @pytest.mark.asyncio
    async def test_timestamps_are_aware(self, seeded):
        issue = await SQLAlchemyIssueRepository(seeded).get_by_id(2)
        assert issue.created_at == MONDAY_9AM
        assert issue.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing_issue(self, seeded):
        assert await SQLAlchemyIssueRepository(seeded).get_by_id(999) is None

    @pytest.mark.asyncio
    async def test_update_open_issue(self, seeded):
        repo = SQLAlchemyIssueRepository(seeded)
        updated = await repo.update_issue(2, {
            "priority": "critical", "escalation_level": 1, "escalation_count": 1, "escalated_at": TUESDAY_2PM
        })
        assert updated is True

        issue = await repo.get_by_id(2)
        assert issue.escalation_level == 1
        assert issue.escalated_at == TUESDAY_2PM

    @pytest.mark.asyncio
    async def test_update_skips_closed_issue(self, seeded):
        repo = SQLAlchemyIssueRepository(seeded)
        assert await repo.update_issue(5, {"escalation_level": 1}) is False
        assert (await repo.get_by_id(5)).escalation_level == 0

    @pytest.mark.asyncio
    async def test_reopen_write_stores_closure_history(self, seeded):
        repo = SQLAlchemyIssueRepository(seeded)
        closed_at = utc(2024, 1, 14, 10, 0)
        updated = await repo.update_issue(5, {
            "status": "open", "closed_at": None, "previously_closed_at": [closed_at],
            "reopened_at": TUESDAY_2PM,
        }, require_open=False)
        assert updated is True

        issue = await repo.get_by_id(5)
        assert issue.is_open
        assert issue.closed_at is None
        assert issue.previously_closed_at == [closed_at]
        assert issue.reopened_at == TUESDAY_2PM
        assert issue.escalation_anchor == TUESDAY_2PM

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, seeded):
        with pytest.raises(RepositoryException):
            await SQLAlchemyIssueRepository(seeded).update_issue(2, {"description": "x"})

    @pytest.mark.asyncio
    async def test_list_filters(self, seeded):
        repo = SQLAlchemyIssueRepository(seeded)
        assert [i.id for i in await repo.list_issues({"assigned_to": 1})] == [1, 4]
        assert [i.id for i in await repo.list_issues({"open_only": True, "priority": "critical"})] == [4, 2]
        assert [i.id for i in await repo.list_issues({"city": "Pune"})] == [2]
        assert [i.id for i in await repo.list_issues({"status": ["closed", "resolved"]})] == [5]
        window = {"start_date": utc(2024, 1, 10), "end_date": utc(2024, 1, 13)}
        assert [i.id for i in await repo.list_issues(window)] == [5, 4]


class TestAssigneeDirectory:
    @pytest.mark.asyncio
    async def test_counts_open_issues(self, seeded):
        directory = SQLAlchemyAssigneeDirectory(seeded)
        candidates = {c.id: c for c in await directory.find_by_role(["agent"])}
        assert candidates[1].open_issue_count == 2
        assert candidates[2].open_issue_count == 0
        assert candidates[1].city == "Pune"

    @pytest.mark.asyncio
    async def test_closed_issues_counted_on_request(self, seeded):
        directory = SQLAlchemyAssigneeDirectory(seeded)
        candidates = {c.id: c for c in await directory.find_by_role(["agent"], exclude_closed=False)}
        assert candidates[2].open_issue_count == 1

    @pytest.mark.asyncio
    async def test_inactive_users_and_other_roles_excluded(self, seeded):
        directory = SQLAlchemyAssigneeDirectory(seeded)
        assert [c.id for c in await directory.find_by_role(["manager"])] == [10]
        assert [c.id for c in await directory.find_by_role(["manager", "admin"])] == [10, 20]


class TestAuditRepository:
    @pytest.mark.asyncio
    async def test_append_and_list_newest_first(self, seeded):
        repo = SQLAlchemyAuditRepository(seeded)
        for hour in (9, 11, 10):
            await repo.append(AuditEntry(
                issue_id=2, actor_id="system", action="escalated",
                details={"hour": hour}, created_at=utc(2024, 1, 16, hour, 0)
            ))
        await repo.append(AuditEntry(
            issue_id=3, actor_id="10", action="auto_assigned", created_at=utc(2024, 1, 16, 12, 0)
        ))

        entries = await repo.list_for_issue(2, limit=10)
        assert [e.details["hour"] for e in entries] == [11, 10, 9]
        assert all(e.id for e in entries)

        assert len(await repo.list_for_issue(2, limit=2)) == 2
        assert [e.issue_id for e in await repo.list_for_actor("10", limit=10)] == [3]

    @pytest.mark.asyncio
    async def test_given_identifier_is_kept(self, seeded):
        repo = SQLAlchemyAuditRepository(seeded)
        entry_id = str(uuid4())
        await repo.append(AuditEntry(issue_id=2, actor_id="system", action="escalated", id=entry_id))
        assert (await repo.list_for_issue(2, limit=1))[0].id == entry_id

    @pytest.mark.asyncio
    async def test_duplicate_identifier_fails_without_poisoning_session(self, seeded):
        repo = SQLAlchemyAuditRepository(seeded)
        entry_id = str(uuid4())
        await repo.append(AuditEntry(issue_id=2, actor_id="system", action="escalated", id=entry_id))
        with pytest.raises(RepositoryException):
            await repo.append(AuditEntry(issue_id=2, actor_id="system", action="reopened", id=entry_id))

        issue = await SQLAlchemyIssueRepository(seeded).get_by_id(2)
        assert issue is not None


class TestDispatcherOnDatabase:
    @pytest.mark.asyncio
    async def test_tick_escalates_and_audits(self, seeded):
        dispatcher = build_dispatcher(
            seeded, StaticPolicyProvider(), clock=FixedClock(TUESDAY_2PM), balancer_seed=3
        )

        summary = await dispatcher.evaluate_tick()
        await seeded.commit()

        assert summary.evaluated == 4
        assert summary.failed == 0
        assert summary.escalated == 4

        repo = SQLAlchemyIssueRepository(seeded)
        high = await repo.get_by_id(3)
        assert high.priority == "critical"
        assert high.escalation_level == 1
        # high escalates to managers; Dev is inactive
        assert high.assigned_to == 10

        actions = [e.action for e in await SQLAlchemyAuditRepository(seeded).list_for_issue(3, limit=10)]
        assert sorted(actions) == ["escalated", "escalation_reassigned"]

        second = await dispatcher.evaluate_tick()
        assert second.escalated == 0
        assert (await repo.get_by_id(5)).escalation_level == 0

    @pytest.mark.asyncio
    async def test_escalation_committed_before_notifying(self, engine, seeded):
        maker = async_sessionmaker(bind=engine, expire_on_commit=False)

        class CommittedStateNotifier(RecordingNotifier):
            """Reads the issue from a second connection when notified."""

            def __init__(self):
                super().__init__()
                self.seen_levels = {}

            async def notify(self, kind, recipients, payload):
                async with maker() as other:
                    level = await other.scalar(
                        select(IssueModel.escalation_level).where(IssueModel.id == payload["issue_id"])
                    )
                self.seen_levels[payload["issue_id"]] = level
                return await super().notify(kind, recipients, payload)

        notifier = CommittedStateNotifier()
        dispatcher = build_dispatcher(
            seeded, StaticPolicyProvider(), notifier=notifier,
            clock=FixedClock(TUESDAY_2PM), balancer_seed=3
        )

        summary = await dispatcher.evaluate_tick()

        assert summary.escalated == 4
        assert notifier.seen_levels == {4: 1, 2: 1, 3: 1, 1: 1}

        # nothing left for the caller to commit
        async with maker() as fresh:
            level = await fresh.scalar(select(IssueModel.escalation_level).where(IssueModel.id == 3))
        assert level == 1


class TestDatabaseLifecycle:
    @pytest.mark.asyncio
    async def test_ping_follows_engine_lifecycle(self, tmp_path):
        assert await ping_database() is False

        init_database(f"sqlite+aiosqlite:///{tmp_path / 'ping.db'}")
        try:
            assert await ping_database() is True
        finally:
            await close_database()

        assert await ping_database() is False
