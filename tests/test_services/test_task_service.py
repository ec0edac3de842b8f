"""Tests for task_service.py - task lifecycle, lazy timeout and outbox events."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.exceptions import AccessDenied, RequestValidationFailed, ResourceNotFound, StateConflict
from app.models import (
    ContactStatus,
    DeliverableKind,
    FailureReason,
    HumanStatus,
    OutboxEvent,
    PaidStatus,
    Submission,
    Task,
    TaskContact,
    TaskStatus,
    utcnow,
)
from app.schemas.task import TaskCreate, TaskSubmit
from app.services.task_service import (
    TaskFilter,
    accept_task,
    apply_lazy_transitions,
    approve_task,
    create_task,
    expire_task,
    get_task,
    list_tasks,
    pay_task,
    reject_task,
    set_task_deleted,
    skip_task,
    submit_task,
    sweep_overdue_tasks,
)
from tests.support import factories
from tests.support.factories import create_ai_account, create_human


@pytest.fixture
async def account(async_session):
    account = create_ai_account(account_id="ai_owner")
    async_session.add(account)
    await async_session.commit()
    return account


@pytest.fixture
async def human(async_session):
    human = create_human(human_id="human_1")
    async_session.add(human)
    await async_session.commit()
    return human


@pytest.fixture
async def open_task(async_session, account):
    task = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(hours=1))
    async_session.add(task)
    await async_session.commit()
    return task


async def _events(session, task_id: str) -> list[str]:
    result = await session.execute(
        select(OutboxEvent.event_type)
        .where(OutboxEvent.task_id == task_id)
        .order_by(OutboxEvent.created_at)
    )
    return list(result.scalars().all())


class TestCreateTask:
    async def test_creates_open_task_owned_by_agent(self, async_session, account):
        data = TaskCreate(
            description="Check the menu board",
            origin_country="us",
            budget_usd=Decimal("12.50"),
            deliverable=DeliverableKind.PHOTO,
            deadline_minutes=30,
        )

        task = await create_task(async_session, account.id, data)
        await async_session.commit()

        assert task.status == TaskStatus.OPEN
        assert task.ai_account_id == account.id
        assert task.origin_country == "US"
        assert task.deadline_minutes == 30
        assert task.effective_deadline is not None

    async def test_past_deadline_rejected(self, async_session, account):
        data = TaskCreate(
            description="Too late",
            origin_country="US",
            budget_usd=Decimal("10"),
            deadline_at=utcnow() - timedelta(minutes=1),
        )

        with pytest.raises(RequestValidationFailed):
            await create_task(async_session, account.id, data)

    async def test_quote_pair_must_be_complete(self, async_session, account):
        data = TaskCreate(
            description="Quote without currency",
            origin_country="US",
            budget_usd=Decimal("10"),
            quote_amount_minor=1500,
        )

        with pytest.raises(RequestValidationFailed):
            await create_task(async_session, account.id, data)


class TestLazyTimeout:
    """Overdue tasks fail with reason timeout when they are read."""

    async def test_overdue_open_task_fails_on_read(self, async_session, account):
        task = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(minutes=-1))
        async_session.add(task)
        await async_session.commit()

        loaded = await get_task(async_session, task.id)

        assert loaded.status == TaskStatus.FAILED
        assert loaded.failure_reason == FailureReason.TIMEOUT
        assert await _events(async_session, task.id) == ["task.failed"]

    async def test_deadline_minutes_resolved_from_created_at(self, async_session, account):
        task = factories.create_task(
            ai_account_id=account.id,
            deadline_minutes=5,
            created_at=utcnow() - timedelta(minutes=10),
        )
        async_session.add(task)
        await async_session.commit()

        loaded = await get_task(async_session, task.id)

        assert loaded.status == TaskStatus.FAILED
        assert loaded.failure_reason == FailureReason.TIMEOUT

    async def test_exactly_at_deadline_is_not_expired(self, async_session, account):
        task = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(minutes=5))
        async_session.add(task)
        await async_session.commit()

        await apply_lazy_transitions(async_session, task, now=task.effective_deadline)

        assert task.status == TaskStatus.OPEN

    async def test_accepted_task_timeout_frees_worker(self, async_session, account, human):
        human.status = HumanStatus.BUSY
        task = factories.create_task(
            ai_account_id=account.id,
            status=TaskStatus.ACCEPTED,
            human_id=human.id,
            deadline_in=timedelta(seconds=-5),
        )
        async_session.add(task)
        await async_session.commit()

        loaded = await get_task(async_session, task.id)
        await async_session.refresh(human)

        assert loaded.status == TaskStatus.FAILED
        assert human.status == HumanStatus.AVAILABLE

    async def test_concurrent_readers_persist_timeout_once(self, session_factory, account):
        """Two sessions holding stale copies: one wins, one event is recorded."""
        async with session_factory() as setup:
            task = factories.create_task(
                ai_account_id=account.id, deadline_in=timedelta(minutes=-1)
            )
            setup.add(task)
            await setup.commit()
            task_id = task.id

        async with session_factory() as first, session_factory() as second:
            stale_a = await first.get(Task, task_id)
            stale_b = await second.get(Task, task_id)

            won_a = await expire_task(first, stale_a)
            won_b = await expire_task(second, stale_b)

            assert (won_a, won_b) == (True, False)
            assert stale_b.status == TaskStatus.FAILED

        async with session_factory() as check:
            count = await check.scalar(
                select(func.count()).select_from(OutboxEvent).where(OutboxEvent.task_id == task_id)
            )
            assert count == 1

    async def test_list_applies_timeout(self, async_session, account):
        overdue = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(minutes=-1))
        fresh = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(hours=1))
        async_session.add_all([overdue, fresh])
        await async_session.commit()

        tasks = await list_tasks(async_session, {TaskFilter.AI_ACCOUNT_ID: account.id})

        statuses = {task.id: task.status for task in tasks}
        assert statuses == {overdue.id: TaskStatus.FAILED, fresh.id: TaskStatus.OPEN}


class TestSweepOverdueTasks:
    """The worker applies the read-time transitions to tasks nobody reads."""

    async def test_overdue_tasks_transitioned_without_a_read(self, async_session, account):
        overdue = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(minutes=-1))
        relative = factories.create_task(
            ai_account_id=account.id,
            deadline_minutes=5,
            created_at=utcnow() - timedelta(minutes=10),
        )
        not_due = factories.create_task(
            ai_account_id=account.id,
            deadline_minutes=60,
            created_at=utcnow() - timedelta(minutes=10),
        )
        fresh = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(hours=1))
        review = factories.create_task(
            ai_account_id=account.id,
            status=TaskStatus.REVIEW_PENDING,
            review_pending_deadline_at=utcnow() - timedelta(minutes=1),
        )
        deleted = factories.create_task(
            ai_account_id=account.id,
            deadline_in=timedelta(minutes=-1),
            deleted_at=utcnow(),
        )
        async_session.add_all([overdue, relative, not_due, fresh, review, deleted])
        await async_session.commit()

        swept = await sweep_overdue_tasks(async_session)

        assert swept == (2, 1)
        statuses = {
            task.id: (await async_session.get(Task, task.id, populate_existing=True)).status
            for task in (overdue, relative, not_due, fresh, review, deleted)
        }
        assert statuses == {
            overdue.id: TaskStatus.FAILED,
            relative.id: TaskStatus.FAILED,
            not_due.id: TaskStatus.OPEN,
            fresh.id: TaskStatus.OPEN,
            review.id: TaskStatus.COMPLETED,
            deleted.id: TaskStatus.OPEN,
        }
        assert await _events(async_session, overdue.id) == ["task.failed"]
        assert await _events(async_session, review.id) == ["task.completed"]

    async def test_nothing_overdue(self, async_session, open_task):
        assert await sweep_overdue_tasks(async_session) == (0, 0)


class TestListTasks:
    async def test_filters_by_status(self, async_session, account):
        open_one = factories.create_task(ai_account_id=account.id)
        failed = factories.create_task(
            ai_account_id=account.id,
            status=TaskStatus.FAILED,
            failure_reason=FailureReason.NO_HUMAN_AVAILABLE,
        )
        async_session.add_all([open_one, failed])
        await async_session.commit()

        tasks = await list_tasks(async_session, {TaskFilter.STATUS: "open"})

        assert [task.id for task in tasks] == [open_one.id]

    async def test_unknown_status_rejected(self, async_session):
        with pytest.raises(RequestValidationFailed):
            await list_tasks(async_session, {TaskFilter.STATUS: "archived"})

    async def test_soft_deleted_tasks_hidden(self, async_session, open_task):
        await set_task_deleted(async_session, open_task.id, deleted=True)
        await async_session.commit()

        assert await list_tasks(async_session, {}) == []
        with pytest.raises(ResourceNotFound):
            await get_task(async_session, open_task.id)

        await set_task_deleted(async_session, open_task.id, deleted=False)
        await async_session.commit()
        assert (await get_task(async_session, open_task.id)).id == open_task.id


class TestAcceptTask:
    async def test_worker_accepts_open_task(self, async_session, open_task, human):
        task = await accept_task(async_session, open_task.id, human.id)
        await async_session.commit()
        await async_session.refresh(human)
        contact = await async_session.get(TaskContact, task.id)

        assert task.status == TaskStatus.ACCEPTED
        assert task.human_id == human.id
        assert task.payout_destination == "acct_test_worker"
        assert human.status == HumanStatus.BUSY
        assert contact.status == ContactStatus.PENDING
        assert await _events(async_session, task.id) == ["task.accepted"]

    async def test_repeated_accept_by_same_worker_is_noop(self, async_session, open_task, human):
        await accept_task(async_session, open_task.id, human.id)
        await async_session.commit()

        task = await accept_task(async_session, open_task.id, human.id)
        await async_session.commit()

        assert task.status == TaskStatus.ACCEPTED
        assert await _events(async_session, task.id) == ["task.accepted"]

    async def test_second_worker_gets_already_assigned(self, async_session, open_task, human):
        other = create_human(human_id="human_2")
        async_session.add(other)
        await async_session.commit()
        await accept_task(async_session, open_task.id, human.id)
        await async_session.commit()

        with pytest.raises(StateConflict) as exc_info:
            await accept_task(async_session, open_task.id, other.id)

        assert exc_info.value.reason == "already_assigned"

    async def test_agent_must_own_task(self, async_session, open_task, human):
        with pytest.raises(AccessDenied):
            await accept_task(async_session, open_task.id, human.id, ai_account_id="ai_other")

    async def test_worker_without_payout_destination(self, async_session, open_task):
        human = create_human(human_id="human_nopay", stripe_account_id=None)
        async_session.add(human)
        await async_session.commit()

        with pytest.raises(RequestValidationFailed):
            await accept_task(async_session, open_task.id, human.id)

    async def test_busy_worker_rejected(self, async_session, open_task):
        human = create_human(human_id="human_busy", status=HumanStatus.BUSY)
        async_session.add(human)
        await async_session.commit()

        with pytest.raises(StateConflict) as exc_info:
            await accept_task(async_session, open_task.id, human.id)

        assert exc_info.value.reason == "human_not_available"

    async def test_timed_out_task_reports_timeout(self, async_session, account, human):
        task = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(minutes=-1))
        async_session.add(task)
        await async_session.commit()

        with pytest.raises(StateConflict) as exc_info:
            await accept_task(async_session, task.id, human.id)

        assert exc_info.value.reason == "timeout"

    async def test_unknown_worker(self, async_session, open_task):
        with pytest.raises(ResourceNotFound):
            await accept_task(async_session, open_task.id, "human_missing")


class TestSkipTask:
    async def test_assigned_worker_releases_task(self, async_session, open_task, human):
        await accept_task(async_session, open_task.id, human.id)
        await async_session.commit()

        task = await skip_task(async_session, open_task.id, human.id)
        await async_session.commit()
        await async_session.refresh(human)
        contact = await async_session.get(TaskContact, task.id, populate_existing=True)

        assert task.status == TaskStatus.OPEN
        assert task.human_id is None
        assert task.payout_destination is None
        assert human.status == HumanStatus.AVAILABLE
        assert contact.status == ContactStatus.CLOSED

    async def test_missing_human(self, async_session, open_task):
        with pytest.raises(RequestValidationFailed) as exc_info:
            await skip_task(async_session, open_task.id, None)

        assert exc_info.value.reason == "missing_human"

    async def test_other_worker_not_assigned(self, async_session, open_task, human):
        await accept_task(async_session, open_task.id, human.id)
        await async_session.commit()

        with pytest.raises(AccessDenied) as exc_info:
            await skip_task(async_session, open_task.id, "human_2")

        assert exc_info.value.reason == "not_assigned"

    async def test_unassigned_task_cannot_be_skipped(self, async_session, open_task, human):
        with pytest.raises(StateConflict) as exc_info:
            await skip_task(async_session, open_task.id, human.id)

        assert exc_info.value.reason == "not_assigned"
        assert (await get_task(async_session, open_task.id)).status == TaskStatus.OPEN


class TestSubmitTask:
    @pytest.fixture
    async def accepted_photo_task(self, async_session, account, human):
        task = factories.create_task(
            ai_account_id=account.id,
            deliverable=DeliverableKind.PHOTO,
            deadline_in=timedelta(hours=1),
        )
        async_session.add(task)
        await async_session.commit()
        await accept_task(async_session, task.id, human.id)
        await async_session.commit()
        return task

    async def test_submit_completes_without_review_gate(
        self, async_session, accepted_photo_task, human
    ):
        data = TaskSubmit(kind=DeliverableKind.PHOTO, content_url="https://cdn.example/p.jpg")

        task, submission = await submit_task(
            async_session, accepted_photo_task.id, data, human_id=human.id
        )
        await async_session.commit()
        stored = await async_session.get(Submission, submission.id)

        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at is not None
        assert task.submission_id == submission.id
        assert stored.content_url == "https://cdn.example/p.jpg"
        assert await _events(async_session, task.id) == ["task.accepted", "task.completed"]

    async def test_wrong_deliverable(self, async_session, accepted_photo_task, human):
        data = TaskSubmit(kind=DeliverableKind.TEXT, text="hello")

        with pytest.raises(RequestValidationFailed) as exc_info:
            await submit_task(async_session, accepted_photo_task.id, data, human_id=human.id)

        assert exc_info.value.reason == "wrong_deliverable"
        assert exc_info.value.detail == {"expected": "photo", "received": "text"}

    async def test_missing_content(self, async_session, accepted_photo_task, human):
        data = TaskSubmit(kind=DeliverableKind.PHOTO)

        with pytest.raises(RequestValidationFailed) as exc_info:
            await submit_task(async_session, accepted_photo_task.id, data, human_id=human.id)

        assert exc_info.value.reason == "missing_content"

    async def test_missing_text(self, async_session, account, human):
        task = factories.create_task(ai_account_id=account.id, deadline_in=timedelta(hours=1))
        async_session.add(task)
        await async_session.commit()
        await accept_task(async_session, task.id, human.id)
        await async_session.commit()

        with pytest.raises(RequestValidationFailed) as exc_info:
            await submit_task(
                async_session, task.id, TaskSubmit(kind=DeliverableKind.TEXT), human_id=human.id
            )

        assert exc_info.value.reason == "missing_text"

    async def test_other_worker_not_assigned(self, async_session, accepted_photo_task):
        data = TaskSubmit(kind=DeliverableKind.PHOTO, content_url="https://cdn.example/p.jpg")

        with pytest.raises(StateConflict) as exc_info:
            await submit_task(async_session, accepted_photo_task.id, data, human_id="human_2")

        assert exc_info.value.reason == "not_assigned"

    async def test_open_task_not_assigned(self, async_session, open_task):
        with pytest.raises(StateConflict) as exc_info:
            await submit_task(
                async_session, open_task.id, TaskSubmit(kind=DeliverableKind.TEXT, text="x")
            )

        assert exc_info.value.reason == "not_assigned"

    async def test_second_submit_already_completed(
        self, async_session, accepted_photo_task, human
    ):
        data = TaskSubmit(kind=DeliverableKind.PHOTO, content_url="https://cdn.example/p.jpg")
        await submit_task(async_session, accepted_photo_task.id, data, human_id=human.id)
        await async_session.commit()

        with pytest.raises(StateConflict) as exc_info:
            await submit_task(async_session, accepted_photo_task.id, data, human_id=human.id)

        assert exc_info.value.reason == "already_completed"


class TestReviewGate:
    @pytest.fixture(autouse=True)
    def review_gate(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("REVIEW_GATE_ENABLED", "true")

    @pytest.fixture
    async def submitted_task(self, async_session, open_task, human):
        await accept_task(async_session, open_task.id, human.id)
        await async_session.commit()
        task, _ = await submit_task(
            async_session,
            open_task.id,
            TaskSubmit(kind=DeliverableKind.TEXT, text="done"),
            human_id=human.id,
        )
        await async_session.commit()
        return task

    async def test_submit_waits_for_review(self, async_session, submitted_task):
        assert submitted_task.status == TaskStatus.REVIEW_PENDING
        assert submitted_task.review_pending_deadline_at is not None
        assert await _events(async_session, submitted_task.id) == ["task.accepted"]

    async def test_owner_approves(self, async_session, submitted_task, account):
        task = await approve_task(async_session, submitted_task.id, account.id)
        await async_session.commit()

        assert task.status == TaskStatus.COMPLETED
        assert await _events(async_session, task.id) == ["task.accepted", "task.completed"]

        again = await approve_task(async_session, task.id, account.id)
        assert again.status == TaskStatus.COMPLETED

    async def test_other_agent_cannot_approve(self, async_session, submitted_task):
        with pytest.raises(AccessDenied):
            await approve_task(async_session, submitted_task.id, "ai_other")

    async def test_auto_approve_after_deadline(self, async_session, submitted_task):
        submitted_task.review_pending_deadline_at = utcnow() - timedelta(minutes=1)
        await async_session.commit()

        task = await get_task(async_session, submitted_task.id)

        assert task.status == TaskStatus.COMPLETED

    async def test_approve_open_task_rejected(self, async_session, open_task, account):
        with pytest.raises(StateConflict) as exc_info:
            await approve_task(async_session, open_task.id, account.id)

        assert exc_info.value.reason == "not_review_pending"

    async def test_owner_rejects(self, async_session, submitted_task, account):
        task = await reject_task(async_session, submitted_task.id, account.id)
        await async_session.commit()

        assert task.status == TaskStatus.FAILED
        assert task.failure_reason == FailureReason.REQUESTER_REJECTED
        assert task.review_pending_deadline_at is None
        assert await _events(async_session, task.id) == ["task.accepted", "task.failed"]

        again = await reject_task(async_session, task.id, account.id)
        assert again.status == TaskStatus.FAILED
        assert await _events(async_session, task.id) == ["task.accepted", "task.failed"]

    async def test_other_agent_cannot_reject(self, async_session, submitted_task):
        with pytest.raises(AccessDenied):
            await reject_task(async_session, submitted_task.id, "ai_other")

    async def test_reject_after_approve(self, async_session, submitted_task, account):
        await approve_task(async_session, submitted_task.id, account.id)
        await async_session.commit()

        with pytest.raises(StateConflict) as exc_info:
            await reject_task(async_session, submitted_task.id, account.id)

        assert exc_info.value.reason == "not_review_pending"

    async def test_rejected_task_not_auto_approved(self, async_session, submitted_task, account):
        await reject_task(async_session, submitted_task.id, account.id)
        await async_session.commit()

        assert await sweep_overdue_tasks(async_session, now=utcnow() + timedelta(days=4)) == (0, 0)
        task = await get_task(async_session, submitted_task.id)
        assert task.status == TaskStatus.FAILED


class TestPayTask:
    async def test_records_payout_breakdown(self, async_session, account):
        task = factories.create_task(ai_account_id=account.id, status=TaskStatus.COMPLETED)
        async_session.add(task)
        await async_session.commit()

        paid = await pay_task(async_session, task.id, Decimal("1.50"))
        await async_session.commit()

        assert paid.paid_status == PaidStatus.PAID
        assert paid.paid_method == "paypal"
        assert paid.fee_amount == Decimal("20.00")
        assert paid.payout_amount == Decimal("78.50")

        with pytest.raises(StateConflict) as exc_info:
            await pay_task(async_session, task.id)
        assert exc_info.value.reason == "already_paid"

    async def test_open_task_not_completed(self, async_session, open_task):
        with pytest.raises(StateConflict) as exc_info:
            await pay_task(async_session, open_task.id)

        assert exc_info.value.reason == "not_completed"


async def test_full_lifecycle(async_session, account, human):
    """Create → accept → submit → pay, with one event per emitting transition."""
    task = await create_task(
        async_session,
        account.id,
        TaskCreate(description="Read the sign", origin_country="US", budget_usd=Decimal("5")),
    )
    await async_session.commit()

    await accept_task(async_session, task.id, human.id, ai_account_id=account.id)
    await async_session.commit()
    await submit_task(
        async_session, task.id, TaskSubmit(kind=DeliverableKind.TEXT, text="Open 9-5")
    )
    await async_session.commit()
    paid = await pay_task(async_session, task.id)
    await async_session.commit()

    assert paid.status == TaskStatus.COMPLETED
    assert paid.fee_amount == Decimal("1.00")
    assert paid.payout_amount == Decimal("4.00")
    assert await _events(async_session, task.id) == ["task.accepted", "task.completed"]
