from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from agent_dispatch.orchestrator.models import RecoveryReason, TaskStatus, TaskSubmission
from agent_dispatch.orchestrator.repository import TaskRepository
from agent_dispatch.orchestrator.store import TaskNotFoundError, TaskStateError

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Atomic Claim & Lifecycle"),
]


def _submit(repository: TaskRepository, **overrides: object) -> str:
    payload = TaskSubmission(
        project=str(overrides.pop("project", "alpha")),
        description=str(overrides.pop("description", "Fix the flaky test")),
        **overrides,  # type: ignore[arg-type]
    )
    return repository.submit_task(payload).task_id


def _running_task(repository: TaskRepository, *, machine_id: str = "m1") -> str:
    task_id = _submit(repository)
    claimed = repository.claim(worker_id="w1", machine_id=machine_id)
    assert claimed is not None
    assert claimed.task_id == task_id
    assert repository.mark_running(task_id=task_id, session_id="s1", workspace_path="/tmp/ws")
    return task_id


def test_submit_creates_queued_task_with_event(repository: TaskRepository) -> None:
    task = repository.submit_task(
        TaskSubmission(project=" alpha ", description=" Add tests ", priority=2),
    )

    assert task.status == TaskStatus.QUEUED
    assert task.project == "alpha"
    assert task.description == "Add tests"
    assert task.assigned_machine is None

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]
    assert details.events[0].status_to == TaskStatus.QUEUED


def test_task_events_require_an_existing_task(repository: TaskRepository) -> None:
    task_id = _submit(repository)

    with pytest.raises(IntegrityError):
        repository.add_task_event(task_id="missing", event_type="note", details={})

    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]


@pytest.mark.parametrize(
    ("project", "description", "budget", "message"),
    [
        ("", "work", None, "project"),
        ("alpha", "  ", None, "description"),
        ("alpha", "work", 0.0, "budget"),
    ],
)
def test_submit_rejects_invalid_payload(
    repository: TaskRepository,
    project: str,
    description: str,
    budget: float | None,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        repository.submit_task(
            TaskSubmission(project=project, description=description, max_budget_usd=budget),
        )


def test_claim_prefers_priority_then_age(repository: TaskRepository) -> None:
    low = _submit(repository, priority=0)
    high = _submit(repository, priority=5)

    first = repository.claim(worker_id="w1")
    second = repository.claim(worker_id="w1")

    assert first is not None and second is not None
    assert first.task_id == high
    assert second.task_id == low
    assert first.status == TaskStatus.CLAIMED
    assert first.worker_id == "w1"
    assert first.started_at is not None
    assert repository.claim(worker_id="w1") is None


def test_claim_on_empty_queue_returns_none(repository: TaskRepository) -> None:
    assert repository.claim(worker_id="w1", machine_id="m1") is None


def test_claim_respects_machine_affinity(repository: TaskRepository) -> None:
    pinned = _submit(repository, machine_affinity="m2", priority=9)
    free = _submit(repository)

    claimed = repository.claim(worker_id="w1", machine_id="m1")
    assert claimed is not None
    assert claimed.task_id == free
    assert claimed.assigned_machine == "m1"
    assert repository.claim(worker_id="w1", machine_id="m1") is None

    owner = repository.claim(worker_id="w2", machine_id="m2")
    assert owner is not None
    assert owner.task_id == pinned


def test_claim_without_machine_skips_pinned_tasks(repository: TaskRepository) -> None:
    _submit(repository, machine_affinity="m2")

    assert repository.claim(worker_id="w1") is None


def test_claim_project_filter(repository: TaskRepository) -> None:
    _submit(repository, project="alpha", priority=3)
    beta = _submit(repository, project="beta")

    claimed = repository.claim(worker_id="w1", project="beta")

    assert claimed is not None
    assert claimed.task_id == beta


@pytest.mark.parametrize("workers", [2, 8, 50])
def test_concurrent_claims_hand_out_each_task_exactly_once(
    repository: TaskRepository,
    workers: int,
) -> None:
    task_ids = {_submit(repository, description=f"task {index}") for index in range(10)}
    start = threading.Barrier(workers)
    claimed: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _claim_loop(worker_index: int) -> None:
        try:
            start.wait(timeout=10)
            while True:
                task = repository.claim(
                    worker_id=f"w{worker_index}",
                    machine_id=f"m{worker_index}",
                )
                if task is None:
                    return
                with lock:
                    claimed.append(task.task_id)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)

    threads = [threading.Thread(target=_claim_loop, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)

    assert errors == []
    assert sorted(claimed) == sorted(task_ids)
    assert len(claimed) == len(set(claimed))
    for task_id in task_ids:
        view = repository.get_task(task_id=task_id)
        assert view is not None
        assert view.status == TaskStatus.CLAIMED
        details = repository.get_task_details(task_id=task_id)
        assert details is not None
        assert [event.event_type for event in details.events].count("claimed") == 1


def test_running_task_completes_once(repository: TaskRepository) -> None:
    task_id = _running_task(repository)

    assert repository.complete_task(
        task_id=task_id,
        summary="done",
        files_changed=["src/app.py"],
        pr_url="https://example.com/pr/1",
    )
    assert not repository.complete_task(task_id=task_id, summary="again", files_changed=[])

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.result_summary == "done"
    assert task.files_changed == ["src/app.py"]
    assert task.pr_url == "https://example.com/pr/1"
    assert task.session_id == "s1"
    assert task.workspace_path == "/tmp/ws"
    assert task.completed_at is not None


def test_complete_requires_running(repository: TaskRepository) -> None:
    task_id = _submit(repository)

    assert not repository.complete_task(task_id=task_id, summary="x", files_changed=[])
    assert not repository.mark_running(task_id=task_id, session_id="s1")


def test_terminal_status_is_never_left(repository: TaskRepository) -> None:
    task_id = _running_task(repository)
    assert repository.fail_task(task_id=task_id, reason="Session exited with code 1")

    assert not repository.complete_task(task_id=task_id, summary="late", files_changed=[])
    assert not repository.mark_running(task_id=task_id, session_id="s2")
    assert not repository.fail_task(task_id=task_id, reason="again")
    assert repository.requeue_tasks_for_machine(machine_id="m1") == []
    with pytest.raises(TaskStateError):
        repository.cancel_task(task_id=task_id)

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error_reason == "Session exited with code 1"


def test_fail_task_supports_timeout_only_as_alternative(repository: TaskRepository) -> None:
    task_id = _running_task(repository)

    with pytest.raises(ValueError, match="Unsupported failure status"):
        repository.fail_task(task_id=task_id, reason="x", status=TaskStatus.COMPLETED)
    assert repository.fail_task(task_id=task_id, reason="too slow", status=TaskStatus.TIMEOUT)

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.TIMEOUT


def test_cancel_is_idempotent(repository: TaskRepository) -> None:
    task_id = _running_task(repository)

    assert repository.cancel_task(task_id=task_id) is True
    assert repository.cancel_task(task_id=task_id) is False

    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert details.task.status == TaskStatus.CANCELLED
    assert [event.event_type for event in details.events].count("cancelled") == 1


def test_cancel_queued_task(repository: TaskRepository) -> None:
    task_id = _submit(repository)

    assert repository.cancel_task(task_id=task_id)
    assert repository.claim(worker_id="w1") is None


def test_cancel_unknown_task_raises(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError, match="missing"):
        repository.cancel_task(task_id="missing")


def test_requeue_returns_in_flight_tasks_once(repository: TaskRepository) -> None:
    running = _running_task(repository, machine_id="m1")
    claimed = _submit(repository)
    assert repository.claim(worker_id="w1", machine_id="m1") is not None
    other_machine = _submit(repository)
    assert repository.claim(worker_id="w2", machine_id="m2") is not None

    requeued = repository.requeue_tasks_for_machine(
        machine_id="m1",
        reason=RecoveryReason.MACHINE_OFFLINE,
    )

    assert sorted(requeued) == sorted([running, claimed])
    assert repository.requeue_tasks_for_machine(machine_id="m1") == []
    for task_id in requeued:
        task = repository.get_task(task_id=task_id)
        assert task is not None
        assert task.status == TaskStatus.QUEUED
        assert task.assigned_machine is None
        assert task.worker_id is None
        assert task.session_id is None
        assert task.started_at is None
    other = repository.get_task(task_id=other_machine)
    assert other is not None
    assert other.status == TaskStatus.CLAIMED

    details = repository.get_task_details(task_id=running)
    assert details is not None
    requeue_event = details.events[-1]
    assert requeue_event.event_type == "requeued"
    assert requeue_event.status_from == TaskStatus.RUNNING
    assert requeue_event.details == {"machine_id": "m1", "reason": "machine_offline"}


def test_requeued_task_ignores_its_previous_worker(repository: TaskRepository) -> None:
    task_id = _submit(repository)
    assert repository.claim(worker_id="worker-a", machine_id="m-a") is not None
    assert repository.mark_running(task_id=task_id, session_id="sa", worker_id="worker-a")
    assert repository.requeue_tasks_for_machine(machine_id="m-a") == [task_id]
    assert repository.claim(worker_id="worker-b", machine_id="m-b") is not None
    assert repository.mark_running(task_id=task_id, session_id="sb", worker_id="worker-b")

    assert not repository.complete_task(
        task_id=task_id,
        summary="stale result",
        files_changed=[],
        worker_id="worker-a",
    )
    assert not repository.fail_task(task_id=task_id, reason="stale", worker_id="worker-a")
    assert not repository.mark_running(task_id=task_id, session_id="sa2", worker_id="worker-a")

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.RUNNING
    assert task.worker_id == "worker-b"
    assert task.session_id == "sb"
    assert task.result_summary is None

    assert repository.complete_task(
        task_id=task_id,
        summary="done",
        files_changed=[],
        worker_id="worker-b",
    )


def test_recover_stale_running_uses_start_time(repository: TaskRepository) -> None:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
    stale = _submit(repository, description="old")
    assert repository.claim(worker_id="w1", now=now - timedelta(seconds=900)) is not None
    assert repository.mark_running(task_id=stale, session_id="s-old")
    fresh = _submit(repository, description="new")
    assert repository.claim(worker_id="w1", now=now - timedelta(seconds=60)) is not None
    assert repository.mark_running(task_id=fresh, session_id="s-new")

    recovered = repository.recover_stale_running(timeout_seconds=600, now=now)

    assert recovered == [stale]
    assert repository.recover_stale_running(timeout_seconds=600, now=now) == []
    stale_view = repository.get_task(task_id=stale)
    fresh_view = repository.get_task(task_id=fresh)
    assert stale_view is not None and fresh_view is not None
    assert stale_view.status == TaskStatus.FAILED
    assert stale_view.error_reason == "stale_recovery"
    assert fresh_view.status == TaskStatus.RUNNING


def test_assign_and_release_pins(repository: TaskRepository) -> None:
    task_id = _submit(repository)

    assert [task.task_id for task in repository.list_unassigned_queued()] == [task_id]
    assert repository.assign_task(task_id=task_id, machine_id="m1")
    assert not repository.assign_task(task_id=task_id, machine_id="m2")
    assert repository.list_unassigned_queued() == []

    assert repository.release_queued_for_machine(machine_id="m1") == [task_id]
    assert repository.release_queued_for_machine(machine_id="m1") == []
    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.assigned_machine is None
    assert task.status == TaskStatus.QUEUED


def test_set_topic_and_informational_events(repository: TaskRepository) -> None:
    task_id = _submit(repository)

    assert repository.set_topic(task_id=task_id, topic_id="42")
    assert not repository.set_topic(task_id="missing", topic_id="42")
    repository.add_task_event(
        task_id=task_id,
        event_type="engine_handoff",
        details={"engine_from": "claude", "engine_to": "codex"},
    )

    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert details.task.topic_id == "42"
    handoff = details.events[-1]
    assert handoff.event_type == "engine_handoff"
    assert handoff.status_from is None
    assert handoff.status_to is None
    assert handoff.details == {"engine_from": "claude", "engine_to": "codex"}


def test_list_tasks_filters_by_status(repository: TaskRepository) -> None:
    running = _running_task(repository)
    queued = _submit(repository)

    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.QUEUED)] == [queued]
    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.RUNNING)] == [
        running,
    ]
    assert len(repository.list_tasks()) == 2
    assert repository.get_task_details(task_id="missing") is None
