from __future__ import annotations

import json
import os
import random
import threading
import time
from collections.abc import Callable
from pathlib import Path

import allure

from taskgraph_engine.graph.models import AuditEvent, TaskStatus
from taskgraph_engine.state import EventType
from taskgraph_engine.storage.repository import new_event

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Engine Loop"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 10_000.0

    def __call__(self) -> float:
        return self.now


def _drive(engine, done: Callable[[], bool], *, limit: int = 400) -> None:
    for _ in range(limit):
        engine.tick()
        if done():
            return
        engine.dispatcher.wait(0.05)
    raise AssertionError("engine did not reach the expected state")


def _wait_for(condition: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def _events(repository, event_type: str, task_id: str | None = None) -> list[AuditEvent]:
    return [
        event
        for event in repository.list_events(task_id=task_id)
        if event.event_type == event_type
    ]


def _rewrite(path: Path, document: dict) -> None:
    previous = path.stat().st_mtime_ns
    path.write_text(json.dumps(document), "utf-8")
    os.utime(path, ns=(previous + 1_000_000_000, previous + 1_000_000_000))


def test_dependents_wait_for_both_dependencies(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    graph = write_graph(
        [
            {"id": "A", "subject": "Left", "files": ["a.py"]},
            {"id": "B", "subject": "Right", "files": ["b.py"]},
            {"id": "C", "subject": "Join", "files": ["c.py"], "dependsOn": ["A", "B"]},
        ],
    )

    summary = make_engine(graph, scripted_registry()).run()

    assert summary.stopped_reason == "all tasks terminal"
    assert repository.snapshot().all_complete()
    dispatched = {event.task_id: event for event in _events(repository, "dispatched")}
    completed = {event.task_id: event for event in _events(repository, "completed")}
    assert set(dispatched["A"].details["batch"]) == {"A", "B"}
    assert dispatched["C"].sequence > completed["A"].sequence
    assert dispatched["C"].sequence > completed["B"].sequence


def test_silent_execution_is_stalled_and_requeued(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    clock = FakeClock()
    registry = scripted_registry(block=True)
    graph = write_graph([{"id": "F", "subject": "Hangs forever"}])
    engine = make_engine(graph, registry, clock=clock)
    engine.max_iterations = 1

    engine.tick()
    _wait_for(lambda: bool(registry.get("claude").calls))
    clock.now += 1_201
    report = engine.tick()

    task = repository.snapshot().tasks["F"]
    assert report.stalled == ["F"]
    assert task.status == TaskStatus.PENDING
    assert task.attempt == 1
    assert task.last_error is not None
    assert task.last_error.startswith("stall_timeout")
    assert task.attempts[0].outcome == "stalled"
    assert engine.dispatcher.live() == []

    transitions = [
        (event.event_type, event.status_to)
        for event in repository.list_events(task_id="F")
        if event.event_type in {"stalled", "requeued"}
    ]
    assert transitions == [
        ("stalled", TaskStatus.STUCK),
        ("requeued", TaskStatus.PENDING),
    ]
    assert _events(repository, "stalled", "F")[0].actor == "monitor"


def test_abandoned_execution_keeps_its_slot_until_the_thread_exits(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
    settings,
) -> None:
    settings.scheduler.max_parallelism = 1
    clock = FakeClock()
    release = threading.Event()
    registry = scripted_registry(on_execute=lambda task, context: release.wait(10))
    graph = write_graph(
        [
            {"id": "D", "subject": "Ignores cancellation", "files": ["d.py"]},
            {"id": "E", "subject": "Waits for a free worker", "files": ["e.py"]},
        ],
    )
    engine = make_engine(graph, registry, clock=clock)

    assert engine.tick().dispatched == ["D"]
    _wait_for(lambda: bool(registry.get("claude").calls))
    clock.now += 1_201
    stalled = engine.tick()
    clock.now += 1_201
    later = engine.tick()

    assert stalled.stalled == ["D"]
    assert stalled.dispatched == []
    assert later.stalled == []
    assert later.dispatched == []
    assert [held.task_id for held in engine.dispatcher.lingering()] == ["D"]
    assert repository.snapshot().tasks["D"].attempt == 1
    assert repository.snapshot().tasks["E"].attempt == 0
    assert [call[0] for call in registry.get("claude").calls] == ["D"]

    release.set()
    _wait_for(lambda: not engine.dispatcher.lingering())
    _drive(engine, lambda: repository.snapshot().all_complete())

    state = repository.snapshot()
    assert state.tasks["D"].attempt == 2
    assert [attempt.outcome for attempt in state.tasks["D"].attempts][0] == "stalled"
    assert state.tasks["E"].attempt == 1


def test_backend_success_does_not_override_failed_verification(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    graph = write_graph(
        [{"id": "V", "subject": "Claims success", "verification": ["exit 3"], "maxAttempts": 2}],
    )

    make_engine(graph, scripted_registry(confidence=99)).run()

    task = repository.snapshot().tasks["V"]
    assert task.status == TaskStatus.BLOCKED
    assert task.attempt == 2
    assert _events(repository, "completed", "V") == []
    failed = _events(repository, "failed", "V")
    assert failed[0].actor == "verifier"
    assert failed[0].reason == (
        "verification_failure: Verification failed for task V: 'exit 3' exited with 3"
    )


def test_blocked_task_blocks_its_pending_dependents(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    graph = write_graph(
        [
            {"id": "X", "subject": "Broken", "verification": ["exit 1"], "maxAttempts": 1},
            {"id": "Y", "subject": "Needs X", "dependsOn": ["X"]},
            {"id": "Z", "subject": "Needs Y", "dependsOn": ["Y"]},
            {"id": "W", "subject": "Independent"},
        ],
    )

    summary = make_engine(graph, scripted_registry()).run()

    state = repository.snapshot()
    assert summary.stopped_reason == "all tasks terminal"
    assert state.tasks["X"].blocked_reason == "terminal_blocked"
    assert state.tasks["Y"].blocked_reason == "upstream_blocked:X"
    assert state.tasks["Z"].blocked_reason == "upstream_blocked:X"
    assert state.tasks["W"].status == TaskStatus.COMPLETE
    assert state.tasks["Y"].attempt == 0


def test_task_added_to_the_source_mid_run_is_executed(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    first = {"id": "A", "subject": "Existing"}
    graph = write_graph([first])
    engine = make_engine(graph, scripted_registry())

    _drive(engine, lambda: repository.snapshot().tasks["A"].status == TaskStatus.COMPLETE)

    added = {"id": "B", "subject": "Added", "dependsOn": ["A"]}
    _rewrite(graph, {"phases": [{"name": "phase-0", "tasks": [first, added]}]})
    report = engine.tick()
    assert report.registered == ["B"]
    assert _events(repository, "task_redefined", "A") == []

    _drive(engine, lambda: repository.snapshot().all_complete())
    registered = _events(repository, "task_registered", "B")
    assert registered[0].actor == "store"


def test_edited_task_is_redefined_before_dispatch(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    subjects: list[str] = []
    registry = scripted_registry(on_execute=lambda task, context: subjects.append(task.subject))
    graph = write_graph([{"id": "A", "subject": "Original"}])
    engine = make_engine(graph, registry)
    engine.bootstrap()

    revised = {"id": "A", "subject": "Revised", "files": ["a.py"]}
    _rewrite(graph, {"phases": [{"name": "phase-0", "tasks": [revised]}]})
    _drive(engine, lambda: repository.snapshot().all_complete())

    redefined = _events(repository, "task_redefined", "A")
    assert len(redefined) == 1
    assert redefined[0].actor == "store"
    assert (redefined[0].status_from, redefined[0].status_to) == (
        TaskStatus.PENDING,
        TaskStatus.PENDING,
    )
    assert redefined[0].sequence < _events(repository, "dispatched", "A")[0].sequence
    assert subjects == ["Revised"]
    assert repository.snapshot().tasks["A"].files == frozenset({"a.py"})


def test_edit_of_running_task_waits_until_the_attempt_ends(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    release = threading.Event()
    registry = scripted_registry(on_execute=lambda task, context: release.wait(10))
    graph = write_graph([{"id": "R", "subject": "Before"}])
    engine = make_engine(graph, registry)

    engine.tick()
    _wait_for(lambda: bool(registry.get("claude").calls))
    _rewrite(graph, {"phases": [{"name": "phase-0", "tasks": [{"id": "R", "subject": "After"}]}]})
    engine.tick()

    assert _events(repository, "task_redefined", "R") == []
    assert repository.snapshot().tasks["R"].spec.subject == "Before"

    release.set()
    _drive(engine, lambda: repository.snapshot().all_complete())
    engine.tick()

    redefined = _events(repository, "task_redefined", "R")
    assert len(redefined) == 1
    assert redefined[0].sequence > _events(repository, "completed", "R")[0].sequence
    assert repository.snapshot().tasks["R"].spec.subject == "After"


def test_failed_setup_command_fails_the_attempt_without_calling_backends(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    registry = scripted_registry()
    graph = write_graph(
        [{"id": "S", "subject": "Needs setup", "setup": "exit 4", "maxAttempts": 1}],
    )

    summary = make_engine(graph, registry).run()

    task = repository.snapshot().tasks["S"]
    assert summary.stopped_reason == "all tasks terminal"
    assert task.status == TaskStatus.BLOCKED
    assert task.attempts[0].backend == "setup"
    assert task.attempts[0].error_kind == "backend_error"
    assert registry.get("claude").calls == []
    assert registry.get("codex").calls == []
    failed = _events(repository, "failed", "S")
    assert failed[0].actor == "dispatcher"
    assert failed[0].reason == "backend_error: setup 'exit 4' exited with 4"


def test_execution_timeout_moves_a_busy_task_to_stuck_then_pending(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
    settings,
) -> None:
    settings.monitor.timeout_seconds_by_complexity = {"low": 60, "medium": 1_800, "high": 3_600}
    clock = FakeClock()
    registry = scripted_registry(block=True)
    graph = write_graph([{"id": "T", "subject": "Slow", "complexity": "low"}])
    engine = make_engine(graph, registry, clock=clock)
    engine.max_iterations = 1

    engine.tick()
    _wait_for(lambda: bool(registry.get("claude").calls))
    clock.now += 61
    report = engine.tick()

    task = repository.snapshot().tasks["T"]
    assert report.stalled == ["T"]
    assert task.status == TaskStatus.PENDING
    assert task.attempts[0].outcome == "timed_out"
    assert task.last_error == "execution_timeout: running for 61s"
    assert task.last_error_kind == "execution_timeout"
    transitions = [
        (event.event_type, event.status_from, event.status_to)
        for event in repository.list_events(task_id="T")
        if event.event_type in {"stalled", "requeued"}
    ]
    assert transitions == [
        ("stalled", TaskStatus.RUNNING, TaskStatus.STUCK),
        ("requeued", TaskStatus.STUCK, TaskStatus.PENDING),
    ]


def test_invalid_edit_is_ignored_and_last_graph_kept(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    graph = write_graph([{"id": "A", "subject": "Existing"}])
    engine = make_engine(graph, scripted_registry())
    engine.bootstrap()

    _rewrite(
        graph,
        {
            "phases": [
                {"name": "phase-0", "tasks": [{"id": "A", "subject": "x", "dependsOn": ["A"]}]},
            ],
        },
    )
    engine.tick()

    assert repository.snapshot().tasks["A"].spec.depends_on == ()
    assert engine.graph_store.changed_since_load() is False
    _drive(engine, lambda: repository.snapshot().all_complete())


def test_orphaned_running_task_is_recovered_on_start(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    graph = write_graph([{"id": "O", "subject": "Interrupted"}])
    make_engine(graph, scripted_registry()).bootstrap()
    repository.append(
        new_event(
            task_id="O",
            event_type=EventType.DISPATCHED.value,
            status_from=TaskStatus.PENDING,
            status_to=TaskStatus.RUNNING,
            actor="scheduler",
            reason="attempt 1 at tier 0",
            details={"attempt_no": 1, "tier": 0, "backend": "claude"},
        ),
    )

    summary = make_engine(graph, scripted_registry()).run()

    task = repository.snapshot().tasks["O"]
    assert summary.stalled == 1
    assert task.status == TaskStatus.COMPLETE
    assert task.attempt == 2
    assert task.attempts[0].outcome == "interrupted"
    assert task.attempts[1].tier == 1
    stalled = _events(repository, "stalled", "O")
    assert "orphaned" in stalled[0].reason


def test_stop_request_prevents_dispatch(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    graph = write_graph([{"id": "A", "subject": "Never started"}])
    engine = make_engine(graph, scripted_registry())
    engine.request_stop()

    summary = engine.run()

    assert summary.stopped_reason == "stop requested"
    assert summary.dispatched == 0
    assert repository.snapshot().tasks["A"].status == TaskStatus.PENDING


def test_dispatch_limit_stops_the_run(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    graph = write_graph(
        [
            {"id": "A", "subject": "One", "files": ["shared"]},
            {"id": "B", "subject": "Two", "files": ["shared"]},
        ],
    )

    summary = make_engine(graph, scripted_registry()).run(max_iterations=1)

    assert summary.dispatched == 1
    assert summary.stopped_reason == "max iterations reached"
    assert repository.snapshot().counts()["pending"] == 1


def test_random_graphs_keep_file_sets_disjoint_and_dependencies_ordered(
    make_engine,
    scripted_registry,
    write_graph,
    repository,
) -> None:
    rng = random.Random(7)
    pool = [f"src/m{index}.py" for index in range(5)]

    for round_no in range(3):
        tasks = []
        for index in range(rng.randint(4, 9)):
            earlier = [task["id"] for task in tasks]
            tasks.append(
                {
                    "id": f"r{round_no}-t{index}",
                    "subject": f"Task {index}",
                    "files": rng.sample(pool, k=rng.randint(0, 2)),
                    "dependsOn": rng.sample(earlier, k=min(len(earlier), rng.randint(0, 2))),
                },
            )
        graph = write_graph(tasks, name=f"graph-{round_no}.json")
        make_engine(graph, scripted_registry()).run()

    events = repository.list_events()
    state = repository.snapshot()
    assert state.all_complete()

    intervals: dict[str, tuple[int, int]] = {}
    started: dict[str, int] = {}
    for event in events:
        if event.event_type == EventType.DISPATCHED.value:
            started[event.task_id] = event.sequence
        elif event.event_type == EventType.ATTEMPT_RECORDED.value:
            intervals[event.task_id] = (started[event.task_id], event.sequence)

    ids = sorted(intervals)
    for position, left in enumerate(ids):
        for right in ids[position + 1 :]:
            if state.tasks[left].files.isdisjoint(state.tasks[right].files):
                continue
            (s1, e1), (s2, e2) = intervals[left], intervals[right]
            assert e1 < s2 or e2 < s1, f"{left} and {right} overlapped on shared files"
    for task_id, (start, _) in intervals.items():
        for dep in state.tasks[task_id].spec.depends_on:
            assert intervals[dep][1] < start
