from __future__ import annotations

import random

import allure

from taskgraph_engine.graph.models import TaskSpec, TaskStatus
from taskgraph_engine.scheduling.batch import BatchScheduler
from taskgraph_engine.scheduling.resolver import DependencyResolver
from taskgraph_engine.state import GraphState, TaskState

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Dependency Resolution & Batching"),
]


def _state(*tasks: tuple[TaskSpec, TaskStatus]) -> GraphState:
    return GraphState(
        tasks={
            spec.task_id: TaskState(
                task_id=spec.task_id,
                spec=spec,
                status=status,
                phase_name=f"phase-{spec.phase}",
            )
            for spec, status in tasks
        },
    )


def _spec(task_id: str, *, files=(), deps=(), phase=0, complexity="medium") -> TaskSpec:
    return TaskSpec(
        task_id=task_id,
        subject=f"Do {task_id}",
        phase=phase,
        files=frozenset(files),
        depends_on=tuple(deps),
        complexity=complexity,
    )


def _with(state: GraphState, task_id: str, status: TaskStatus) -> GraphState:
    tasks = dict(state.tasks)
    tasks[task_id] = TaskState(
        task_id=task_id,
        spec=tasks[task_id].spec,
        status=status,
        phase_name=tasks[task_id].phase_name,
    )
    return GraphState(tasks=tasks)


def test_independent_tasks_share_a_batch_and_dependents_wait() -> None:
    scheduler = BatchScheduler(DependencyResolver(), max_parallelism=4)
    state = _state(
        (_spec("A", files=["a.py"]), TaskStatus.PENDING),
        (_spec("B", files=["b.py"]), TaskStatus.PENDING),
        (_spec("C", files=["c.py"], deps=["A", "B"]), TaskStatus.PENDING),
    )

    assert set(scheduler.next_batch(state).task_ids) == {"A", "B"}

    state = _with(_with(state, "A", TaskStatus.RUNNING), "B", TaskStatus.RUNNING)
    assert scheduler.next_batch(state).task_ids == ()

    state = _with(state, "A", TaskStatus.COMPLETE)
    assert scheduler.next_batch(state).task_ids == ()

    state = _with(state, "B", TaskStatus.COMPLETE)
    assert scheduler.next_batch(state).task_ids == ("C",)


def test_tasks_sharing_a_file_never_run_together() -> None:
    resolver = DependencyResolver()
    scheduler = BatchScheduler(resolver, max_parallelism=4)
    state = _state(
        (_spec("D", files=["shared.txt"]), TaskStatus.PENDING),
        (_spec("E", files=["shared.txt", "e.txt"]), TaskStatus.PENDING),
    )

    first = scheduler.next_batch(state)
    assert first.task_ids == ("D",)

    state = _with(state, "D", TaskStatus.RUNNING)
    assert resolver.is_unblocked(state.tasks["E"], state) is False
    assert scheduler.next_batch(state).task_ids == ()

    state = _with(state, "D", TaskStatus.PENDING)
    assert scheduler.next_batch(state).task_ids == ("D",)

    state = _with(state, "D", TaskStatus.BLOCKED)
    assert scheduler.next_batch(state).task_ids == ("E",)


def test_ranking_prefers_leverage_then_simplicity_then_id() -> None:
    resolver = DependencyResolver()
    state = _state(
        (_spec("leaf", complexity="low"), TaskStatus.PENDING),
        (_spec("root"), TaskStatus.PENDING),
        (_spec("mid", deps=["root"]), TaskStatus.PENDING),
        (_spec("top", deps=["mid"]), TaskStatus.PENDING),
        (_spec("b-hard", complexity="high"), TaskStatus.PENDING),
        (_spec("a-hard", complexity="high"), TaskStatus.PENDING),
    )

    ranked = resolver.ranked(state)

    assert [candidate.task_id for candidate in ranked] == ["root", "leaf", "a-hard", "b-hard"]
    assert ranked[0].unblock_count == 2


def test_unblock_count_ignores_terminal_descendants() -> None:
    state = _state(
        (_spec("root"), TaskStatus.PENDING),
        (_spec("done", deps=["root"]), TaskStatus.COMPLETE),
        (_spec("open", deps=["root"]), TaskStatus.PENDING),
    )

    assert DependencyResolver.unblock_counts(state)["root"] == 1


def test_phase_barrier_holds_later_phases() -> None:
    scheduler = BatchScheduler(DependencyResolver(), max_parallelism=4)
    state = _state(
        (_spec("first", files=["one.py"]), TaskStatus.RUNNING),
        (_spec("later", files=["two.py"], phase=1), TaskStatus.PENDING),
    )

    assert scheduler.next_batch(state).task_ids == ()
    assert scheduler.open_phase(state) == 0

    state = _with(state, "first", TaskStatus.BLOCKED)
    batch = scheduler.next_batch(state)
    assert batch.phase == 1
    assert batch.task_ids == ("later",)

    state = _with(state, "later", TaskStatus.COMPLETE)
    assert scheduler.open_phase(state) is None
    assert not scheduler.next_batch(state)


def test_batch_respects_free_slots() -> None:
    scheduler = BatchScheduler(DependencyResolver(), max_parallelism=2)
    state = _state(
        (_spec("busy", files=["x"]), TaskStatus.RUNNING),
        (_spec("a", files=["a"]), TaskStatus.PENDING),
        (_spec("b", files=["b"]), TaskStatus.PENDING),
    )

    assert scheduler.next_batch(state).task_ids == ("a",)


def test_lingering_units_hold_slots_files_and_their_own_task() -> None:
    scheduler = BatchScheduler(DependencyResolver(), max_parallelism=3)
    state = _state(
        (_spec("A", files=["shared.py"]), TaskStatus.PENDING),
        (_spec("B", files=["b.py"]), TaskStatus.PENDING),
        (_spec("C", files=["shared.py", "c.py"]), TaskStatus.PENDING),
        (_spec("D", files=["d.py"]), TaskStatus.PENDING),
    )

    batch = scheduler.next_batch(
        state,
        held_slots=1,
        held_files=frozenset({"shared.py"}),
        held_tasks=frozenset({"A"}),
    )

    assert batch.task_ids == ("B", "D")
    assert scheduler.next_batch(state, held_slots=3).task_ids == ()


def test_random_graphs_never_admit_overlapping_files() -> None:
    rng = random.Random(20261017)
    pool = [f"f{index}.py" for index in range(6)]
    statuses = [TaskStatus.PENDING, TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.COMPLETE]

    for _ in range(200):
        specs: list[tuple[TaskSpec, TaskStatus]] = []
        for index in range(rng.randint(1, 10)):
            earlier = [spec.task_id for spec, _ in specs]
            deps = rng.sample(earlier, k=rng.randint(0, min(2, len(earlier))))
            files = rng.sample(pool, k=rng.randint(0, 3))
            specs.append((_spec(f"t{index}", files=files, deps=deps), rng.choice(statuses)))
        state = _state(*specs)
        scheduler = BatchScheduler(DependencyResolver(), max_parallelism=rng.randint(1, 5))

        batch = scheduler.next_batch(state)

        running = state.with_status(TaskStatus.RUNNING)
        admitted = [candidate.task for candidate in batch.candidates]
        claimed = set(DependencyResolver.running_files(state))
        for task in admitted:
            assert claimed.isdisjoint(task.files)
            claimed.update(task.files)
        for task in admitted:
            assert task.status == TaskStatus.PENDING
            assert all(
                state.tasks[dep].status == TaskStatus.COMPLETE for dep in task.spec.depends_on
            )
        assert len(running) + len(admitted) <= max(scheduler.max_parallelism, len(running))
