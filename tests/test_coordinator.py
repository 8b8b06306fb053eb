import threading

import pytest

from runnerci import events as ev
from runnerci.coordinator import Coordinator, PipelineRun, run_pipeline
from runnerci.errors import CycleError
from runnerci.loader import definition_from_yaml
from runnerci.model import FailureReason, JobStatus, PipelineDefinition, WorkerState

from conftest import FakeRuntime, make_job, make_pool

TICK = 0.01


def _coordinator(pool, runtime, **kw):
    kw.setdefault("tick", TICK)
    kw.setdefault("max_parallel", 4)
    return Coordinator(pool, runtime, **kw)


def _run(definition, pool, runtime, **kw):
    return _coordinator(pool, runtime, **kw).run(PipelineRun(definition))


def test_rust_pipeline_on_one_worker(rust_yaml):
    definition = definition_from_yaml(rust_yaml)
    runtime = FakeRuntime(delay=0.01)
    pool = make_pool(("runner-1", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime)

    assert result.succeeded
    assert set(result.statuses().values()) == {JobStatus.SUCCEEDED}
    # one worker: never two jobs at once
    assert runtime.max_active == 1
    assert all(r.worker_id == "runner-1" for r in result.jobs.values())
    assert pool.snapshot() == {"runner-1": WorkerState.IDLE}


def test_formatting_failure_does_not_stop_siblings(rust_yaml):
    definition = definition_from_yaml(rust_yaml)
    runtime = FakeRuntime({"cargo fmt --all -- --check": 1})
    pool = make_pool(("runner-1", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime)

    assert not result.succeeded
    assert result.status == JobStatus.FAILED
    fmt = result.jobs["test-formatting"]
    assert fmt.reason == FailureReason.COMMAND
    assert fmt.failure.command == "cargo fmt --all -- --check"
    assert fmt.failure.exit_code == 1
    others = {n: s for n, s in result.statuses().items() if n != "test-formatting"}
    assert set(others.values()) == {JobStatus.SUCCEEDED}


def test_unsatisfiable_tags_time_out_waiting():
    definition = PipelineDefinition.from_jobs([
        make_job("train", tags=["gpu"]),
        make_job("lint"),
    ])
    runtime = FakeRuntime()
    pool = make_pool(("runner-1", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime, acquire_timeout=0.2)

    assert result.jobs["lint"].status == JobStatus.SUCCEEDED
    train = result.jobs["train"]
    assert train.status == JobStatus.FAILED
    assert train.reason == FailureReason.TIMEOUT
    assert train.attempts == 0
    assert "gpu" in train.message
    assert "run train" not in runtime.commands()


def test_matched_worker_always_has_required_tags():
    definition = PipelineDefinition.from_jobs([
        make_job("cpu-1", tags=["x86_64"]),
        make_job("gpu-1", tags=["x86_64", "gpu"]),
        make_job("cpu-2", tags=["x86_64", "docker"]),
        make_job("gpu-2", tags=["gpu"]),
    ])
    pool = make_pool(
        ("plain", ["x86_64"]),
        ("dock", ["x86_64", "docker"]),
        ("cuda", ["x86_64", "docker", "gpu"]),
    )

    result = _run(definition, pool, FakeRuntime(delay=0.01))

    assert result.succeeded
    for name, r in result.jobs.items():
        assert definition[name].tags <= pool.get(r.worker_id).tags


def test_failed_job_skips_dependents_transitively():
    definition = PipelineDefinition.from_jobs([
        make_job("build", "cargo build"),
        make_job("test", needs=["build"]),
        make_job("package", needs=["test"]),
        make_job("docs"),
    ])
    runtime = FakeRuntime({"cargo build": 101})

    result = _run(definition, make_pool(("w", ["x86_64", "docker"])), runtime)

    assert result.statuses() == {
        "build": JobStatus.FAILED,
        "test": JobStatus.SKIPPED,
        "package": JobStatus.SKIPPED,
        "docs": JobStatus.SUCCEEDED,
    }
    assert "build" in result.jobs["test"].message
    assert "run test" not in runtime.commands()


def test_dependents_start_only_after_predecessors_succeed():
    definition = PipelineDefinition.from_jobs([
        make_job("a", "step a"),
        make_job("b", "step b"),
        make_job("c", "step c", needs=["a", "b"]),
    ])
    runtime = FakeRuntime(delay=0.02)
    pool = make_pool(("w1", ["x86_64", "docker"]), ("w2", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime)

    assert result.succeeded
    assert runtime.commands()[-1] == "step c"
    assert result.jobs["c"].started_at >= result.jobs["a"].finished_at
    assert result.jobs["c"].started_at >= result.jobs["b"].finished_at


def test_allow_failure_does_not_block():
    definition = PipelineDefinition.from_jobs([
        make_job("flaky", "flaky", allow_failure=True),
        make_job("after", needs=["flaky"]),
    ])
    runtime = FakeRuntime({"flaky": 1})

    result = _run(definition, make_pool(("w", ["x86_64", "docker"])), runtime)

    assert result.jobs["flaky"].status == JobStatus.FAILED
    assert result.jobs["after"].status == JobStatus.SUCCEEDED
    assert result.succeeded


def test_infrastructure_failure_is_retried_once():
    definition = PipelineDefinition.from_jobs([make_job("coverage", "cargo tarpaulin")])
    runtime = FakeRuntime({"cargo tarpaulin": ["infra", 0]})
    pool = make_pool(("w1", ["x86_64", "docker"]), ("w2", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime)

    job = result.jobs["coverage"]
    assert job.status == JobStatus.SUCCEEDED
    assert job.attempts == 2
    assert sorted(pool.snapshot().values()) == [WorkerState.IDLE, WorkerState.OFFLINE]


def test_second_infrastructure_failure_fails_job():
    definition = PipelineDefinition.from_jobs([make_job("coverage", "cargo tarpaulin")])
    runtime = FakeRuntime({"cargo tarpaulin": ["infra", "infra", 0]})
    pool = make_pool(*[(f"w{i}", ["x86_64", "docker"]) for i in range(3)])

    result = _run(definition, pool, runtime)

    job = result.jobs["coverage"]
    assert job.status == JobStatus.FAILED
    assert job.reason == FailureReason.INFRASTRUCTURE
    assert job.attempts == 2
    assert runtime.commands().count("cargo tarpaulin") == 2


def test_last_matching_worker_lost_fails_job():
    definition = PipelineDefinition.from_jobs([make_job("coverage", "cargo tarpaulin")])
    runtime = FakeRuntime({"cargo tarpaulin": ["infra", 0]})
    pool = make_pool(("only", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime)

    job = result.jobs["coverage"]
    assert job.status == JobStatus.FAILED
    assert job.reason == FailureReason.INFRASTRUCTURE
    assert job.attempts == 1


def test_health_check_readmits_worker_for_retry():
    definition = PipelineDefinition.from_jobs([make_job("coverage", "cargo tarpaulin")])
    runtime = FakeRuntime({"cargo tarpaulin": ["infra", 0]})
    pool = make_pool(("only", ["x86_64", "docker"]), health_check=lambda w: True)

    result = _run(definition, pool, runtime)

    assert result.jobs["coverage"].status == JobStatus.SUCCEEDED
    assert result.jobs["coverage"].attempts == 2
    assert pool.snapshot() == {"only": WorkerState.IDLE}


def test_job_timeout():
    definition = PipelineDefinition.from_jobs([
        make_job("stuck", "sleep forever", timeout=0.1),
        make_job("after", needs=["stuck"]),
    ])
    runtime = FakeRuntime({"sleep forever": "hang"})

    result = _run(definition, make_pool(("w", ["x86_64", "docker"])), runtime)

    assert result.jobs["stuck"].status == JobStatus.FAILED
    assert result.jobs["stuck"].reason == FailureReason.TIMEOUT
    assert result.jobs["after"].status == JobStatus.SKIPPED
    assert not result.cancelled


def test_cancel_terminates_running_and_skips_the_rest():
    definition = PipelineDefinition.from_jobs([
        make_job("long", "sleep forever"),
        make_job("queued", "never"),
        make_job("after", needs=["long"]),
    ])
    runtime = FakeRuntime({"sleep forever": "hang"})
    pool = make_pool(("only", ["x86_64", "docker"]))
    run = PipelineRun(definition)

    started = threading.Event()
    original = runtime.run

    def run_and_signal(image, command, **kw):
        started.set()
        return original(image, command, **kw)

    runtime.run = run_and_signal
    coordinator = _coordinator(pool, runtime)

    def cancel_when_running():
        started.wait(5)
        run.cancel()

    threading.Thread(target=cancel_when_running, daemon=True).start()
    result = coordinator.run(run)

    assert result.cancelled
    assert result.jobs["long"].status == JobStatus.FAILED
    assert result.jobs["long"].reason == FailureReason.CANCELLED
    assert result.jobs["queued"].status == JobStatus.SKIPPED
    assert result.jobs["after"].status == JobStatus.SKIPPED
    assert "never" not in runtime.commands()
    assert pool.snapshot() == {"only": WorkerState.IDLE}


def test_max_parallel_limits_concurrency():
    definition = PipelineDefinition.from_jobs([make_job(f"j{i}") for i in range(6)])
    runtime = FakeRuntime(delay=0.03)
    pool = make_pool(*[(f"w{i}", ["x86_64", "docker"]) for i in range(6)])

    result = _run(definition, pool, runtime, max_parallel=2)

    assert result.succeeded
    assert runtime.max_active <= 2


def test_independent_jobs_run_concurrently():
    definition = PipelineDefinition.from_jobs([make_job(f"j{i}") for i in range(3)])
    runtime = FakeRuntime(delay=0.2)
    pool = make_pool(*[(f"w{i}", ["x86_64", "docker"]) for i in range(3)])

    result = _run(definition, pool, runtime, max_parallel=3)

    assert result.succeeded
    assert runtime.max_active >= 2


def test_stage_order_is_respected():
    definition = PipelineDefinition.from_jobs(
        [
            make_job("unit", "cargo test", stage="test"),
            make_job("compile", "cargo build", stage="build"),
        ],
        stages=["build", "test"],
    )
    runtime = FakeRuntime()
    pool = make_pool(("w1", ["x86_64", "docker"]), ("w2", ["x86_64", "docker"]))

    _run(definition, pool, runtime)

    assert runtime.commands() == ["cargo build", "cargo test"]


def test_rerun_gives_same_statuses(rust_yaml):
    definition = definition_from_yaml(rust_yaml)
    pool = make_pool(("w1", ["x86_64", "docker"]), ("w2", ["x86_64", "docker"]))
    coordinator = _coordinator(pool, FakeRuntime({"cargo fmt --all -- --check": 1}))

    first = coordinator.run(PipelineRun(definition))
    second = coordinator.run(PipelineRun(definition))

    assert first.statuses() == second.statuses()
    assert first.run_id != second.run_id


def test_cycle_runs_nothing():
    definition = PipelineDefinition.from_jobs([
        make_job("a", needs=["b"]),
        make_job("b", needs=["a"]),
    ])
    runtime = FakeRuntime()
    with pytest.raises(CycleError):
        run_pipeline(definition, make_pool(("w", ["x86_64", "docker"])), runtime, tick=TICK)
    assert runtime.calls == []


def test_lifecycle_events(sink, dispatcher):
    definition = PipelineDefinition.from_jobs([
        make_job("build", "cargo build"),
        make_job("test", "cargo test", needs=["build"]),
    ])

    result = run_pipeline(
        definition,
        make_pool(("w", ["x86_64", "docker"])),
        FakeRuntime({"cargo build": 1}),
        events=dispatcher,
        tick=TICK,
    )
    dispatcher.close()

    kinds = sink.kinds()
    assert kinds[0] == ev.PIPELINE_STARTED
    assert kinds[-1] == ev.PIPELINE_FINISHED
    assert sink.kinds("build") == [ev.JOB_STARTED, ev.STEP_STARTED, ev.STEP_FINISHED, ev.JOB_FINISHED]
    assert sink.kinds("test") == [ev.JOB_SKIPPED]
    assert sink.events[-1].data["status"] == "failed"
    assert all(e.run_id == result.run_id for e in sink.events)


def test_to_dict_lists_every_job(rust_yaml):
    definition = definition_from_yaml(rust_yaml)
    result = _run(definition, make_pool(("w", ["x86_64", "docker"])), FakeRuntime())

    d = result.to_dict()
    assert d["status"] == "succeeded"
    assert [j["name"] for j in d["jobs"]] == definition.names


def test_jobs_queued_behind_busy_worker_do_not_time_out():
    definition = PipelineDefinition.from_jobs([make_job(f"j{i}") for i in range(3)])
    runtime = FakeRuntime(delay=0.3)
    pool = make_pool(("only", ["x86_64", "docker"]))

    # the last job waits ~0.6s for the single worker, longer than the acquire timeout
    result = _run(definition, pool, runtime, acquire_timeout=0.5)

    assert result.succeeded
    assert set(result.statuses().values()) == {JobStatus.SUCCEEDED}


def test_parallel_cap_does_not_count_toward_acquire_timeout():
    definition = PipelineDefinition.from_jobs([make_job(f"j{i}") for i in range(3)])
    runtime = FakeRuntime(delay=0.3)
    pool = make_pool(("w1", ["x86_64", "docker"]), ("w2", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime, max_parallel=1, acquire_timeout=0.5)

    assert result.succeeded
    assert runtime.max_active == 1


def test_health_check_keeps_sibling_running_after_infrastructure_failure():
    definition = PipelineDefinition.from_jobs([
        make_job("coverage", "cargo tarpaulin"),
        make_job("unit", "cargo test"),
    ])
    runtime = FakeRuntime({"cargo tarpaulin": ["infra", 0]})
    pool = make_pool(("only", ["x86_64", "docker"]), health_check=lambda w: True)

    result = _run(definition, pool, runtime)

    assert result.succeeded
    assert result.jobs["coverage"].attempts == 2
    assert result.jobs["unit"].status == JobStatus.SUCCEEDED
    assert result.jobs["unit"].attempts == 1
    assert pool.snapshot() == {"only": WorkerState.IDLE}


def test_workers_that_stay_offline_time_out_waiting():
    definition = PipelineDefinition.from_jobs([make_job("coverage", "cargo tarpaulin")])
    runtime = FakeRuntime({"cargo tarpaulin": ["infra", 0]})
    pool = make_pool(("only", ["x86_64", "docker"]), health_check=lambda w: False)

    result = _run(definition, pool, runtime, acquire_timeout=0.2)

    job = result.jobs["coverage"]
    assert job.status == JobStatus.FAILED
    assert job.reason == FailureReason.TIMEOUT
    assert job.attempts == 1
    assert "stayed offline" in job.message


def test_allowed_exit_code_keeps_pipeline_green():
    definition = PipelineDefinition.from_jobs([
        make_job("audit", "cargo audit", allow_exit_codes=[3]),
        make_job("after", needs=["audit"]),
    ])
    runtime = FakeRuntime({"cargo audit": 3})

    result = _run(definition, make_pool(("w", ["x86_64", "docker"])), runtime)

    assert result.jobs["audit"].status == JobStatus.FAILED
    assert result.jobs["audit"].allow_failure is True
    assert result.jobs["after"].status == JobStatus.SUCCEEDED
    assert result.succeeded


def test_other_exit_code_still_fails_pipeline():
    definition = PipelineDefinition.from_jobs([
        make_job("audit", "cargo audit", allow_exit_codes=[3]),
        make_job("after", needs=["audit"]),
    ])
    runtime = FakeRuntime({"cargo audit": 1})

    result = _run(definition, make_pool(("w", ["x86_64", "docker"])), runtime)

    assert result.jobs["audit"].allow_failure is False
    assert result.jobs["after"].status == JobStatus.SKIPPED
    assert not result.succeeded


def test_empty_needs_starts_without_waiting_for_earlier_stages():
    definition = PipelineDefinition.from_jobs(
        [
            make_job("compile", "cargo build", stage="build"),
            make_job("lint", "cargo clippy", stage="test", needs=[]),
        ],
        stages=["build", "test"],
    )
    runtime = FakeRuntime(delay=0.2)
    pool = make_pool(("w1", ["x86_64", "docker"]), ("w2", ["x86_64", "docker"]))

    result = _run(definition, pool, runtime)

    assert result.succeeded
    assert runtime.max_active == 2
    assert result.jobs["lint"].started_at < result.jobs["compile"].finished_at
