# tests/core/engine/test_scheduler_lifecycle.py
"""
Testes do ciclo de vida de runs no Scheduler: execução em background,
cancelamento explícito, timeout global e retomada após crash.

Decisões arquiteturais:
    - A retomada é testada sobre FileStateStore reaberto em outro objeto,
      simulando um novo processo
    - Cancelamento espera o evento `stage_started` antes de cancelar
"""

import time

import pytest

try:
    from esteira.core.engine.scheduler import Scheduler, new_run
    from esteira.core.exceptions import ConflictError, NotFoundError
    from esteira.core.pipeline.types import RunStatus, StageResult, StageStatus, utcnow
    from esteira.core.store.filesystem import FileStateStore
except Exception as e:  # noqa: BLE001
    Scheduler = None
    _IMPORT_ERR = e
else:
    _IMPORT_ERR = None


def _require_imports():
    if _IMPORT_ERR is not None:
        pytest.fail(f"Missing Scheduler lifecycle. Import error: {_IMPORT_ERR}")


def _wait_for_event(store, run_id, event_type, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if any(e["event_type"] == event_type for e in store.events(run_id)):
            return
        time.sleep(0.02)
    pytest.fail(f"event {event_type} not recorded for {run_id}")


_SLOW = {
    "stages": [
        {"name": "slow", "steps": ["sleep 30"]},
        {"name": "next", "depends_on": ["slow"], "steps": ["true"]},
    ]
}


# =====================================================
# start / wait / cancel
# =====================================================

def test_start_and_wait(scheduler, make_definition, memory_store):
    _require_imports()
    d = make_definition({"stages": [{"name": "a", "steps": ["true"]}]})
    handle = scheduler.start(new_run(d), d)
    run = handle.wait(10)
    assert handle.done
    assert run.status == RunStatus.SUCCEEDED
    assert memory_store.get(handle.run_id).status == RunStatus.SUCCEEDED


def test_cancel_running_run(scheduler, make_definition, memory_store):
    """
    Cancelamento explícito de uma run em execução.

    Invariantes:
        - stages em execução terminam `aborted`
        - stages pendentes terminam `skipped`
        - a run termina `aborted` com reason "run cancelled"
    """
    _require_imports()
    d = make_definition(_SLOW)
    handle = scheduler.start(new_run(d), d)
    assert handle.wait(0.05) is None

    _wait_for_event(memory_store, handle.run_id, "stage_started")
    started = time.monotonic()
    assert scheduler.cancel(handle.run_id) is True

    run = handle.wait(10)
    assert time.monotonic() - started < 5.0
    assert run.status == RunStatus.ABORTED
    assert run.reason == "run cancelled"
    assert run.result_for("slow").status == StageStatus.ABORTED
    assert run.result_for("next").status == StageStatus.SKIPPED
    assert run.result_for("next").reason == "run cancelled"
    assert "run_cancel_requested" in [e["event_type"] for e in memory_store.events(run.run_id)]


def test_cancel_terminal_run_returns_false(scheduler, make_definition):
    _require_imports()
    d = make_definition({"stages": [{"name": "a", "steps": ["true"]}]})
    run = scheduler.execute(new_run(d), d)
    assert scheduler.cancel(run.run_id) is False


def test_cancel_pending_run(scheduler, make_definition, memory_store):
    _require_imports()
    d = make_definition({"stages": [{"name": "a", "steps": ["true"]}]})
    run = memory_store.create(new_run(d))
    assert scheduler.cancel(run.run_id) is True
    stored = memory_store.get(run.run_id)
    assert stored.status == RunStatus.ABORTED
    assert stored.results == []


def test_cancel_unknown_run(scheduler):
    _require_imports()
    with pytest.raises(NotFoundError):
        scheduler.cancel("missing")


# =====================================================
# Timeout global
# =====================================================

def test_run_timeout_fails_run(run_pipeline):
    _require_imports()
    started = time.monotonic()
    run = run_pipeline({"options": {"run_timeout_seconds": 0.5}, **_SLOW})
    assert time.monotonic() - started < 5.0
    assert run.status == RunStatus.FAILED
    assert run.reason == "run timeout exceeded"
    assert run.result_for("slow").status == StageStatus.ABORTED
    assert run.result_for("next").status == StageStatus.SKIPPED
    assert run.result_for("next").reason == "run timeout exceeded"


# =====================================================
# Retomada
# =====================================================

_RESUMABLE = {
    "stages": [
        {"name": "a", "steps": ["touch a.ran"]},
        {"name": "b", "depends_on": ["a"], "steps": ["touch b.ran"]},
    ]
}


@pytest.fixture
def crashed_run(tmp_path, make_definition):
    """
    Run interrompida depois de gravar o resultado de `a`.

    Returns:
        (root do store, definição, run_id)
    """
    _require_imports()
    root = tmp_path / "runs"
    d = make_definition(_RESUMABLE)
    store = FileStateStore(root)
    run = store.create(new_run(d))
    store.update_run_status(run.run_id, RunStatus.RUNNING)
    now = utcnow()
    store.append_stage_result(
        run.run_id,
        StageResult(stage="a", status=StageStatus.SUCCEEDED, started_at=now, finished_at=now, exit_code=0, attempts=1),
    )
    return root, d, run.run_id


def test_reopened_store_reconstructs_run(crashed_run):
    root, _, run_id = crashed_run
    before = FileStateStore(root).get(run_id)
    after = FileStateStore(root).get(run_id)
    assert after.to_dict() == before.to_dict()
    assert after.status == RunStatus.RUNNING
    assert [r.stage for r in after.results] == ["a"]


def test_resume_runs_only_missing_stages(crashed_run, settings):
    root, d, run_id = crashed_run
    store = FileStateStore(root)
    run = Scheduler(store, settings=settings).resume(run_id, d)
    workspace = settings.workspace_root / run_id
    assert run.status == RunStatus.SUCCEEDED
    assert [r.stage for r in run.results] == ["a", "b"]
    assert not (workspace / "a.ran").exists()
    assert (workspace / "b.ran").exists()
    assert "run_resumed" in [e["event_type"] for e in store.events(run_id)]


def test_resume_rejects_changed_definition(crashed_run, settings, make_definition):
    root, _, run_id = crashed_run
    changed = make_definition({"stages": [{"name": "a", "steps": ["true"]}]})
    with pytest.raises(ConflictError):
        Scheduler(FileStateStore(root), settings=settings).resume(run_id, changed)


def test_resume_terminal_run_is_noop(scheduler, make_definition):
    _require_imports()
    d = make_definition({"stages": [{"name": "a", "steps": ["true"]}]})
    run = scheduler.execute(new_run(d), d)
    assert scheduler.resume(run.run_id, d).to_dict() == run.to_dict()


def test_resume_keeps_prior_abort(tmp_path, make_definition, settings):
    _require_imports()
    d = make_definition(_RESUMABLE)
    store = FileStateStore(tmp_path / "runs")
    run = store.create(new_run(d))
    store.update_run_status(run.run_id, RunStatus.RUNNING)
    store.append_stage_result(run.run_id, StageResult(stage="a", status=StageStatus.FAILED, exit_code=1, attempts=1))

    resumed = Scheduler(store, settings=settings).resume(run.run_id, d)
    assert resumed.status == RunStatus.FAILED
    assert resumed.result_for("b").status == StageStatus.SKIPPED
    assert resumed.result_for("b").reason == "run aborted: stage 'a' failed"
