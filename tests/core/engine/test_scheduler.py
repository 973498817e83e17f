# tests/core/engine/test_scheduler.py
"""
Testes do Scheduler: ordem, concorrência, guards, retry e políticas de
falha, sobre processos reais em workspaces isolados.

Os testes asseguram que:
- um stage nunca inicia antes de suas dependências terminarem
- `abort-run` pula dependentes ainda não iniciados e falha a run
- `continue` não impede ramos independentes
- `mark-unstable` conta como concluído e gera warning
- guard falso pula o stage sem bloquear dependentes
- retry reexecuta o stage inteiro, exceto para ProcessSpawnError
- cada stage tem exatamente um StageResult

Limites explícitos:
    - Cancelamento, timeout global e retomada vivem em
      test_scheduler_lifecycle.py
"""

import pytest

try:
    from esteira.core.engine.scheduler import Scheduler, is_satisfied, new_run
    from esteira.core.exceptions import DefinitionError, StoreError
    from esteira.core.pipeline.types import RunStatus, StageResult, StageStatus
    from esteira.core.store.memory import InMemoryStateStore
except Exception as e:  # noqa: BLE001
    new_run = None
    _IMPORT_ERR = e
else:
    _IMPORT_ERR = None


def _require_imports():
    if _IMPORT_ERR is not None:
        pytest.fail(f"Missing Scheduler. Import error: {_IMPORT_ERR}")


def _stage(name, *steps, **extra):
    data = {"name": name, "steps": list(steps) or ["true"]}
    data.update(extra)
    return data


def _statuses(run):
    return {r.stage: r.status for r in run.results}


def test_happy_path_runs_every_stage_in_dependency_order(run_pipeline):
    _require_imports()
    run = run_pipeline({
        "stages": [
            _stage("compile"),
            _stage("test", depends_on=["compile"]),
            _stage("package", depends_on=["test"]),
        ]
    })
    assert run.status == RunStatus.SUCCEEDED
    assert [r.stage for r in run.results] == ["compile", "test", "package"]
    assert all(r.status == StageStatus.SUCCEEDED and r.exit_code == 0 for r in run.results)
    by_name = {r.stage: r for r in run.results}
    assert by_name["test"].started_at >= by_name["compile"].finished_at
    assert by_name["package"].started_at >= by_name["test"].finished_at


def test_abort_run_skips_dependents(run_pipeline):
    """
    A; B→A; C→A. A falha sob `abort-run`.

    Invariantes:
        - B e C terminam `skipped`
        - a run termina `failed`
        - existe exatamente um StageResult para A
    """
    _require_imports()
    run = run_pipeline({
        "stages": [
            _stage("A", "exit 3"),
            _stage("B", depends_on=["A"]),
            _stage("C", depends_on=["A"]),
        ]
    })
    assert run.status == RunStatus.FAILED
    assert run.reason == "stage 'A' failed"
    assert _statuses(run) == {"A": StageStatus.FAILED, "B": StageStatus.SKIPPED, "C": StageStatus.SKIPPED}
    assert [r.stage for r in run.results].count("A") == 1
    assert run.result_for("A").exit_code == 3
    assert run.result_for("B").attempts == 0
    assert run.result_for("B").reason == "run aborted: stage 'A' failed"


def test_abort_run_aborts_running_sibling(run_pipeline):
    _require_imports()
    run = run_pipeline({
        "options": {"max_concurrency": 2},
        "stages": [
            _stage("slow", "sleep 30"),
            _stage("broken", "sleep 0.2; exit 1"),
            _stage("after", depends_on=["slow", "broken"]),
        ],
    })
    assert run.status == RunStatus.FAILED
    assert _statuses(run) == {
        "broken": StageStatus.FAILED,
        "slow": StageStatus.ABORTED,
        "after": StageStatus.SKIPPED,
    }
    assert run.result_for("slow").error["type"] == "STAGE_CANCELLED"


def test_continue_lets_independent_branch_complete(run_pipeline):
    _require_imports()
    run = run_pipeline({
        "stages": [
            _stage("sonar", "exit 1", on_failure="continue"),
            _stage("publish-report", depends_on=["sonar"]),
            _stage("docker-build"),
            _stage("docker-push", depends_on=["docker-build"]),
        ]
    })
    assert run.status == RunStatus.FAILED
    assert _statuses(run) == {
        "sonar": StageStatus.FAILED,
        "publish-report": StageStatus.SKIPPED,
        "docker-build": StageStatus.SUCCEEDED,
        "docker-push": StageStatus.SUCCEEDED,
    }
    assert run.result_for("publish-report").reason == "upstream failed: sonar"


def test_continue_skip_propagates_to_descendants(run_pipeline):
    _require_imports()
    run = run_pipeline({
        "stages": [
            _stage("a", "exit 1", on_failure="continue"),
            _stage("b", depends_on=["a"]),
            _stage("c", depends_on=["b"]),
        ]
    })
    assert run.result_for("c").status == StageStatus.SKIPPED
    assert run.result_for("c").reason == "upstream failed: b"


def test_mark_unstable_counts_as_done(run_pipeline):
    _require_imports()
    run = run_pipeline({
        "stages": [
            _stage("trivy", "exit 1", on_failure="mark-unstable"),
            _stage("package", depends_on=["trivy"]),
        ]
    })
    assert run.status == RunStatus.SUCCEEDED
    assert run.result_for("trivy").status == StageStatus.UNSTABLE
    assert run.result_for("package").status == StageStatus.SUCCEEDED
    assert any("trivy" in w and "unstable" in w for w in run.warnings)


def test_false_guard_skips_without_blocking_dependents(run_pipeline):
    _require_imports()
    run = run_pipeline(
        {
            "parameters": {"PUSH": {"type": "boolean", "default": False}},
            "stages": [
                _stage("build"),
                _stage("push", "exit 1", depends_on=["build"], when={"param": "PUSH"}),
                _stage("notify", depends_on=["push"]),
            ],
        }
    )
    assert run.status == RunStatus.SUCCEEDED
    push = run.result_for("push")
    assert push.status == StageStatus.SKIPPED
    assert push.guard_skipped is True
    assert push.reason == "guard evaluated false: params.PUSH"
    assert run.result_for("notify").status == StageStatus.SUCCEEDED


def test_guard_uses_bound_parameters(run_pipeline):
    _require_imports()
    doc = {
        "parameters": {"BRANCH": "main"},
        "stages": [_stage("deploy", when={"param": "BRANCH", "in": ["main", "master"]})],
    }
    assert run_pipeline(doc).result_for("deploy").status == StageStatus.SUCCEEDED
    assert run_pipeline(doc, {"BRANCH": "feature/x"}).result_for("deploy").status == StageStatus.SKIPPED


def test_retry_reruns_whole_stage(run_pipeline, memory_store):
    """Primeira tentativa falha e deixa um marcador; a segunda passa."""
    _require_imports()
    run = run_pipeline({
        "stages": [
            _stage(
                "flaky",
                "echo step-one",
                "if [ -f attempted ]; then exit 0; else touch attempted; exit 1; fi",
                retry={"max_attempts": 3, "backoff_seconds": 0},
            )
        ]
    })
    result = run.result_for("flaky")
    assert run.status == RunStatus.SUCCEEDED
    assert result.attempts == 2
    log = memory_store.read_log(run.run_id, "flaky")
    assert log.splitlines().count("step-one") == 2
    assert "attempt 2/3" in log
    retries = [e for e in memory_store.events(run.run_id) if e["event_type"] == "stage_retry"]
    assert len(retries) == 1
    assert retries[0]["payload"]["attempt"] == 1


def test_retry_exhausted_fails(run_pipeline):
    _require_imports()
    run = run_pipeline({"stages": [_stage("a", "exit 1", retry=3)]})
    assert run.result_for("a").status == StageStatus.FAILED
    assert run.result_for("a").attempts == 3


def test_spawn_error_is_never_retried(run_pipeline):
    _require_imports()
    run = run_pipeline({
        "stages": [_stage("a", {"run": "true", "workdir": "does-not-exist"}, retry=3)]
    })
    result = run.result_for("a")
    assert result.status == StageStatus.FAILED
    assert result.attempts == 1
    assert result.error["type"] == "PROCESS_SPAWN_FAILED"


def test_step_timeout_fails_stage(run_pipeline):
    _require_imports()
    run = run_pipeline({"stages": [_stage("a", {"run": "sleep 30", "timeout_seconds": 0.5})]})
    result = run.result_for("a")
    assert result.status == StageStatus.FAILED
    assert result.error["type"] == "STEP_TIMEOUT"


def test_concurrent_stages_overlap(run_pipeline):
    """
    Com max_concurrency 2, `waiter` só termina se `signal` rodar ao
    mesmo tempo e criar o arquivo que ele aguarda.
    """
    _require_imports()
    waiter = "i=0; while [ ! -f signal.ready ] && [ $i -lt 200 ]; do sleep 0.05; i=$((i+1)); done; test -f signal.ready"
    run = run_pipeline({
        "options": {"max_concurrency": 2},
        "stages": [_stage("waiter", waiter), _stage("signal", "touch signal.ready")],
    })
    assert run.status == RunStatus.SUCCEEDED


def test_steps_see_parameters_and_run_environment(run_pipeline, memory_store):
    _require_imports()
    run = run_pipeline(
        {
            "parameters": {"BRANCH": "main", "PUSH": {"type": "boolean", "default": False}},
            "environment": {"REGISTRY": "registry.local", "IMAGE": "${env.REGISTRY}/app"},
            "stages": [
                _stage(
                    "show",
                    'echo "branch=$BRANCH push=$PUSH image=$IMAGE stage=$ESTEIRA_STAGE"',
                    "echo tag=${params.BRANCH}-${run.id}",
                    environment={"LEVEL": "${params.BRANCH}-high"},
                ),
                _stage("level", 'test "$LEVEL" = ""'),
            ],
        },
        {"BRANCH": "dev", "PUSH": "true"},
    )
    assert run.status == RunStatus.SUCCEEDED
    log = memory_store.read_log(run.run_id, "show")
    assert "branch=dev push=true image=registry.local/app stage=show" in log
    assert f"tag=dev-{run.run_id}" in log


def test_unknown_step_kind_fails_before_start(scheduler, make_definition, memory_store):
    _require_imports()
    d = make_definition({"stages": [_stage("a", {"kind": "docker", "run": "build"})]})
    run = new_run(d)
    with pytest.raises(DefinitionError):
        scheduler.execute(run, d)
    stored = memory_store.get(run.run_id)
    assert stored.status == RunStatus.FAILED
    assert stored.results == []


def test_store_failure_during_run_closes_run_as_failed(make_definition, settings):
    """Um erro do store no coordenador não deixa a run presa em `running`."""
    _require_imports()

    class BrokenResultsStore(InMemoryStateStore):
        def append_stage_result(self, run_id, result):
            raise StoreError("disk full", details={"run_id": run_id})

    store = BrokenResultsStore()
    d = make_definition({"stages": [_stage("a")]})
    run = new_run(d)
    with pytest.raises(StoreError):
        Scheduler(store, settings=settings).execute(run, d)

    stored = store.get(run.run_id)
    assert stored.status == RunStatus.FAILED
    assert stored.reason == "engine error: disk full"
    finished = [e for e in store.events(run.run_id) if e["event_type"] == "run_finished"]
    assert finished[-1]["payload"]["status"] == "failed"


def test_event_log_records_lifecycle(run_pipeline, memory_store):
    _require_imports()
    run = run_pipeline({"stages": [_stage("a"), _stage("b", depends_on=["a"])]})
    types = [e["event_type"] for e in memory_store.events(run.run_id)]
    assert types[0] == "run_created"
    assert types[1] == "run_started"
    assert types[-1] == "run_finished"
    assert types.count("stage_started") == 2
    assert types.count("stage_finished") == 2
    assert all(e["timestamp"].endswith("+00:00") for e in memory_store.events(run.run_id))


def test_output_is_captured_per_stage(run_pipeline, memory_store):
    _require_imports()
    run = run_pipeline({"stages": [_stage("a", "echo hello; echo oops >&2")]})
    log = memory_store.read_log(run.run_id, "a")
    assert "[esteira] $ echo hello; echo oops >&2" in log
    assert "hello\n" in log
    assert "[stderr] oops" in log
    assert run.result_for("a").output_ref == f"log://{run.run_id}/a"


@pytest.mark.parametrize(
    "status, guard, expected",
    [
        ("succeeded", False, True),
        ("unstable", False, True),
        ("skipped", True, True),
        ("skipped", False, False),
        ("failed", False, False),
        ("aborted", False, False),
    ],
)
def test_is_satisfied(status, guard, expected):
    _require_imports()
    assert is_satisfied(StageResult(stage="x", status=StageStatus(status), guard_skipped=guard)) is expected
