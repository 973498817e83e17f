# tests/core/store/test_filesystem_store.py
"""
Testes específicos do FileStateStore: layout em disco, durabilidade
entre instâncias e reconciliação após crash.
"""

import json

import pytest

try:
    from esteira.core.exceptions import ConflictError, NotFoundError
    from esteira.core.pipeline.types import Run, RunStatus, StageResult, StageStatus, utcnow
    from esteira.core.store.filesystem import FileStateStore, _stage_key
except Exception as e:  # noqa: BLE001
    FileStateStore = None
    _IMPORT_ERR = e
else:
    _IMPORT_ERR = None


def _require_imports():
    if _IMPORT_ERR is not None:
        pytest.fail(f"Missing FileStateStore. Import error: {_IMPORT_ERR}")


@pytest.fixture
def root(tmp_path):
    _require_imports()
    return tmp_path / "runs"


def _create(store, run_id="run-1"):
    return store.create(Run(
        run_id=run_id,
        definition_id="d",
        definition_name="d",
        definition_hash="h",
        created_at=utcnow(),
    ))


def test_layout_on_disk(root):
    store = FileStateStore(root)
    _create(store)
    store.append_stage_result("run-1", StageResult(stage="build", status=StageStatus.SUCCEEDED))
    store.append_log("run-1", "build", "stdout", "hi")
    store.put_artifact("run-1", "build", "out/a.txt", b"a")
    store.record_event("run-1", "run_started")

    run_dir = root / "run-1"
    assert (run_dir / "run.json").exists()
    assert len((run_dir / "results.jsonl").read_text(encoding="utf-8").splitlines()) == 1
    assert (run_dir / "results" / f"{_stage_key('build')}.json").exists()
    assert (run_dir / "logs" / f"{_stage_key('build')}.log").exists()
    assert (run_dir / "artifacts" / _stage_key("build") / "out" / "a.txt").read_bytes() == b"a"
    assert (run_dir / "events.jsonl").exists()
    assert json.loads((run_dir / "run.json").read_text(encoding="utf-8"))["results"] == []


def test_state_survives_new_instance(root):
    first = FileStateStore(root)
    _create(first)
    first.update_run_status("run-1", RunStatus.RUNNING)
    first.append_stage_result("run-1", StageResult(stage="a", status=StageStatus.SUCCEEDED, exit_code=0, attempts=1))
    first.append_log("run-1", "a", "stdout", "line")

    second = FileStateStore(root)
    assert second.get("run-1").to_dict() == first.get("run-1").to_dict()
    assert second.read_log("run-1", "a") == "line\n"
    with pytest.raises(ConflictError):
        second.append_stage_result("run-1", StageResult(stage="a", status=StageStatus.FAILED))


def test_orphan_marker_is_reconciled(root):
    """Crash entre o marcador exclusivo e o append em results.jsonl."""
    store = FileStateStore(root)
    _create(store)
    store.append_stage_result("run-1", StageResult(stage="a", status=StageStatus.SUCCEEDED))
    (root / "run-1" / "results.jsonl").write_text("", encoding="utf-8")

    run = FileStateStore(root).get("run-1")
    assert [r.stage for r in run.results] == ["a"]


def test_truncated_result_line_is_ignored(root):
    store = FileStateStore(root)
    _create(store)
    store.append_stage_result("run-1", StageResult(stage="a", status=StageStatus.SUCCEEDED))
    with (root / "run-1" / "results.jsonl").open("a", encoding="utf-8") as f:
        f.write('{"stage": "b", "sta')
    assert [r.stage for r in FileStateStore(root).get("run-1").results] == ["a"]


def test_stage_names_with_path_separators_are_safe(root):
    store = FileStateStore(root)
    _create(store)
    store.append_log("run-1", "../../etc", "stdout", "x")
    assert store.read_log("run-1", "../../etc") == "x\n"
    assert not (root.parent / "etc").exists()


@pytest.mark.parametrize("run_id", ["../x", "a/b", ""])
def test_unsafe_run_ids_are_not_found(root, run_id):
    store = FileStateStore(root)
    with pytest.raises(NotFoundError):
        store.get(run_id)


def test_list_runs_is_sorted(root):
    store = FileStateStore(root)
    _create(store, "b")
    _create(store, "a")
    assert store.list_runs() == ["a", "b"]
