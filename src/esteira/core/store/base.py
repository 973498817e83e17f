# src/esteira/core/store/base.py
"""
Contrato canônico do State Store.

O State Store é o registro durável de runs: status, StageResults, logs
por stage, artefatos e o Event Log. É a única fonte usada para retomar
uma run após crash.

Decisões arquiteturais:
    - StageResults são append-only; nunca são alterados depois de gravados
    - Uma segunda gravação para o mesmo (run, stage) é `ConflictError`
    - Run desconhecida é `NotFoundError`; nenhum erro é silenciado
    - Transições de status seguem pending → running → terminal

Invariantes:
    - `get` devolve uma cópia; mutações no retorno não afetam o store
    - Eventos preservam a ordem de gravação
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from esteira.core.exceptions import ConflictError, StoreError
from esteira.core.pipeline.types import ArtifactRef, Run, RunStatus, StageResult, to_iso, utcnow


_ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.ABORTED},
    # running -> running: retomada após crash
    RunStatus.RUNNING: {RunStatus.RUNNING, RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED},
}


def check_transition(run: Run, status: RunStatus) -> None:
    allowed = _ALLOWED_TRANSITIONS.get(run.status, set())
    if status not in allowed:
        raise ConflictError(
            f"Invalid run status transition: {run.status.value} -> {status.value}",
            details={"run_id": run.run_id, "from": run.status.value, "to": status.value},
        )


def apply_status(
    run: Run,
    status: RunStatus,
    *,
    reason: Optional[str],
    warnings: Optional[List[str]],
    now: Optional[datetime] = None,
) -> None:
    check_transition(run, status)
    now = now or utcnow()
    if status == RunStatus.RUNNING and run.started_at is None:
        run.started_at = now
    if status.is_terminal:
        run.finished_at = now
    run.status = status
    if reason is not None:
        run.reason = reason
    if warnings is not None:
        run.warnings = list(warnings)


def make_event(
    run_id: str,
    event_type: str,
    *,
    stage: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    ev: Dict[str, Any] = {
        "event_type": event_type,
        "run_id": run_id,
        "timestamp": to_iso(utcnow()),
    }
    if stage is not None:
        ev["stage"] = stage
    if payload is not None:
        ev["payload"] = dict(payload)
    return ev


def log_ref(run_id: str, stage: str) -> str:
    return f"log://{run_id}/{stage}"


def validate_artifact_name(name: str) -> str:
    normalized = name.replace("\\", "/").strip("/")
    parts = normalized.split("/")
    if not normalized or any(p in ("", ".", "..") for p in parts):
        raise StoreError(f"Invalid artifact name: {name!r}", details={"name": name})
    return normalized


@runtime_checkable
class StateStore(Protocol):
    """
    Interface do State Store consumida por Scheduler e Trigger Listener.

    Operações de escrita:
        - create, append_stage_result, update_run_status
        - append_log, put_artifact, record_event

    Operações de leitura:
        - get, list_runs, read_log, get_artifact, list_artifacts, events
    """

    def create(self, run: Run) -> Run: ...

    def append_stage_result(self, run_id: str, result: StageResult) -> None: ...

    def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        reason: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Run: ...

    def get(self, run_id: str) -> Run: ...

    def list_runs(self) -> List[str]: ...

    def append_log(self, run_id: str, stage: str, stream: str, line: str) -> str: ...

    def read_log(self, run_id: str, stage: str) -> str: ...

    def put_artifact(self, run_id: str, stage: str, name: str, blob: bytes) -> ArtifactRef: ...

    def get_artifact(self, ref: Union[ArtifactRef, str]) -> bytes: ...

    def list_artifacts(self, run_id: str) -> List[ArtifactRef]: ...

    def record_event(
        self,
        run_id: str,
        event_type: str,
        *,
        stage: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def events(self, run_id: str) -> List[Dict[str, Any]]: ...
