# src/esteira/core/pipeline/types.py
"""
Tipos canônicos de execução do Esteira CI.

Este módulo define as estruturas que representam uma execução (Run) e
seus resultados por stage, compartilhadas por Scheduler, State Store e
Trigger Listener.

Componentes principais:
    - RunStatus   → pending → running → {succeeded, failed, aborted}
    - StageStatus → estados finais de um stage
    - StageResult → registro imutável da decisão/execução de um stage
    - Run         → agregado de uma execução (dono exclusivo dos StageResults)
    - ArtifactRef → referência estável a um artefato armazenado

Princípios fundamentais:
    - Tipos são serializáveis (to_dict/from_dict) para persistência
    - Timestamps são sempre UTC timezone-aware
    - Nenhuma lógica de execução vive neste módulo

Invariantes:
    - StageResult é imutável depois de criado
    - Existe no máximo um StageResult por stage em uma Run
    - Run.results preserva a ordem de término dos stages
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class RunStatus(str, Enum):
    """
    Estados de uma Run.

    Estados definidos:
        - PENDING: criada, ainda não iniciada pelo Scheduler
        - RUNNING: em execução
        - SUCCEEDED: todos os stages alcançáveis concluíram com sucesso
        - FAILED: algum stage falhou ou o timeout global foi excedido
        - ABORTED: cancelamento explícito

    Invariantes:
        - Transições válidas: pending → running → terminal
        - Um estado terminal nunca volta a running
    """
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageStatus(str, Enum):
    """
    Estados finais de um stage.

    Estados definidos:
        - SUCCEEDED: todos os steps concluíram com exit code zero
        - FAILED: esgotou as tentativas com falha
        - SKIPPED: não executado (guard falso, dependência falha ou abort)
        - UNSTABLE: falhou sob a política `mark-unstable`
        - ABORTED: interrompido por cancelamento durante a execução
    """
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNSTABLE = "unstable"
    ABORTED = "aborted"


@dataclass(frozen=True)
class StageResult:
    """
    Registro imutável do desfecho de um stage em uma Run.

    Campos:
        - stage: nome do stage
        - status: estado final
        - started_at / finished_at: janela de execução (None se não executado)
        - exit_code: exit code do último step executado
        - attempts: número de tentativas consumidas
        - output_ref: referência ao log capturado no State Store
        - reason: explicação curta do desfecho (ex.: "guard evaluated false")
        - error: EsteiraErrorPayload serializado, quando houver falha
        - guard_skipped: True quando o skip decorre de guard falso
    """

    stage: str
    status: StageStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    attempts: int = 0
    output_ref: Optional[str] = None
    reason: str = ""
    error: Optional[Dict[str, Any]] = None
    guard_skipped: bool = False

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0, int((self.finished_at - self.started_at).total_seconds() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "output_ref": self.output_ref,
            "reason": self.reason,
            "error": dict(self.error) if self.error is not None else None,
            "guard_skipped": self.guard_skipped,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            stage=str(data["stage"]),
            status=StageStatus(data["status"]),
            started_at=from_iso(data.get("started_at")),
            finished_at=from_iso(data.get("finished_at")),
            exit_code=data.get("exit_code"),
            attempts=int(data.get("attempts", 0)),
            output_ref=data.get("output_ref"),
            reason=str(data.get("reason") or ""),
            error=dict(data["error"]) if data.get("error") is not None else None,
            guard_skipped=bool(data.get("guard_skipped", False)),
        )


@dataclass
class Run:
    """
    Agregado de uma execução de pipeline.

    A Run é o único dono de seus StageResults; apenas o Scheduler altera
    seu status, e sempre através do State Store.
    """

    run_id: str
    definition_id: str
    definition_name: str
    definition_hash: str
    created_at: datetime
    parameters: Dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    results: List[StageResult] = field(default_factory=list)
    reason: str = ""
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def result_for(self, stage: str) -> Optional[StageResult]:
        for r in self.results:
            if r.stage == stage:
                return r
        return None

    @property
    def stage_statuses(self) -> Dict[str, StageStatus]:
        return {r.stage: r.status for r in self.results}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "definition_id": self.definition_id,
            "definition_name": self.definition_name,
            "definition_hash": self.definition_hash,
            "created_at": to_iso(self.created_at),
            "parameters": dict(self.parameters),
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
            "reason": self.reason,
            "warnings": list(self.warnings),
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Run":
        return cls(
            run_id=str(data["run_id"]),
            definition_id=str(data.get("definition_id", "")),
            definition_name=str(data.get("definition_name", "")),
            definition_hash=str(data.get("definition_hash", "")),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            parameters=dict(data.get("parameters", {}) or {}),
            status=RunStatus(data.get("status", RunStatus.PENDING.value)),
            results=[StageResult.from_dict(r) for r in (data.get("results", []) or [])],
            reason=str(data.get("reason") or ""),
            warnings=list(data.get("warnings", []) or []),
            started_at=from_iso(data.get("started_at")),
            finished_at=from_iso(data.get("finished_at")),
        )


@dataclass(frozen=True)
class ArtifactRef:
    """Referência estável a um artefato: `artifact://<run_id>/<stage>/<name>`."""

    run_id: str
    stage: str
    name: str
    size: int = 0
    sha256: str = ""

    @property
    def uri(self) -> str:
        return f"artifact://{self.run_id}/{self.stage}/{self.name}"

    @classmethod
    def parse(cls, uri: str) -> "ArtifactRef":
        prefix = "artifact://"
        if not uri.startswith(prefix):
            raise ValueError(f"not an artifact uri: {uri}")
        parts = uri[len(prefix):].split("/", 2)
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"malformed artifact uri: {uri}")
        return cls(run_id=parts[0], stage=parts[1], name=parts[2])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage,
            "name": self.name,
            "size": self.size,
            "sha256": self.sha256,
            "uri": self.uri,
        }
