# src/esteira/core/store/memory.py
"""State Store em memória, protegido por lock. Usado em testes e runs efêmeras."""

from __future__ import annotations

import hashlib
import threading
from copy import deepcopy
from typing import Any, Dict, List, Optional, Union

from esteira.core.exceptions import ConflictError, NotFoundError
from esteira.core.pipeline.types import ArtifactRef, Run, RunStatus, StageResult

from .base import apply_status, log_ref, make_event, validate_artifact_name


class InMemoryStateStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {}
        self._logs: Dict[str, Dict[str, List[str]]] = {}
        self._artifacts: Dict[str, Dict[str, bytes]] = {}
        self._artifact_refs: Dict[str, List[ArtifactRef]] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}

    def _require(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError(f"Unknown run: {run_id}", details={"run_id": run_id})
        return run

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create(self, run: Run) -> Run:
        with self._lock:
            if run.run_id in self._runs:
                raise ConflictError(f"Run already exists: {run.run_id}", details={"run_id": run.run_id})
            stored = deepcopy(run)
            stored.results = []
            self._runs[run.run_id] = stored
            self._logs[run.run_id] = {}
            self._artifacts[run.run_id] = {}
            self._artifact_refs[run.run_id] = []
            self._events[run.run_id] = []
            return deepcopy(stored)

    def append_stage_result(self, run_id: str, result: StageResult) -> None:
        with self._lock:
            run = self._require(run_id)
            if run.result_for(result.stage) is not None:
                raise ConflictError(
                    f"Stage result already recorded: {result.stage}",
                    details={"run_id": run_id, "stage": result.stage},
                )
            run.results.append(result)

    def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        reason: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Run:
        with self._lock:
            run = self._require(run_id)
            apply_status(run, status, reason=reason, warnings=warnings)
            return deepcopy(run)

    def get(self, run_id: str) -> Run:
        with self._lock:
            return deepcopy(self._require(run_id))

    def list_runs(self) -> List[str]:
        with self._lock:
            return list(self._runs)

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def append_log(self, run_id: str, stage: str, stream: str, line: str) -> str:
        with self._lock:
            self._require(run_id)
            prefix = "" if stream == "stdout" else f"[{stream}] "
            self._logs[run_id].setdefault(stage, []).append(prefix + line.rstrip("\n"))
        return log_ref(run_id, stage)

    def read_log(self, run_id: str, stage: str) -> str:
        with self._lock:
            self._require(run_id)
            lines = self._logs[run_id].get(stage, [])
            return "".join(line + "\n" for line in lines)

    # ------------------------------------------------------------------
    # Artefatos
    # ------------------------------------------------------------------

    def put_artifact(self, run_id: str, stage: str, name: str, blob: bytes) -> ArtifactRef:
        name = validate_artifact_name(name)
        with self._lock:
            self._require(run_id)
            ref = ArtifactRef(
                run_id=run_id,
                stage=stage,
                name=name,
                size=len(blob),
                sha256=hashlib.sha256(blob).hexdigest(),
            )
            if ref.uri in self._artifacts[run_id]:
                raise ConflictError(f"Artifact already stored: {ref.uri}", details={"uri": ref.uri})
            self._artifacts[run_id][ref.uri] = bytes(blob)
            self._artifact_refs[run_id].append(ref)
            return ref

    def get_artifact(self, ref: Union[ArtifactRef, str]) -> bytes:
        parsed = ArtifactRef.parse(ref) if isinstance(ref, str) else ref
        with self._lock:
            self._require(parsed.run_id)
            blob = self._artifacts[parsed.run_id].get(parsed.uri)
            if blob is None:
                raise NotFoundError(f"Unknown artifact: {parsed.uri}", details={"uri": parsed.uri})
            return blob

    def list_artifacts(self, run_id: str) -> List[ArtifactRef]:
        with self._lock:
            self._require(run_id)
            return list(self._artifact_refs[run_id])

    # ------------------------------------------------------------------
    # Event Log
    # ------------------------------------------------------------------

    def record_event(
        self,
        run_id: str,
        event_type: str,
        *,
        stage: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            self._require(run_id)
            self._events[run_id].append(make_event(run_id, event_type, stage=stage, payload=payload))

    def events(self, run_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._require(run_id)
            return [dict(e) for e in self._events[run_id]]
