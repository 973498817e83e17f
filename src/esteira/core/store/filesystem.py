# src/esteira/core/store/filesystem.py
"""
State Store durável em sistema de arquivos.

Layout por run (relativo a `root`):

    <run_id>/run.json              cabeçalho da run (reescrito de forma atômica)
    <run_id>/results.jsonl         StageResults, append-only, em ordem de término
    <run_id>/results/<stage>.json  marcador exclusivo (O_EXCL) por stage
    <run_id>/logs/<stage>.log      saída capturada, incremental
    <run_id>/artifacts/<stage>/... blobs de artefatos
    <run_id>/artifacts.jsonl       índice de artefatos
    <run_id>/events.jsonl          Event Log

Decisões arquiteturais:
    - O marcador é criado com O_CREAT|O_EXCL antes do append em
      results.jsonl: o sistema de arquivos garante at-most-once por stage
      mesmo entre processos distintos
    - O marcador carrega o próprio StageResult; um crash entre marcador e
      append é reconciliado na leitura
    - `run.json` é escrito em arquivo temporário + os.replace

Limites explícitos:
    - Não faz compactação nem expurgo de runs antigas
    - Não coordena escritas de status entre processos (o Scheduler é o
      único escritor de status de uma run)
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from esteira.core.exceptions import ConflictError, NotFoundError
from esteira.core.pipeline.types import ArtifactRef, Run, RunStatus, StageResult

from .base import apply_status, log_ref, make_event, validate_artifact_name


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")
_SAFE_RUN_ID = re.compile(r"^[A-Za-z0-9._-]+$")


def _stage_key(stage: str) -> str:
    digest = hashlib.sha1(stage.encode("utf-8")).hexdigest()[:8]
    return f"{_UNSAFE.sub('_', stage)[:40]}-{digest}"


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, sort_keys=True)


def _read_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    items: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError:
                # linha truncada por crash durante o append
                continue
    return items


class FileStateStore:
    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def run_dir(self, run_id: str) -> Path:
        if not _SAFE_RUN_ID.match(run_id or ""):
            raise NotFoundError(f"Unknown run: {run_id}", details={"run_id": run_id})
        return self.root / run_id

    def _require(self, run_id: str) -> Path:
        d = self.run_dir(run_id)
        if not (d / "run.json").exists():
            raise NotFoundError(f"Unknown run: {run_id}", details={"run_id": run_id})
        return d

    def _append_line(self, path: Path, data: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(_dumps(data) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _write_header(self, run_dir: Path, run: Run) -> None:
        header = run.to_dict()
        header["results"] = []
        tmp = run_dir / "run.json.tmp"
        tmp.write_text(json.dumps(header, ensure_ascii=False, sort_keys=True, indent=2), encoding="utf-8")
        os.replace(tmp, run_dir / "run.json")

    def _load(self, run_dir: Path) -> Run:
        header = json.loads((run_dir / "run.json").read_text(encoding="utf-8"))
        run = Run.from_dict(header)

        results = [StageResult.from_dict(r) for r in _read_jsonl(run_dir / "results.jsonl")]
        seen = {r.stage for r in results}

        # marcadores gravados sem o append correspondente (crash no meio)
        markers_dir = run_dir / "results"
        if markers_dir.exists():
            orphans = []
            for marker in markers_dir.glob("*.json"):
                try:
                    data = json.loads(marker.read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError):
                    continue
                if data.get("stage") not in seen:
                    orphans.append((marker.stat().st_mtime, StageResult.from_dict(data)))
            results.extend(r for _, r in sorted(orphans, key=lambda item: item[0]))

        run.results = results
        return run

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create(self, run: Run) -> Run:
        run_dir = self.run_dir(run.run_id)
        with self._lock:
            try:
                run_dir.mkdir(parents=True, exist_ok=False)
            except FileExistsError:
                raise ConflictError(f"Run already exists: {run.run_id}", details={"run_id": run.run_id}) from None
            (run_dir / "results").mkdir()
            (run_dir / "logs").mkdir()
            (run_dir / "artifacts").mkdir()
            stored = Run.from_dict(run.to_dict())
            stored.results = []
            self._write_header(run_dir, stored)
            return stored

    def append_stage_result(self, run_id: str, result: StageResult) -> None:
        run_dir = self._require(run_id)
        marker = run_dir / "results" / f"{_stage_key(result.stage)}.json"
        payload = _dumps(result.to_dict())
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise ConflictError(
                f"Stage result already recorded: {result.stage}",
                details={"run_id": run_id, "stage": result.stage},
            ) from None
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        with self._lock:
            self._append_line(run_dir / "results.jsonl", result.to_dict())

    def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        reason: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Run:
        run_dir = self._require(run_id)
        with self._lock:
            run = self._load(run_dir)
            apply_status(run, status, reason=reason, warnings=warnings)
            self._write_header(run_dir, run)
            return run

    def get(self, run_id: str) -> Run:
        run_dir = self._require(run_id)
        with self._lock:
            return self._load(run_dir)

    def list_runs(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if (p / "run.json").exists())

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def append_log(self, run_id: str, stage: str, stream: str, line: str) -> str:
        run_dir = self._require(run_id)
        prefix = "" if stream == "stdout" else f"[{stream}] "
        with self._lock:
            with (run_dir / "logs" / f"{_stage_key(stage)}.log").open("a", encoding="utf-8") as f:
                f.write(prefix + line.rstrip("\n") + "\n")
        return log_ref(run_id, stage)

    def read_log(self, run_id: str, stage: str) -> str:
        run_dir = self._require(run_id)
        path = run_dir / "logs" / f"{_stage_key(stage)}.log"
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    # ------------------------------------------------------------------
    # Artefatos
    # ------------------------------------------------------------------

    def put_artifact(self, run_id: str, stage: str, name: str, blob: bytes) -> ArtifactRef:
        name = validate_artifact_name(name)
        run_dir = self._require(run_id)
        target = run_dir / "artifacts" / _stage_key(stage) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        ref = ArtifactRef(
            run_id=run_id,
            stage=stage,
            name=name,
            size=len(blob),
            sha256=hashlib.sha256(blob).hexdigest(),
        )
        try:
            fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise ConflictError(f"Artifact already stored: {ref.uri}", details={"uri": ref.uri}) from None
        with os.fdopen(fd, "wb") as f:
            f.write(blob)
        with self._lock:
            self._append_line(run_dir / "artifacts.jsonl", ref.to_dict())
        return ref

    def get_artifact(self, ref: Union[ArtifactRef, str]) -> bytes:
        parsed = ArtifactRef.parse(ref) if isinstance(ref, str) else ref
        run_dir = self._require(parsed.run_id)
        path = run_dir / "artifacts" / _stage_key(parsed.stage) / validate_artifact_name(parsed.name)
        if not path.exists():
            raise NotFoundError(f"Unknown artifact: {parsed.uri}", details={"uri": parsed.uri})
        return path.read_bytes()

    def list_artifacts(self, run_id: str) -> List[ArtifactRef]:
        run_dir = self._require(run_id)
        return [
            ArtifactRef(
                run_id=item["run_id"],
                stage=item["stage"],
                name=item["name"],
                size=int(item.get("size", 0)),
                sha256=item.get("sha256", ""),
            )
            for item in _read_jsonl(run_dir / "artifacts.jsonl")
        ]

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
        run_dir = self._require(run_id)
        with self._lock:
            self._append_line(
                run_dir / "events.jsonl",
                make_event(run_id, event_type, stage=stage, payload=payload),
            )

    def events(self, run_id: str) -> List[Dict[str, Any]]:
        return _read_jsonl(self._require(run_id) / "events.jsonl")
