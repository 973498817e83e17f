# src/esteira/core/engine/handlers.py
"""
Handlers de step: interface de capacidade `{prepare, execute, cleanup}`.

Cada família de ferramentas externas é modelada como um handler
registrado por `kind`, em vez de strings de comando ad-hoc.

Handlers definidos:
    - ShellStepHandler (`sh`): resolve o template e executa via StepExecutor
    - ArchiveStepHandler (`archive`): coleta arquivos do workspace como artefatos

Decisões arquiteturais:
    - `prepare` resolve todos os templates; nada não resolvido chega ao processo
    - `cleanup` é sempre chamado, mesmo quando `execute` falha
    - Handlers reportam falhas estruturadas; nunca decidem o destino da run

Limites explícitos:
    - Não implementa integrações específicas (Docker, Maven, Trivy)
    - Não aplica retry nem política de falha
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from esteira.core.definition.templating import Bindings, resolve_template
from esteira.core.definition.types import PipelineDefinition, StageSpec, StepSpec
from esteira.core.exceptions import ConflictError, DefinitionError, StepFailedError
from esteira.core.pipeline.context import RunContext
from esteira.core.pipeline.types import ArtifactRef
from esteira.core.store.base import StateStore

from .executor import StepExecutor


@dataclass
class StepInvocation:
    """Tudo o que um handler precisa para executar um step de um stage."""

    context: RunContext
    stage: StageSpec
    step: StepSpec
    index: int
    attempt: int
    executor: StepExecutor
    store: StateStore

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def bindings(self) -> Bindings:
        return self.context.bindings_for(self.stage)

    def log_line(self, stream: str, line: str) -> None:
        self.store.append_log(self.run_id, self.stage.name, stream, line)


@dataclass(frozen=True)
class PreparedStep:
    command: str
    cwd: Path
    env: Dict[str, str]
    timeout: Optional[float]
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepOutcome:
    exit_code: int
    duration_ms: int
    artifacts: Tuple[ArtifactRef, ...] = ()


@runtime_checkable
class StepHandler(Protocol):
    """
    Contrato de um handler de step.

    Atributos obrigatórios:
        - kind: identificador usado em `steps[].kind`

    Invariantes:
        - `prepare` não produz efeitos colaterais fora do handler
        - `execute` levanta StageFailure/ExecutorError/CancellationError em falha
        - `cleanup` é idempotente
    """

    kind: str

    def prepare(self, inv: StepInvocation) -> PreparedStep: ...

    def execute(self, inv: StepInvocation, prepared: PreparedStep) -> StepOutcome: ...

    def cleanup(self, inv: StepInvocation, prepared: PreparedStep) -> None: ...


def _resolve_workdir(inv: StepInvocation, bindings: Bindings) -> Path:
    raw = resolve_template(inv.step.workdir, bindings)
    path = Path(raw)
    if not path.is_absolute():
        path = inv.context.workspace / path
    return path


def _resolve_options(options: Dict[str, Any], bindings: Bindings) -> Dict[str, Any]:
    resolved: Dict[str, Any] = {}
    for key, value in options.items():
        if isinstance(value, str):
            resolved[key] = resolve_template(value, bindings)
        elif isinstance(value, list):
            resolved[key] = [resolve_template(v, bindings) if isinstance(v, str) else v for v in value]
        else:
            resolved[key] = value
    return resolved


class ShellStepHandler:
    kind = "sh"

    def prepare(self, inv: StepInvocation) -> PreparedStep:
        bindings = inv.bindings()
        return PreparedStep(
            command=resolve_template(inv.step.run, bindings),
            cwd=_resolve_workdir(inv, bindings),
            env=inv.context.process_env_for(inv.stage),
            timeout=inv.step.timeout_seconds,
            options=_resolve_options(dict(inv.step.options), bindings),
        )

    def execute(self, inv: StepInvocation, prepared: PreparedStep) -> StepOutcome:
        inv.log_line("esteira", f"$ {prepared.command}")
        outcome = inv.executor.execute(
            prepared.command,
            cwd=prepared.cwd,
            env=prepared.env,
            timeout=prepared.timeout,
            cancel_event=inv.context.cancel_event,
            on_output=inv.log_line,
        )
        if outcome.exit_code != 0:
            raise StepFailedError(
                f"Step '{inv.step.label}' exited with code {outcome.exit_code}",
                exit_code=outcome.exit_code,
                details={
                    "stage": inv.stage.name,
                    "step": inv.index,
                    "stderr_tail": "".join(outcome.stderr.splitlines(keepends=True)[-20:]),
                },
            )
        return StepOutcome(exit_code=0, duration_ms=outcome.duration_ms)

    def cleanup(self, inv: StepInvocation, prepared: PreparedStep) -> None:
        return None


class ArchiveStepHandler:
    """
    Arquiva arquivos do workspace como artefatos da run.

    Opções (`with`):
        - paths: padrão glob ou lista de padrões, relativos ao workdir
        - allow_empty: aceita zero arquivos (default: false)

    Um retry que reenvia o mesmo conteúdo não grava de novo; conteúdo
    diferente é gravado sob `attempt-<n>/`.
    """

    kind = "archive"

    def prepare(self, inv: StepInvocation) -> PreparedStep:
        bindings = inv.bindings()
        options = _resolve_options(dict(inv.step.options), bindings)
        paths = options.get("paths")
        if isinstance(paths, str):
            paths = [paths]
        if not paths or not all(isinstance(p, str) and p.strip() for p in paths):
            raise StepFailedError(
                f"Step '{inv.step.label}' requires with.paths",
                exit_code=2,
                details={"stage": inv.stage.name, "step": inv.index},
            )
        options["paths"] = list(paths)
        return PreparedStep(
            command="",
            cwd=_resolve_workdir(inv, bindings),
            env={},
            timeout=inv.step.timeout_seconds,
            options=options,
        )

    def execute(self, inv: StepInvocation, prepared: PreparedStep) -> StepOutcome:
        started = time.monotonic()
        if not prepared.cwd.is_dir():
            raise StepFailedError(
                f"Working directory does not exist: {prepared.cwd}",
                exit_code=2,
                details={"stage": inv.stage.name, "step": inv.index, "cwd": str(prepared.cwd)},
            )

        files: List[Path] = []
        seen = set()
        for pattern in prepared.options["paths"]:
            for match in sorted(prepared.cwd.glob(pattern)):
                if match.is_file() and match not in seen:
                    seen.add(match)
                    files.append(match)

        if not files and not prepared.options.get("allow_empty", False):
            raise StepFailedError(
                f"No files matched {prepared.options['paths']}",
                exit_code=1,
                details={"stage": inv.stage.name, "paths": prepared.options["paths"]},
            )

        refs: List[ArtifactRef] = []
        for path in files:
            name = path.relative_to(prepared.cwd).as_posix()
            ref = self._store(inv, name, path.read_bytes())
            if ref is None:
                continue
            inv.store.record_event(
                inv.run_id,
                "artifact_saved",
                stage=inv.stage.name,
                payload={"artifact": ref.to_dict(), "attempt": inv.attempt},
            )
            inv.log_line("esteira", f"archived {ref.name} ({ref.size} bytes)")
            refs.append(ref)
        duration_ms = int((time.monotonic() - started) * 1000)
        return StepOutcome(exit_code=0, duration_ms=duration_ms, artifacts=tuple(refs))

    def _store(self, inv: StepInvocation, name: str, blob: bytes) -> Optional[ArtifactRef]:
        """Grava o artefato; devolve None quando um retry reenvia o mesmo conteúdo."""
        try:
            return inv.store.put_artifact(inv.run_id, inv.stage.name, name, blob)
        except ConflictError:
            digest = hashlib.sha256(blob).hexdigest()
            existing = [
                ref for ref in inv.store.list_artifacts(inv.run_id)
                if ref.stage == inv.stage.name and ref.name == name
            ]
            if existing and existing[0].sha256 == digest:
                inv.log_line("esteira", f"already archived {name}")
                return None
            return inv.store.put_artifact(inv.run_id, inv.stage.name, f"attempt-{inv.attempt}/{name}", blob)

    def cleanup(self, inv: StepInvocation, prepared: PreparedStep) -> None:
        return None


class DuplicateHandlerKindError(ValueError):
    """Dois handlers registrados com o mesmo `kind`."""


class HandlerRegistry:
    """
    Registro de handlers por `kind`.

    Invariantes:
        - Cada `kind` é único no registry
        - A ordem de registro é preservada em `kinds()`
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, StepHandler] = {}

    def add(self, handler: StepHandler) -> None:
        kind = getattr(handler, "kind", None)
        if not isinstance(kind, str) or not kind.strip():
            raise ValueError("handler.kind must be a non-empty string")
        if kind in self._handlers:
            raise DuplicateHandlerKindError(f"Duplicate handler kind: {kind}")
        self._handlers[kind] = handler

    def get(self, kind: str) -> StepHandler:
        return self._handlers[kind]

    def has(self, kind: str) -> bool:
        return kind in self._handlers

    def kinds(self) -> List[str]:
        return list(self._handlers)


def default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.add(ShellStepHandler())
    registry.add(ArchiveStepHandler())
    return registry


def check_step_kinds(definition: PipelineDefinition, registry: HandlerRegistry) -> None:
    """Levanta DefinitionError se algum step usa um `kind` sem handler registrado."""
    for stage in definition.stages:
        for step in stage.steps:
            if not registry.has(step.kind):
                raise DefinitionError(
                    f"Unknown step kind '{step.kind}' in stage '{stage.name}'",
                    details={"stage": stage.name, "kind": step.kind, "known": registry.kinds()},
                    hint="Use um kind registrado (sh, archive) ou registre um handler para ele.",
                )


def run_step(handler: StepHandler, inv: StepInvocation) -> StepOutcome:
    prepared = handler.prepare(inv)
    try:
        return handler.execute(inv, prepared)
    finally:
        handler.cleanup(inv, prepared)
