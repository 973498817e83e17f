# src/esteira/core/engine/scheduler.py
"""
Scheduler do Esteira CI.

Executa uma Run sobre o grafo validado: despacha stages prontos até o
limite de concorrência, aplica guards, retry e política de falha, e grava
todo desfecho no State Store.

Ciclo de vida de um stage (interno ao coordenador):
    waiting → ready → running → done

Regras de prontidão:
    - Um stage fica pronto quando todas as dependências estão `done`
    - `succeeded`, `unstable` e `skipped` por guard satisfazem dependentes
    - `failed`, `aborted` e `skipped` por falha a montante não satisfazem
    - Dependência não satisfeita → stage `skipped` ("upstream failed")

Decisões arquiteturais:
    - Um coordenador por run é o único escritor de status de Run e de
      StageResult; os workers apenas executam steps e devolvem resultados
    - Empates entre stages prontos seguem a ordem topológica
    - Steps de um stage executam em sequência
    - Retry reexecuta o stage inteiro; ProcessSpawnError nunca tem retry
    - Timeout global da run cancela stages em execução e encerra `failed`

Invariantes:
    - Exatamente um StageResult por stage, gravado em ordem de término
    - Nenhum stage inicia antes de suas dependências terminarem
    - Falhas viram EsteiraErrorPayload em StageResult.error (sem stack trace)
    - Erro inesperado do coordenador encerra a run `failed` antes de propagar

Limites explícitos:
    - Não faz parsing de definições
    - Não expõe API de trigger (ver core.triggers)
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from esteira.core.config.settings import EngineSettings
from esteira.core.definition.params import bind_parameters
from esteira.core.definition.types import FailurePolicy, PipelineDefinition, StageSpec
from esteira.core.errors import exception_to_payload
from esteira.core.exceptions import (
    CancellationError,
    ConflictError,
    DefinitionError,
    ExecutorError,
    NotFoundError,
    StageFailure,
    StepFailedError,
    StoreError,
)
from esteira.core.pipeline.context import RunContext
from esteira.core.pipeline.types import Run, RunStatus, StageResult, StageStatus, utcnow
from esteira.core.store.base import StateStore, log_ref

from .executor import StepExecutor
from .handlers import HandlerRegistry, StepInvocation, check_step_kinds, default_registry, run_step
from .planner import ExecutionGraph, build_graph


logger = logging.getLogger(__name__)

_HALT_CANCELLED = "cancelled"
_HALT_TIMEOUT = "timeout"
_HALT_FAILURE = "failure"


def new_run(
    definition: PipelineDefinition,
    parameters: Optional[Dict[str, Any]] = None,
    *,
    definition_id: Optional[str] = None,
    run_id: Optional[str] = None,
) -> Run:
    """Cria uma Run `pending` com parâmetros já vinculados à definição."""
    return Run(
        run_id=run_id or uuid.uuid4().hex,
        definition_id=definition_id or definition.name,
        definition_name=definition.name,
        definition_hash=definition.source_hash,
        created_at=utcnow(),
        parameters=bind_parameters(definition, parameters),
    )


def is_satisfied(result: StageResult) -> bool:
    if result.status in (StageStatus.SUCCEEDED, StageStatus.UNSTABLE):
        return True
    return result.status == StageStatus.SKIPPED and result.guard_skipped


@dataclass
class _RunControl:
    cancel_event: threading.Event = field(default_factory=threading.Event)
    cancel_requested: bool = False

    def request_cancel(self) -> None:
        self.cancel_requested = True
        self.cancel_event.set()


class RunHandle:
    """Execução de uma run em thread de fundo."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[["RunHandle"], None]] = []
        self._finished = False
        self._run: Optional[Run] = None
        self._error: Optional[BaseException] = None
        self.thread: Optional[threading.Thread] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def add_done_callback(self, fn: Callable[["RunHandle"], None]) -> None:
        """Chama `fn(handle)` ao término; imediatamente se a run já terminou."""
        with self._lock:
            if not self._finished:
                self._callbacks.append(fn)
                return
        fn(self)

    def _finish(self, run: Optional[Run], error: Optional[BaseException]) -> None:
        with self._lock:
            self._run = run
            self._error = error
            self._finished = True
            callbacks, self._callbacks = self._callbacks, []
        try:
            for fn in callbacks:
                fn(self)
        finally:
            # `wait` só retorna depois dos callbacks
            self._done.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[Run]:
        """Espera o término; devolve None se `timeout` expirar antes."""
        if not self._done.wait(timeout):
            return None
        if self._error is not None:
            raise self._error
        return self._run


class _RunCoordinator:
    def __init__(
        self,
        scheduler: "Scheduler",
        run: Run,
        graph: ExecutionGraph,
        context: RunContext,
        control: _RunControl,
        *,
        max_concurrency: int,
        run_timeout: Optional[float],
    ) -> None:
        self.scheduler = scheduler
        self.store = scheduler.store
        self.run = run
        self.graph = graph
        self.context = context
        self.control = control
        self.max_concurrency = max_concurrency
        self.run_timeout = run_timeout

        self.results: Dict[str, StageResult] = {r.stage: r for r in run.results}
        self.running: Dict[Future, str] = {}
        self.failed_stage: Optional[str] = None
        self._halt: Optional[str] = None

        # retomada: um abort-run gravado antes do crash continua valendo
        for name in graph.order:
            prior = self.results.get(name)
            if (
                prior is not None
                and prior.status == StageStatus.FAILED
                and graph.stages[name].on_failure == FailurePolicy.ABORT_RUN
            ):
                self.failed_stage = name
                self._halt = _HALT_FAILURE
                break

    @property
    def run_id(self) -> str:
        return self.run.run_id

    # ------------------------------------------------------------------
    # Estado de parada
    # ------------------------------------------------------------------

    def _halt_cause(self) -> Optional[str]:
        if self._halt is None and self.control.cancel_requested:
            self._halt = _HALT_CANCELLED
        return self._halt

    def _halt_with(self, cause: str) -> None:
        if self._halt_cause() is None:
            self._halt = cause
        self.control.cancel_event.set()

    def _halt_reason(self) -> str:
        cause = self._halt_cause()
        if cause == _HALT_CANCELLED:
            return "run cancelled"
        if cause == _HALT_TIMEOUT:
            return "run timeout exceeded"
        return f"run aborted: stage '{self.failed_stage}' failed"

    # ------------------------------------------------------------------
    # Gravação (somente nesta thread)
    # ------------------------------------------------------------------

    def _record(self, result: StageResult) -> None:
        self.store.append_stage_result(self.run_id, result)
        self.results[result.stage] = result
        self.store.record_event(
            self.run_id,
            "stage_finished",
            stage=result.stage,
            payload={
                "status": result.status.value,
                "attempts": result.attempts,
                "exit_code": result.exit_code,
                "reason": result.reason,
            },
        )
        level = "INFO" if result.status != StageStatus.FAILED else "ERROR"
        message = f"stage {result.status.value}"
        if result.reason:
            message = f"{message}: {result.reason}"
        self.context.log(stage=result.stage, level=level, message=message)

    def _skip(self, name: str, reason: str, *, guard: bool = False) -> None:
        now = utcnow()
        self._record(
            StageResult(
                stage=name,
                status=StageStatus.SKIPPED,
                started_at=None,
                finished_at=now,
                attempts=0,
                reason=reason,
                guard_skipped=guard,
            )
        )

    def _finish(self, stage: StageSpec, result: StageResult) -> None:
        if result.status == StageStatus.FAILED:
            if stage.on_failure == FailurePolicy.MARK_UNSTABLE:
                result = replace(result, status=StageStatus.UNSTABLE)
                self.context.add_warning(
                    stage=stage.name,
                    message=f"stage '{stage.name}' is unstable: {result.reason}",
                )
            elif stage.on_failure == FailurePolicy.ABORT_RUN:
                if self.failed_stage is None:
                    self.failed_stage = stage.name
                self._halt_with(_HALT_FAILURE)
        self._record(result)

    # ------------------------------------------------------------------
    # Despacho
    # ------------------------------------------------------------------

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        in_flight = set(self.running.values())
        for name in self.graph.order:
            if name in self.results or name in in_flight:
                continue
            if self._halt_cause() is not None:
                return
            deps = self.graph.dependencies(name)
            if any(d not in self.results for d in deps):
                continue

            blocked = [d for d in self.graph.order if d in deps and not is_satisfied(self.results[d])]
            if blocked:
                self._skip(name, f"upstream failed: {', '.join(blocked)}")
                continue

            stage = self.graph.stages[name]
            if stage.when is not None:
                try:
                    allowed = stage.when.evaluate(self.context.bindings_for(stage))
                except DefinitionError as e:
                    self._finish(stage, self.scheduler._failure_result(stage, e, started_at=None, attempts=0))
                    continue
                if not allowed:
                    self._skip(name, f"guard evaluated false: {stage.when.describe()}", guard=True)
                    continue

            if len(self.running) >= self.max_concurrency:
                continue

            self.store.record_event(self.run_id, "stage_started", stage=name)
            self.context.log(stage=name, level="INFO", message="stage started")
            future = pool.submit(self.scheduler._execute_stage, self.context, stage)
            self.running[future] = name
            in_flight.add(name)

    def _drain(self) -> None:
        reason = self._halt_reason()
        for name in self.graph.order:
            if name not in self.results:
                self._skip(name, reason)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def execute(self) -> Run:
        deadline = time.monotonic() + self.run_timeout if self.run_timeout else None
        poll = self.scheduler.settings.poll_interval_seconds

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency,
            thread_name_prefix=f"esteira-{self.run_id[:8]}",
        ) as pool:
            try:
                while True:
                    self._dispatch(pool)
                    if not self.running:
                        break
                    finished, _ = wait(list(self.running), timeout=poll, return_when=FIRST_COMPLETED)
                    for future in sorted(finished, key=lambda f: self.graph.position(self.running[f])):
                        name = self.running.pop(future)
                        self._finish(self.graph.stages[name], future.result())
                    if deadline is not None and self._halt_cause() is None and time.monotonic() >= deadline:
                        self.context.log(stage=None, level="ERROR", message="run timeout exceeded")
                        self._halt_with(_HALT_TIMEOUT)
            except BaseException:
                self.control.cancel_event.set()
                raise

        if self._halt_cause() is not None:
            self._drain()
        return self._finalize()

    def _finalize(self) -> Run:
        warnings: List[str] = list(self.run.warnings)
        for msgs in self.context.warnings.values():
            for msg in msgs:
                if msg not in warnings:
                    warnings.append(msg)

        cause = self._halt_cause()
        if cause == _HALT_CANCELLED:
            status, reason = RunStatus.ABORTED, "run cancelled"
        elif cause == _HALT_TIMEOUT:
            status, reason = RunStatus.FAILED, "run timeout exceeded"
        else:
            failed = [
                n for n in self.graph.order
                if self.results[n].status in (StageStatus.FAILED, StageStatus.ABORTED)
            ]
            if self.failed_stage is not None:
                status, reason = RunStatus.FAILED, f"stage '{self.failed_stage}' failed"
            elif failed:
                status, reason = RunStatus.FAILED, f"stage '{failed[0]}' failed"
            else:
                status, reason = RunStatus.SUCCEEDED, ""

        run = self.store.update_run_status(self.run_id, status, reason=reason, warnings=warnings)
        self.store.record_event(
            self.run_id,
            "run_finished",
            payload={"status": status.value, "reason": reason},
        )
        self.context.log(stage=None, level="INFO", message=f"run {status.value}")
        return run


class Scheduler:
    """
    Orquestrador de runs.

    Operações:
        - execute(run, definition): executa de forma síncrona até status terminal
        - start(run, definition): executa em thread de fundo (RunHandle)
        - cancel(run_id): cancelamento cooperativo
        - resume(run_id, definition): continua uma run a partir do State Store
    """

    def __init__(
        self,
        store: StateStore,
        *,
        settings: Optional[EngineSettings] = None,
        executor: Optional[StepExecutor] = None,
        handlers: Optional[HandlerRegistry] = None,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.executor = executor or StepExecutor(
            shell=self.settings.shell,
            grace_seconds=self.settings.grace_seconds,
            poll_interval=self.settings.poll_interval_seconds,
        )
        self.handlers = handlers or default_registry()
        self._lock = threading.Lock()
        self._controls: Dict[str, _RunControl] = {}

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------

    def execute(self, run: Run, definition: PipelineDefinition) -> Run:
        return self._execute(self._ensure_created(run), definition, resumed=False)

    def start(self, run: Run, definition: PipelineDefinition) -> RunHandle:
        stored = self._ensure_created(run)
        handle = RunHandle(run.run_id)
        self._control_for(run.run_id)

        def _target() -> None:
            try:
                result = self._execute(stored, definition, resumed=False)
            except BaseException as e:  # entregue ao chamador via RunHandle.wait
                handle._finish(None, e)
            else:
                handle._finish(result, None)

        handle.thread = threading.Thread(target=_target, name=f"esteira-run-{run.run_id[:8]}", daemon=True)
        handle.thread.start()
        return handle

    def cancel(self, run_id: str) -> bool:
        """Solicita cancelamento; devolve False se a run já terminou."""
        run = self.store.get(run_id)
        if run.status.is_terminal:
            return False
        with self._lock:
            control = self._controls.get(run_id)
            if control is not None:
                control.request_cancel()
        if control is not None:
            self.store.record_event(run_id, "run_cancel_requested")
            logger.info("[%s] cancel requested", run_id)
            return True
        if run.status == RunStatus.PENDING:
            self.store.record_event(run_id, "run_cancel_requested")
            self.store.update_run_status(run_id, RunStatus.ABORTED, reason="run cancelled")
            return True
        return False

    def resume(self, run_id: str, definition: PipelineDefinition) -> Run:
        run = self.store.get(run_id)
        if run.status.is_terminal:
            return run
        if run.definition_hash and definition.source_hash and run.definition_hash != definition.source_hash:
            raise ConflictError(
                "Definition changed since the run was created",
                details={"run_id": run_id, "expected": run.definition_hash, "received": definition.source_hash},
                hint="Retome a run com a mesma definição usada na criação.",
            )
        self.store.record_event(
            run_id,
            "run_resumed",
            payload={"completed_stages": [r.stage for r in run.results]},
        )
        return self._execute(run, definition, resumed=True)

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------

    def _ensure_created(self, run: Run) -> Run:
        try:
            return self.store.get(run.run_id)
        except NotFoundError:
            stored = self.store.create(run)
            self.store.record_event(stored.run_id, "run_created", payload={"definition": stored.definition_id})
            return stored

    def _control_for(self, run_id: str) -> _RunControl:
        with self._lock:
            control = self._controls.get(run_id)
            if control is None:
                control = _RunControl()
                self._controls[run_id] = control
            return control

    def _workspace_for(self, run_id: str) -> Path:
        if self.settings.workspace_root is None:
            return Path.cwd()
        path = Path(self.settings.workspace_root) / run_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _execute(self, run: Run, definition: PipelineDefinition, *, resumed: bool) -> Run:
        control = self._control_for(run.run_id)
        try:
            try:
                graph = build_graph(definition)
                check_step_kinds(definition, self.handlers)
                parameters = bind_parameters(definition, run.parameters)
                context = RunContext(
                    run_id=run.run_id,
                    definition=definition,
                    parameters=parameters,
                    workspace=self._workspace_for(run.run_id),
                    cancel_event=control.cancel_event,
                )
            except DefinitionError as e:
                self.store.update_run_status(run.run_id, RunStatus.FAILED, reason=e.message)
                self.store.record_event(
                    run.run_id,
                    "run_finished",
                    payload={"status": RunStatus.FAILED.value, "error": exception_to_payload(e).to_dict()},
                )
                raise

            if control.cancel_requested and run.status == RunStatus.PENDING:
                self.store.update_run_status(run.run_id, RunStatus.ABORTED, reason="run cancelled")
                return self.store.get(run.run_id)

            run = self.store.update_run_status(run.run_id, RunStatus.RUNNING)
            self.store.record_event(
                run.run_id,
                "run_started",
                payload={"resumed": resumed, "parameters": dict(parameters)},
            )
            context.log(
                stage=None,
                level="INFO",
                message="run resumed" if resumed else "run started",
                pipeline=definition.name,
            )

            coordinator = _RunCoordinator(
                self,
                run,
                graph,
                context,
                control,
                max_concurrency=definition.max_concurrency or self.settings.max_concurrency,
                run_timeout=definition.run_timeout_seconds or self.settings.run_timeout_seconds,
            )
            try:
                return coordinator.execute()
            except Exception as e:
                self._abandon(run.run_id, e)
                raise
        finally:
            with self._lock:
                self._controls.pop(run.run_id, None)

    def _abandon(self, run_id: str, exc: Exception) -> None:
        """Fecha como `failed` uma run cujo coordenador falhou sem finalizar."""
        payload = exception_to_payload(exc)
        logger.error("[%s] coordinator failed: %s", run_id, payload.message)
        try:
            self.store.update_run_status(run_id, RunStatus.FAILED, reason=f"engine error: {payload.message}")
            self.store.record_event(
                run_id,
                "run_finished",
                payload={"status": RunStatus.FAILED.value, "error": payload.to_dict()},
            )
        except StoreError as store_error:
            logger.error("[%s] could not record failed status: %s", run_id, store_error.message)

    # ------------------------------------------------------------------
    # Execução de stage (threads do pool)
    # ------------------------------------------------------------------

    def _failure_result(
        self,
        stage: StageSpec,
        exc: BaseException,
        *,
        started_at: Optional[datetime],
        attempts: int,
        run_id: Optional[str] = None,
        status: StageStatus = StageStatus.FAILED,
    ) -> StageResult:
        payload = exception_to_payload(exc)
        return StageResult(
            stage=stage.name,
            status=status,
            started_at=started_at,
            finished_at=utcnow(),
            exit_code=exc.exit_code if isinstance(exc, StepFailedError) else None,
            attempts=attempts,
            output_ref=log_ref(run_id, stage.name) if run_id else None,
            reason=payload.message,
            error=payload.to_dict(),
        )

    def _run_steps(self, context: RunContext, stage: StageSpec, attempt: int) -> None:
        if stage.retry.max_attempts > 1:
            self.store.append_log(
                context.run_id,
                stage.name,
                "esteira",
                f"attempt {attempt}/{stage.retry.max_attempts}",
            )
        for index, step in enumerate(stage.steps):
            if context.cancelled:
                raise CancellationError("Stage cancelled", details={"stage": stage.name, "step": index})
            inv = StepInvocation(
                context=context,
                stage=stage,
                step=step,
                index=index,
                attempt=attempt,
                executor=self.executor,
                store=self.store,
            )
            run_step(self.handlers.get(step.kind), inv)

    def _execute_stage(self, context: RunContext, stage: StageSpec) -> StageResult:
        run_id = context.run_id
        started_at = utcnow()
        attempt = 0
        while True:
            attempt += 1
            try:
                self._run_steps(context, stage, attempt)
            except CancellationError as e:
                return self._failure_result(
                    stage, e, started_at=started_at, attempts=attempt, run_id=run_id, status=StageStatus.ABORTED
                )
            except StageFailure as e:
                if attempt >= stage.retry.max_attempts or context.cancelled:
                    return self._failure_result(stage, e, started_at=started_at, attempts=attempt, run_id=run_id)
                delay = stage.retry.delay_after(attempt)
                self.store.record_event(
                    run_id,
                    "stage_retry",
                    stage=stage.name,
                    payload={"attempt": attempt, "delay_seconds": delay, "error": e.message},
                )
                context.log(
                    stage=stage.name,
                    level="WARNING",
                    message=f"attempt {attempt} failed, retrying in {delay:g}s",
                )
                if context.cancel_event.wait(delay):
                    cancelled = CancellationError(
                        "Stage cancelled during retry backoff",
                        details={"stage": stage.name, "attempt": attempt},
                    )
                    return self._failure_result(
                        stage, cancelled, started_at=started_at, attempts=attempt, run_id=run_id,
                        status=StageStatus.ABORTED,
                    )
            except (ExecutorError, DefinitionError) as e:
                return self._failure_result(stage, e, started_at=started_at, attempts=attempt, run_id=run_id)
            except StoreError:
                raise
            except Exception as e:
                logger.exception("[%s] [%s] unexpected error", run_id, stage.name)
                return self._failure_result(stage, e, started_at=started_at, attempts=attempt, run_id=run_id)
            else:
                return StageResult(
                    stage=stage.name,
                    status=StageStatus.SUCCEEDED,
                    started_at=started_at,
                    finished_at=utcnow(),
                    exit_code=0,
                    attempts=attempt,
                    output_ref=log_ref(run_id, stage.name),
                )


__all__ = ["RunHandle", "Scheduler", "is_satisfied", "new_run"]
