# src/esteira/core/triggers/service.py
"""
PipelineService: superfície de trigger do Esteira CI.

Recebe pedidos de execução de qualquer fonte (manual, webhook, polling),
cria a Run no State Store e delega a execução ao Scheduler.

Decisões arquiteturais:
    - Parâmetros são vinculados antes da criação da Run; valores inválidos
      levantam ParameterBindingError e nenhuma Run é criada
    - Runs executam em background; `wait` bloqueia até o status terminal
    - O status consultado vem sempre do State Store
    - Handles de runs terminadas são descartados; só o store guarda o histórico

Limites explícitos:
    - Não executa lógica de pipeline
    - Não persiste definições (registro em memória, por processo)
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from esteira.core.definition.types import PipelineDefinition
from esteira.core.engine.scheduler import RunHandle, Scheduler, new_run
from esteira.core.exceptions import NotFoundError
from esteira.core.pipeline.types import Run


logger = logging.getLogger(__name__)


class PipelineService:
    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler
        self._lock = threading.Lock()
        self._definitions: Dict[str, PipelineDefinition] = {}
        self._handles: Dict[str, RunHandle] = {}

    @property
    def store(self):
        return self.scheduler.store

    def register_definition(self, definition_id: str, definition: PipelineDefinition) -> None:
        if not isinstance(definition_id, str) or not definition_id.strip():
            raise ValueError("definition_id must be a non-empty string")
        with self._lock:
            self._definitions[definition_id] = definition
        logger.info("definition registered: %s (%d stages)", definition_id, len(definition.stages))

    def definitions(self) -> List[str]:
        with self._lock:
            return list(self._definitions)

    def definition(self, definition_id: str) -> PipelineDefinition:
        with self._lock:
            definition = self._definitions.get(definition_id)
        if definition is None:
            raise NotFoundError(
                f"Unknown definition: {definition_id}",
                details={"definition_id": definition_id},
                hint="Registre a definição com register_definition antes de disparar runs.",
            )
        return definition

    def start_run(
        self,
        definition_id: str,
        parameter_bindings: Optional[Mapping[str, Any]] = None,
        *,
        source: str = "manual",
    ) -> str:
        definition = self.definition(definition_id)
        run = new_run(definition, dict(parameter_bindings or {}), definition_id=definition_id)
        handle = self.scheduler.start(run, definition)
        with self._lock:
            self._handles[run.run_id] = handle
        handle.add_done_callback(self._forget)
        self.store.record_event(run.run_id, "run_triggered", payload={"source": source})
        logger.info("[%s] run triggered by %s for %s", run.run_id, source, definition_id)
        return run.run_id

    def _forget(self, handle: RunHandle) -> None:
        with self._lock:
            self._handles.pop(handle.run_id, None)

    def active_runs(self) -> List[str]:
        """Runs disparadas por este serviço que ainda não terminaram."""
        with self._lock:
            return list(self._handles)

    def cancel_run(self, run_id: str) -> bool:
        return self.scheduler.cancel(run_id)

    def get_run_status(self, run_id: str) -> Run:
        return self.store.get(run_id)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """Espera a run terminar; devolve o estado atual se o timeout expirar."""
        with self._lock:
            handle = self._handles.get(run_id)
        if handle is not None:
            handle.wait(timeout)
        return self.store.get(run_id)
