# src/esteira/core/pipeline/context.py
"""
Contexto de execução de uma Run.

Este módulo define o `RunContext`, a estrutura canônica que carrega o
estado explícito de uma run durante a execução: bindings de parâmetros,
ambiente resolvido, workspace, sinal de cancelamento, eventos de log
estruturados e warnings por stage.

Princípios fundamentais:
    - Isolamento por execução (cada run possui seu próprio contexto)
    - Ausência de estado global compartilhado entre runs
    - Comunicação explícita e rastreável

Invariantes:
    - Logs sempre incluem `run_id` e `stage`
    - Warnings são agrupados por stage
    - O ambiente da run é resolvido uma única vez, na criação do contexto

Limites explícitos:
    - Não executa stages
    - Não decide políticas de execução
    - Não persiste dados (o Scheduler grava no State Store)
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from esteira.core.definition.templating import Bindings, format_value, resolve_template
from esteira.core.definition.types import PipelineDefinition, StageSpec


logger = logging.getLogger(__name__)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _resolve_env(
    declared: Mapping[str, str],
    bindings: Bindings,
) -> Dict[str, str]:
    """Resolve variáveis na ordem de declaração; cada uma enxerga as anteriores."""
    resolved: Dict[str, str] = {}
    current = bindings
    for key, template in declared.items():
        value = resolve_template(template, current)
        resolved[key] = value
        current = current.with_env({key: value})
    return resolved


@dataclass
class RunContext:
    """
    Contexto de execução compartilhado pelos stages de uma Run.

    O RunContext consolida:
        - identidade da execução (run_id)
        - definição e parâmetros vinculados
        - ambiente da run resolvido (`environment` da definição)
        - workspace onde os steps executam
        - sinal cooperativo de cancelamento
        - eventos de log estruturados e warnings por stage

    Decisões arquiteturais:
        - `${env.X}` enxerga o ambiente herdado do processo e o da run
        - Parâmetros são exportados como variáveis de ambiente dos steps
        - O ambiente herdado é capturado na criação, não a cada step
    """

    run_id: str
    definition: PipelineDefinition
    parameters: Dict[str, Any]
    workspace: Path
    inherited_env: Dict[str, str] = field(default_factory=lambda: dict(os.environ))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    events: List[Dict[str, Any]] = field(default_factory=list, init=False)
    warnings: Dict[str, List[str]] = field(default_factory=dict, init=False)
    environment: Dict[str, str] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.environment = _resolve_env(self.definition.environment, self._base_bindings())

    # -----------------------------
    # Bindings & ambiente
    # -----------------------------

    def _base_bindings(self) -> Bindings:
        return Bindings(
            params=dict(self.parameters),
            env=dict(self.inherited_env),
            run={"id": self.run_id, "workspace": str(self.workspace)},
        )

    def bindings_for(self, stage: Optional[StageSpec] = None) -> Bindings:
        bindings = self._base_bindings().with_env(self.environment)
        if stage is None:
            return bindings
        bindings = bindings.with_run(stage=stage.name)
        return bindings.with_env(_resolve_env(stage.environment, bindings))

    def process_env_for(self, stage: StageSpec) -> Dict[str, str]:
        """Ambiente completo do processo de um step do stage."""
        env = dict(self.inherited_env)
        env.update({name: format_value(value) for name, value in self.parameters.items()})
        env.update(self.bindings_for(stage).env)
        env.update(
            {
                "ESTEIRA_RUN_ID": self.run_id,
                "ESTEIRA_STAGE": stage.name,
                "ESTEIRA_PIPELINE": self.definition.name,
                "WORKSPACE": str(self.workspace),
            }
        )
        return env

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    # -----------------------------
    # Logging & warnings
    # -----------------------------

    def log(self, *, stage: Optional[str], level: str, message: str, **extra: Any) -> None:
        event = {
            "run_id": self.run_id,
            "stage": stage,
            "level": level,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        event.update(extra)
        with self._lock:
            self.events.append(event)
        logger.log(
            _LEVELS.get(level.upper(), logging.INFO),
            "[%s]%s %s",
            self.run_id,
            f" [{stage}]" if stage else "",
            message,
        )

    def add_warning(self, *, stage: str, message: str) -> None:
        with self._lock:
            self.warnings.setdefault(stage, []).append(message)
