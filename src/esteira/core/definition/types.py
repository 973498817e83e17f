# src/esteira/core/definition/types.py
"""
Tipos canônicos da definição de pipeline do Esteira CI.

Este módulo define as estruturas imutáveis que representam um pipeline
depois de validado pelo schema: parâmetros, stages, steps e políticas.

Componentes principais:
    - FailurePolicy      → abort-run | continue | mark-unstable
    - ParameterType      → string | boolean | integer | choice
    - RetryPolicy        → tentativas e backoff de um stage
    - ParameterSpec      → declaração de um parâmetro da run
    - StepSpec           → ação executável de um stage
    - StageSpec          → unidade nomeada do DAG
    - PipelineDefinition → documento completo, compartilhado entre runs

Princípios fundamentais:
    - Tipos são imutáveis (frozen dataclasses, tuplas, mappings read-only)
    - Valores textuais dos enums são os mesmos aceitos no documento
    - Nenhuma lógica de execução vive neste módulo

Invariantes:
    - Uma PipelineDefinition nunca é alterada depois de carregada
    - Uma mesma definição pode ser lida por várias runs concorrentes

Limites explícitos:
    - Não valida documentos (ver `schema`)
    - Não monta o grafo (ver `core.engine.planner`)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

from .guards import Guard


def _frozen_mapping(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


class FailurePolicy(str, Enum):
    """
    Política aplicada quando um stage falha após esgotar as tentativas.

    Políticas definidas:
        - ABORT_RUN: cancela stages em execução e encerra a run como `failed`
        - CONTINUE: descendentes do stage são pulados; ramos independentes seguem
        - MARK_UNSTABLE: o stage termina `unstable` e conta como concluído
    """
    ABORT_RUN = "abort-run"
    CONTINUE = "continue"
    MARK_UNSTABLE = "mark-unstable"


class ParameterType(str, Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    CHOICE = "choice"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Política de retry de um stage inteiro.

    O stage é reexecutado do primeiro step a cada tentativa. Entre a
    tentativa `n` falha e a tentativa `n + 1`, o Scheduler espera
    `backoff_seconds * backoff_multiplier ** (n - 1)` segundos.
    """

    max_attempts: int = 1
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 1.0

    def delay_after(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        return float(self.backoff_seconds) * (float(self.backoff_multiplier) ** (attempt - 1))


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    type: ParameterType = ParameterType.STRING
    default: Any = None
    has_default: bool = False
    choices: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class StepSpec:
    """
    Ação executável de um stage.

    Campos:
        - kind: família do handler (`sh`, `archive`)
        - run: template do comando (placeholders `${params.X}`, `${env.X}`, `${run.id}`)
        - workdir: template do diretório, relativo ao workspace da run
        - timeout_seconds: timeout do processo (None = sem limite próprio)
        - options: opções específicas do handler (bloco `with`)
        - name: rótulo opcional usado em logs
    """

    kind: str = "sh"
    run: str = ""
    workdir: str = "."
    timeout_seconds: Optional[float] = None
    options: Mapping[str, Any] = field(default_factory=_frozen_mapping)
    name: Optional[str] = None

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.run:
            first = self.run.strip().splitlines()[0] if self.run.strip() else self.kind
            return first[:60]
        return self.kind


@dataclass(frozen=True)
class StageSpec:
    name: str
    steps: Tuple[StepSpec, ...]
    depends_on: Tuple[str, ...] = ()
    when: Optional[Guard] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    on_failure: FailurePolicy = FailurePolicy.ABORT_RUN
    environment: Mapping[str, str] = field(default_factory=_frozen_mapping)


@dataclass(frozen=True)
class PipelineDefinition:
    """
    Documento de pipeline validado e imutável.

    A ordem de `stages` é a ordem de declaração, usada como critério de
    desempate determinístico pelo planner. `source_hash` identifica o
    documento bruto que originou a definição e é gravado em cada Run.
    """

    name: str
    stages: Tuple[StageSpec, ...]
    parameters: Mapping[str, ParameterSpec] = field(default_factory=_frozen_mapping)
    environment: Mapping[str, str] = field(default_factory=_frozen_mapping)
    schema_version: str = "1"
    description: str = ""
    max_concurrency: Optional[int] = None
    run_timeout_seconds: Optional[float] = None
    source_hash: str = ""

    def stage(self, name: str) -> StageSpec:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    @property
    def stage_names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.stages)
