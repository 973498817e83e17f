# src/esteira/core/engine/__init__.py
"""
Engine do Esteira CI.

Este pacote contém a implementação responsável por **planejar** e
**executar** runs de pipeline.

Componentes principais:
    - planner   → validação do grafo e ordem topológica determinística
    - executor  → processos com timeout, cancelamento e saída capturada
    - handlers  → interface de capacidade por família de step (`sh`, `archive`)
    - scheduler → despacho concorrente, retry, guards e política de falha

Princípios fundamentais:
    - Planejamento e execução são responsabilidades separadas
    - A ordem de execução é determinística para o mesmo grafo
    - Nenhuma decisão silenciosa é tomada durante a execução

Invariantes:
    - Stages só executam após suas dependências terminarem
    - Cada stage produz exatamente um StageResult por run

Limites explícitos:
    - Não faz parsing de documentos de definição
    - Não recebe eventos externos (ver core.triggers)
"""

from .executor import ProcessOutcome, StepExecutor
from .handlers import (
    ArchiveStepHandler,
    HandlerRegistry,
    ShellStepHandler,
    StepHandler,
    check_step_kinds,
    default_registry,
)
from .planner import ExecutionGraph, build_graph
from .scheduler import RunHandle, Scheduler, new_run

__all__ = [
    "ArchiveStepHandler",
    "ExecutionGraph",
    "HandlerRegistry",
    "ProcessOutcome",
    "RunHandle",
    "Scheduler",
    "ShellStepHandler",
    "StepExecutor",
    "StepHandler",
    "build_graph",
    "check_step_kinds",
    "default_registry",
    "new_run",
]
