# src/esteira/core/definition/__init__.py
"""
# Definition Core — Esteira CI

Este pacote define o **documento de pipeline** e tudo o que é resolvido
a partir dele antes da execução.

## Componentes

- **types**: `PipelineDefinition`, `StageSpec`, `StepSpec`, `ParameterSpec`,
  `RetryPolicy`, `FailurePolicy`
- **schema**: validação estrutural do documento versionado (v1)
- **loader**: leitura de YAML/JSON + validação completa (schema + grafo)
- **params**: vínculo e coerção de parâmetros de uma run
- **templating**: resolução tipada de placeholders
- **guards**: árvore declarativa de condições `when`

## Invariantes

- Uma definição carregada é imutável e compartilhável entre runs
- Nenhum placeholder chega ao shell sem ter sido resolvido
"""

from .guards import Guard, parse_guard
from .loader import load_definition, parse_definition, read_definition_document
from .params import bind_parameters
from .schema import SCHEMA_VERSION, validate_pipeline_definition_v1
from .templating import Bindings, resolve_template
from .types import (
    FailurePolicy,
    ParameterSpec,
    ParameterType,
    PipelineDefinition,
    RetryPolicy,
    StageSpec,
    StepSpec,
)

__all__ = [
    "Bindings",
    "FailurePolicy",
    "Guard",
    "ParameterSpec",
    "ParameterType",
    "PipelineDefinition",
    "RetryPolicy",
    "SCHEMA_VERSION",
    "StageSpec",
    "StepSpec",
    "bind_parameters",
    "load_definition",
    "parse_definition",
    "parse_guard",
    "read_definition_document",
    "resolve_template",
    "validate_pipeline_definition_v1",
]
