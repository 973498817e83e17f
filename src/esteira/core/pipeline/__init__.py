# src/esteira/core/pipeline/__init__.py
"""
# Pipeline Core — Esteira CI

Este pacote define os **tipos de execução** e o **contexto de run**.

## Componentes

- **types**
  - `RunStatus`, `StageStatus`: estados de run e de stage
  - `StageResult`: registro imutável do desfecho de um stage
  - `Run`: agregado de uma execução
  - `ArtifactRef`: referência a artefato armazenado

- **context**
  - `RunContext`: bindings, ambiente, workspace, cancelamento, logs e warnings

## Invariantes

- Uma Run é dona exclusiva de seus StageResults
- Cada run possui seu próprio RunContext; não há estado global entre runs
"""

from .context import RunContext
from .types import ArtifactRef, Run, RunStatus, StageResult, StageStatus

__all__ = ["ArtifactRef", "Run", "RunContext", "RunStatus", "StageResult", "StageStatus"]
