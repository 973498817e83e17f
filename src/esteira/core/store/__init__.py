# src/esteira/core/store/__init__.py
"""
State Store do Esteira CI.

Registro durável de runs, StageResults (append-only), logs por stage,
artefatos e Event Log.

Implementações:
    - InMemoryStateStore → efêmero, para testes e runs locais
    - FileStateStore     → durável, permite retomar runs após crash
"""

from typing import Optional

from esteira.core.config.settings import EngineSettings

from .base import StateStore
from .filesystem import FileStateStore
from .memory import InMemoryStateStore


def create_store(settings: Optional[EngineSettings] = None) -> StateStore:
    settings = settings or EngineSettings()
    if settings.store_backend == "file" and settings.store_path is not None:
        return FileStateStore(settings.store_path)
    return InMemoryStateStore()


__all__ = ["FileStateStore", "InMemoryStateStore", "StateStore", "create_store"]
