# src/esteira/core/config/settings.py
"""Materialização tipada da configuração do engine."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import InvalidSettingError


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_STORE_BACKENDS = {"memory", "file"}


def _positive_number(section: Dict[str, Any], key: str, *, allow_zero: bool = False) -> float:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidSettingError(f"engine.{key} deve ser numérico, recebido: {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidSettingError(f"engine.{key} fora do domínio: {value!r}")
    return float(value)


@dataclass(frozen=True)
class EngineSettings:
    """
    Configurações efetivas consumidas por Scheduler e Step Executor.

    Campos:
        - max_concurrency: limite de stages executando em paralelo por run
        - grace_seconds: espera entre SIGTERM e SIGKILL em timeout/cancelamento
        - run_timeout_seconds: timeout global da run (None = sem limite)
        - poll_interval_seconds: granularidade de espera do executor
        - shell: interpretador usado para `sh` steps
        - workspace_root: diretório base dos workspaces de run (None = cwd)
        - log_level: nível do logging operacional
        - store_backend / store_path: seleção do State Store
    """

    max_concurrency: int = 4
    grace_seconds: float = 5.0
    run_timeout_seconds: Optional[float] = None
    poll_interval_seconds: float = 0.05
    shell: str = "/bin/sh"
    workspace_root: Optional[Path] = None
    log_level: str = "INFO"
    store_backend: str = "memory"
    store_path: Optional[Path] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "EngineSettings":
        engine = dict((config or {}).get("engine", {}) or {})
        store = dict((config or {}).get("store", {}) or {})

        concurrency = engine.get("max_concurrency", 4)
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise InvalidSettingError(
                f"engine.max_concurrency deve ser inteiro >= 1, recebido: {concurrency!r}"
            )

        run_timeout = engine.get("run_timeout_seconds")
        if run_timeout is not None:
            run_timeout = _positive_number(engine, "run_timeout_seconds")

        level = str(engine.get("log_level", "INFO")).upper()
        if level not in _LOG_LEVELS:
            raise InvalidSettingError(f"engine.log_level inválido: {level}")

        backend = str(store.get("backend", "memory"))
        if backend not in _STORE_BACKENDS:
            raise InvalidSettingError(f"store.backend deve ser um de {sorted(_STORE_BACKENDS)}")
        store_path = store.get("path")
        if backend == "file" and not store_path:
            raise InvalidSettingError("store.path é obrigatório para store.backend=file")

        workspace_root = engine.get("workspace_root")

        return cls(
            max_concurrency=concurrency,
            grace_seconds=_positive_number(engine, "grace_seconds", allow_zero=True)
            if "grace_seconds" in engine
            else 5.0,
            run_timeout_seconds=run_timeout,
            poll_interval_seconds=_positive_number(engine, "poll_interval_seconds")
            if "poll_interval_seconds" in engine
            else 0.05,
            shell=str(engine.get("shell") or "/bin/sh"),
            workspace_root=Path(workspace_root) if workspace_root else None,
            log_level=level,
            store_backend=backend,
            store_path=Path(store_path) if store_path else None,
        )
