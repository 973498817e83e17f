# src/esteira/core/config/loader.py
"""
Loader canônico de configuração do Esteira CI.

A configuração efetiva do engine é resolvida a partir de:
    - um arquivo de defaults (opcional; na ausência, `DEFAULT_CONFIG`)
    - um arquivo local de overrides (opcional)

Responsabilidades do módulo:
    - Carregar arquivos de configuração em YAML ou JSON
    - Validar requisitos estruturais mínimos (tipo raiz)
    - Resolver a configuração final via deep-merge determinístico

Invariantes:
    - O resultado é sempre um dicionário puro (`dict`)
    - Overrides nunca mutam os defaults
    - `DEFAULT_CONFIG` nunca é mutado

Limites explícitos:
    - Não valida domínio de valores (ver `settings.EngineSettings`)
    - Não interage com Scheduler ou State Store
"""

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional
import json

import yaml  # PyYAML

from .errors import (
    ConfigFileNotFoundError,
    InvalidConfigRootTypeError,
    UnsupportedConfigFormatError,
)
from .merge import deep_merge


DEFAULT_CONFIG: Dict[str, Any] = {
    "engine": {
        "max_concurrency": 4,
        "grace_seconds": 5.0,
        "run_timeout_seconds": None,
        "poll_interval_seconds": 0.05,
        "shell": "/bin/sh",
        "workspace_root": None,
        "log_level": "INFO",
    },
    "store": {
        "backend": "memory",
        "path": None,
    },
}


def _load_file(path: Path) -> Dict[str, Any]:
    """
    Carrega um arquivo de configuração e valida sua estrutura básica.

    Formatos suportados (v1):
        - YAML (.yaml, .yml)
        - JSON (.json)

    Arquivos vazios são interpretados como dicionários vazios.

    Raises:
        ConfigFileNotFoundError: Se o arquivo não existir.
        UnsupportedConfigFormatError: Se a extensão não for suportada.
        InvalidConfigRootTypeError: Se a raiz não for um mapeamento.
    """
    if not path.exists():
        raise ConfigFileNotFoundError(f"Arquivo de configuração não encontrado: {path}")

    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    elif suffix == ".json":
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    else:
        raise UnsupportedConfigFormatError(f"Formato não suportado: {path.suffix}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise InvalidConfigRootTypeError(
            f"Config root deve ser dict, recebido: {type(data).__name__}"
        )

    return data


def load_config(
    *,
    defaults_path: Optional[str] = None,
    local_path: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Resolve a configuração efetiva do engine.

    Precedência (menor → maior):
        1. `DEFAULT_CONFIG` embutido
        2. arquivo de defaults (quando informado)
        3. arquivo local de overrides (quando informado e existente)

    Um `defaults_path` informado e inexistente é erro; um `local_path`
    inexistente é ignorado, permitindo overrides opcionais por máquina.

    Returns:
        Dict[str, Any]: Configuração final resolvida.
    """
    effective = deepcopy(DEFAULT_CONFIG)

    if defaults_path is not None:
        effective = deep_merge(effective, _load_file(Path(defaults_path)))

    if local_path is not None:
        local_file = Path(local_path)
        if local_file.exists():
            effective = deep_merge(effective, _load_file(local_file))

    return effective
