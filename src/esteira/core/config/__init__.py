# src/esteira/core/config/__init__.py
"""
Camada de configuração do Esteira CI.

Este pacote contém as estruturas e utilitários responsáveis por carregar,
mesclar, identificar e materializar a configuração do engine.

Responsabilidades do pacote:
    - Carregamento de arquivos de configuração (defaults + overrides locais)
    - Resolução de configuração final via deep-merge determinístico
    - Geração de hash canônico para rastreabilidade
    - Conversão para `EngineSettings` tipado

Limites explícitos:
    - Não carrega definições de pipeline (ver `core.definition`)
    - Não executa pipeline
"""

from .errors import ConfigError, ConfigTypeConflictError, InvalidSettingError
from .hashing import compute_config_hash
from .loader import DEFAULT_CONFIG, load_config
from .merge import deep_merge
from .settings import EngineSettings

__all__ = [
    "ConfigError",
    "ConfigTypeConflictError",
    "InvalidSettingError",
    "DEFAULT_CONFIG",
    "EngineSettings",
    "compute_config_hash",
    "deep_merge",
    "load_config",
]
