# src/esteira/core/config/errors.py
"""
Exceções canônicas da camada de configuração do Esteira CI.

Este módulo define a hierarquia oficial de exceções utilizadas durante
o carregamento, o merge e a materialização das configurações do engine.

Princípios fundamentais:
    - Exceções são tipadas e semânticas
    - Erros estruturais são tratados como falhas fatais
    - Mensagens de erro são claras e direcionadas ao operador

Invariantes:
    - Todas as exceções de configuração herdam de `ConfigError`
    - Nenhuma exceção representa erro de definição de pipeline ou de execução
"""


class ConfigError(Exception):
    """
    Exceção base para erros relacionados à configuração do Esteira CI.

    Todas as exceções levantadas durante carregamento, merge e validação
    de configuração devem herdar desta classe.

    Limites explícitos:
        - Não representa erro de definição de pipeline
        - Não representa falha de execução de stage
    """


class ConfigFileNotFoundError(ConfigError):
    """Arquivo de configuração explicitamente informado não existe."""


class UnsupportedConfigFormatError(ConfigError):
    """Formato de arquivo não suportado (v1: YAML/JSON)."""


class InvalidConfigRootTypeError(ConfigError):
    """Conteúdo raiz do arquivo não é um mapeamento."""


class ConfigTypeConflictError(ConfigError):
    """
    Exceção levantada quando o deep-merge encontra tipos incompatíveis
    para a mesma chave (ex.: dict nos defaults e escalar no override).

    Invariantes:
        - Nenhuma coerção implícita de tipo é realizada
        - O merge é interrompido na primeira incompatibilidade
    """


class InvalidSettingError(ConfigError):
    """Valor de configuração fora do domínio aceito pelo engine."""
