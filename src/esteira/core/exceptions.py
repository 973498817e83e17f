"""
Esteira CI — Canonical Exceptions (v1)

Este módulo define a hierarquia de exceções tipadas do Esteira CI.

Objetivo:
- Permitir que componentes levantem falhas semânticas tipadas
- Facilitar o mapeamento determinístico para EsteiraErrorPayload
- Separar falhas de definição, de execução, de armazenamento e de cancelamento

Taxonomia:
- DefinitionError   → fatal no carregamento; a run nunca inicia
- StageFailure      → tratada pela política de falha do stage; pode ter retry
- ExecutorError     → tratada como falha de stage; nunca tem retry
- StoreError        → sempre propagada ao chamador
- CancellationError → resultado esperado de abort explícito (status `aborted`)

Regras:
- Exceções carregam apenas dados estruturados (serializáveis) em `details`.
- Mensagens são curtas e humanas.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EsteiraException(Exception):
    """Base class para exceções internas do Esteira.

    Importante:
    - Sempre carregar dados estruturados em `details`
    - Não embedar stack trace em payloads de erro
    - Mensagem deve ser curta e humana
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.hint = hint

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Definição do pipeline
# ---------------------------------------------------------------------------

class DefinitionError(EsteiraException):
    """Definição de pipeline inválida; a run nunca inicia."""


class SchemaError(DefinitionError):
    """Documento viola o schema versionado da definição."""


class CycleError(DefinitionError):
    """Dependências entre stages formam um ciclo."""


class UnknownDependencyError(DefinitionError):
    """Stage referencia um stage não declarado."""


class DuplicateStageError(DefinitionError):
    """Nome de stage repetido na definição."""


class UnresolvedPlaceholderError(DefinitionError):
    """Template contém placeholder sem valor resolvível."""


class ParameterBindingError(DefinitionError):
    """Valores de parâmetros incompatíveis com a definição."""


# ---------------------------------------------------------------------------
# Execução de stages
# ---------------------------------------------------------------------------

class StageFailure(EsteiraException):
    """Falha de execução de stage (exit code não-zero, timeout)."""


class StepFailedError(StageFailure):
    """Processo do step terminou com exit code não-zero."""

    def __init__(self, message: str, *, exit_code: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.details.setdefault("exit_code", exit_code)


class StepTimeoutError(StageFailure):
    """Processo do step excedeu o timeout configurado."""


class ExecutorError(EsteiraException):
    """Falha do executor que não pertence ao processo do step."""


class ProcessSpawnError(ExecutorError):
    """Processo não pôde ser criado."""


class CancellationError(EsteiraException):
    """Execução interrompida por cancelamento explícito."""


# ---------------------------------------------------------------------------
# State Store
# ---------------------------------------------------------------------------

class StoreError(EsteiraException):
    """Erro base do State Store."""


class NotFoundError(StoreError):
    """Run ou artefato inexistente no store."""


class ConflictError(StoreError):
    """Escrita concorrente ou duplicada violou at-most-once."""


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class TriggerRejectedError(EsteiraException):
    """Evento de trigger recusado (assinatura inválida, payload malformado)."""
