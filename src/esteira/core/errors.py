"""
Esteira CI — Canonical Error Structures (v1)

Este módulo define o padrão canônico de erros do Esteira CI.

Erros são considerados artefatos operacionais e fazem parte do registro
de uma run, devendo ser:
- explícitos
- serializáveis
- rastreáveis
- acionáveis

O payload é gravado em `StageResult.error` e permanece consultável
mesmo para runs falhas ou abortadas.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .exceptions import (
    CancellationError,
    DefinitionError,
    EsteiraException,
    ProcessSpawnError,
    StepFailedError,
    StepTimeoutError,
)


# ---------------------------------------------------------------------------
# Payload canônico
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EsteiraErrorPayload:
    """
    Payload canônico de erro do Esteira CI.

    Campos:
    - type: código estável do erro (não é texto livre)
    - message: mensagem curta, humana e objetiva
    - details: dados estruturados relevantes para diagnóstico
    - hint: ação sugerida ao operador (onde corrigir)
    """

    type: str
    message: str
    details: Dict[str, Any]
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Retorna representação serializável do erro."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EsteiraErrorPayload":
        return cls(
            type=str(data.get("type", ENGINE_EXECUTION_ERROR)),
            message=str(data.get("message", "")),
            details=dict(data.get("details", {}) or {}),
            hint=data.get("hint"),
        )


# ---------------------------------------------------------------------------
# Catálogo canônico de tipos de erro (v1)
# ---------------------------------------------------------------------------

# Definição
DEFINITION_INVALID = "DEFINITION_INVALID"

# Stage / Step
STAGE_FAILED = "STAGE_FAILED"
STEP_TIMEOUT = "STEP_TIMEOUT"
PROCESS_SPAWN_FAILED = "PROCESS_SPAWN_FAILED"
STAGE_CANCELLED = "STAGE_CANCELLED"

# Engine / Execução
ENGINE_EXECUTION_ERROR = "ENGINE_EXECUTION_ERROR"


_TYPE_BY_EXCEPTION = (
    (StepTimeoutError, STEP_TIMEOUT),
    (StepFailedError, STAGE_FAILED),
    (ProcessSpawnError, PROCESS_SPAWN_FAILED),
    (CancellationError, STAGE_CANCELLED),
    (DefinitionError, DEFINITION_INVALID),
)

_DEFAULT_HINTS = {
    STEP_TIMEOUT: "Aumente timeout_seconds do step ou investigue o processo travado.",
    STAGE_FAILED: "Consulte o log do stage para o comando que falhou.",
    PROCESS_SPAWN_FAILED: "Verifique workdir, shell configurado e permissões do executor.",
    STAGE_CANCELLED: None,
    DEFINITION_INVALID: "Corrija a definição do pipeline antes de reexecutar.",
}


def exception_to_payload(exc: BaseException) -> EsteiraErrorPayload:
    """Converte exceções em EsteiraErrorPayload (serializável, acionável).

    Regras:
    - EsteiraException: tipo resolvido pelo catálogo; message/details/hint preservados.
    - Outras exceções: encapsular como ENGINE_EXECUTION_ERROR sem expor stack trace.
    """
    if isinstance(exc, EsteiraException):
        code = ENGINE_EXECUTION_ERROR
        for exc_type, exc_code in _TYPE_BY_EXCEPTION:
            if isinstance(exc, exc_type):
                code = exc_code
                break
        return EsteiraErrorPayload(
            type=code,
            message=exc.message or "Erro de execução",
            details=dict(exc.details),
            hint=exc.hint or _DEFAULT_HINTS.get(code),
        )

    return EsteiraErrorPayload(
        type=ENGINE_EXECUTION_ERROR,
        message=str(exc) or "Erro inesperado durante execução",
        details={"exception_class": exc.__class__.__name__},
        hint="Verifique o log técnico e a definição do pipeline",
    )
