# src/esteira/core/definition/params.py
"""
Vínculo de parâmetros de uma run.

Valores fornecidos pelo trigger são validados e coeridos para o tipo
declarado na definição. Parâmetros omitidos recebem o default; um
parâmetro `choice` sem default assume a primeira opção.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from esteira.core.exceptions import ParameterBindingError

from .types import ParameterSpec, ParameterType, PipelineDefinition


_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def coerce_value(spec: ParameterSpec, value: Any) -> Any:
    """Converte `value` para o tipo de `spec` ou levanta ParameterBindingError."""
    if value is None:
        raise ParameterBindingError(
            f"Parâmetro '{spec.name}' não aceita valor nulo",
            details={"parameter": spec.name},
        )

    if spec.type == ParameterType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False

    elif spec.type == ParameterType.INTEGER:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass

    elif spec.type == ParameterType.CHOICE:
        text = str(value)
        if text in spec.choices:
            return text
        raise ParameterBindingError(
            f"Valor '{text}' fora das opções de '{spec.name}'",
            details={"parameter": spec.name, "value": text, "choices": list(spec.choices)},
        )

    else:
        if isinstance(value, (str, int, float, bool)):
            return value if isinstance(value, str) else str(value)

    raise ParameterBindingError(
        f"Valor inválido para parâmetro '{spec.name}' ({spec.type.value})",
        details={"parameter": spec.name, "value": repr(value), "type": spec.type.value},
    )


def bind_parameters(
    definition: PipelineDefinition,
    values: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    provided = dict(values or {})

    unknown = sorted(set(provided) - set(definition.parameters))
    if unknown:
        raise ParameterBindingError(
            f"Parâmetros desconhecidos: {', '.join(unknown)}",
            details={"unknown": unknown, "declared": sorted(definition.parameters)},
        )

    bound: Dict[str, Any] = {}
    for name, spec in definition.parameters.items():
        if name in provided:
            bound[name] = coerce_value(spec, provided[name])
        elif spec.has_default:
            bound[name] = spec.default
        elif spec.type == ParameterType.CHOICE and spec.choices:
            bound[name] = spec.choices[0]
        else:
            raise ParameterBindingError(
                f"Parâmetro obrigatório ausente: {name}",
                details={"parameter": name},
            )
    return bound
