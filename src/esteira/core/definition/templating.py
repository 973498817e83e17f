# src/esteira/core/definition/templating.py
"""
Resolução tipada de placeholders em templates de comando.

Sintaxe suportada:
    - ${params.NOME}  → valor do parâmetro vinculado à run
    - ${env.NOME}     → variável do ambiente da run
    - ${run.id}       → identificador da run
    - ${run.stage}    → nome do stage em execução
    - ${run.workspace}→ diretório de trabalho da run
    - $${             → `${` literal

Todo template é resolvido por completo antes da execução: qualquer
placeholder sem valor levanta `UnresolvedPlaceholderError`, nunca é
repassado ao shell como texto.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, List, Mapping, Tuple

from esteira.core.exceptions import UnresolvedPlaceholderError


_PLACEHOLDER = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_SCOPES = {"params", "env", "run"}


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class Bindings:
    """Valores disponíveis para resolução de templates e avaliação de guards."""

    params: Mapping[str, Any] = field(default_factory=_empty)
    env: Mapping[str, str] = field(default_factory=_empty)
    run: Mapping[str, str] = field(default_factory=_empty)

    def with_run(self, **values: str) -> "Bindings":
        merged = dict(self.run)
        merged.update(values)
        return Bindings(params=self.params, env=self.env, run=MappingProxyType(merged))

    def with_env(self, extra: Mapping[str, str]) -> "Bindings":
        merged = dict(self.env)
        merged.update(extra)
        return Bindings(params=self.params, env=MappingProxyType(merged), run=self.run)

    def lookup(self, scope: str, name: str) -> Any:
        source = {"params": self.params, "env": self.env, "run": self.run}.get(scope)
        if source is None or name not in source:
            raise KeyError(f"{scope}.{name}")
        return source[name]


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _split(expr: str, template: str) -> Tuple[str, str]:
    scope, dot, name = expr.strip().partition(".")
    if not dot or scope not in _SCOPES or not name:
        raise UnresolvedPlaceholderError(
            f"Placeholder inválido: ${{{expr}}}",
            details={"placeholder": expr, "template": template},
            hint="Use ${params.NOME}, ${env.NOME} ou ${run.id}",
        )
    return scope, name


def placeholders(template: str) -> List[Tuple[str, str]]:
    """Lista os placeholders (escopo, nome) de um template, na ordem em que aparecem."""
    found: List[Tuple[str, str]] = []
    for m in _PLACEHOLDER.finditer(template or ""):
        if m.group(0) == "$${":
            continue
        found.append(_split(m.group(1), template))
    return found


def resolve_template(template: str, bindings: Bindings) -> str:
    def _sub(m: "re.Match[str]") -> str:
        if m.group(0) == "$${":
            return "${"
        scope, name = _split(m.group(1), template)
        try:
            return format_value(bindings.lookup(scope, name))
        except KeyError:
            raise UnresolvedPlaceholderError(
                f"Placeholder sem valor: ${{{scope}.{name}}}",
                details={"placeholder": f"{scope}.{name}", "template": template},
            ) from None

    return _PLACEHOLDER.sub(_sub, template or "")
