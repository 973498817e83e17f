# src/esteira/core/definition/guards.py
"""
Guards (`when`) de stages.

Um guard é uma árvore declarativa avaliada contra os bindings da run.
Nenhuma expressão é executada via `eval`: o documento só pode combinar
as formas abaixo.

    {param: NOME}                   → parâmetro com valor verdadeiro
    {param: NOME, equals: VALOR}    → igualdade
    {param: NOME, in: [V1, V2]}     → pertinência
    {env: NOME, equals: VALOR}      → idem, sobre o ambiente da run
    {all: [G1, G2]}                 → conjunção
    {any: [G1, G2]}                 → disjunção
    {not: G}                        → negação

Guard falso faz o Scheduler marcar o stage como `skipped` sem executá-lo.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, FrozenSet, Tuple, Union

from esteira.core.exceptions import SchemaError

from .templating import Bindings, format_value


_FALSY_STRINGS = {"", "0", "false", "no", "off"}


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def _matches(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    # env é sempre texto; comparação textual canônica cobre `equals: true` etc.
    return format_value(actual) == format_value(expected)


@dataclass(frozen=True)
class ValueGuard:
    scope: str
    name: str
    op: str = "truthy"
    expected: Any = None

    def evaluate(self, bindings: Bindings) -> bool:
        try:
            actual = bindings.lookup(self.scope, self.name)
        except KeyError:
            return False
        if self.op == "equals":
            return _matches(actual, self.expected)
        if self.op == "in":
            return any(_matches(actual, e) for e in self.expected)
        return _truthy(actual)

    def describe(self) -> str:
        target = f"{self.scope}.{self.name}"
        if self.op == "equals":
            return f"{target} == {self.expected!r}"
        if self.op == "in":
            return f"{target} in {list(self.expected)!r}"
        return target


@dataclass(frozen=True)
class AllGuard:
    children: Tuple["Guard", ...]

    def evaluate(self, bindings: Bindings) -> bool:
        return all(c.evaluate(bindings) for c in self.children)

    def describe(self) -> str:
        return "(" + " and ".join(c.describe() for c in self.children) + ")"


@dataclass(frozen=True)
class AnyGuard:
    children: Tuple["Guard", ...]

    def evaluate(self, bindings: Bindings) -> bool:
        return any(c.evaluate(bindings) for c in self.children)

    def describe(self) -> str:
        return "(" + " or ".join(c.describe() for c in self.children) + ")"


@dataclass(frozen=True)
class NotGuard:
    child: "Guard"

    def evaluate(self, bindings: Bindings) -> bool:
        return not self.child.evaluate(bindings)

    def describe(self) -> str:
        return f"not {self.child.describe()}"


Guard = Union[ValueGuard, AllGuard, AnyGuard, NotGuard]


def parse_guard(data: Any, *, where: str) -> Guard:
    """Converte o bloco `when` do documento em uma árvore de guards."""
    if not isinstance(data, dict) or not data:
        raise SchemaError(f"{where} must be a non-empty mapping")

    for combinator, cls in (("all", AllGuard), ("any", AnyGuard)):
        if combinator in data:
            if len(data) != 1:
                raise SchemaError(f"{where}.{combinator} cannot be combined with other keys")
            items = data[combinator]
            if not isinstance(items, list) or not items:
                raise SchemaError(f"{where}.{combinator} must be a non-empty list")
            return cls(tuple(
                parse_guard(item, where=f"{where}.{combinator}[{i}]") for i, item in enumerate(items)
            ))

    if "not" in data:
        if len(data) != 1:
            raise SchemaError(f"{where}.not cannot be combined with other keys")
        return NotGuard(parse_guard(data["not"], where=f"{where}.not"))

    scopes = [k for k in ("param", "env") if k in data]
    if len(scopes) != 1:
        raise SchemaError(f"{where} must declare exactly one of: param, env, all, any, not")
    key = scopes[0]
    name = data[key]
    if not isinstance(name, str) or not name.strip():
        raise SchemaError(f"{where}.{key} must be a non-empty string")

    extra = set(data) - {key, "equals", "in"}
    if extra:
        raise SchemaError(f"{where} has unknown keys: {sorted(extra)}")
    if "equals" in data and "in" in data:
        raise SchemaError(f"{where} cannot declare both equals and in")

    scope = "params" if key == "param" else "env"
    if "equals" in data:
        return ValueGuard(scope=scope, name=name, op="equals", expected=data["equals"])
    if "in" in data:
        values = data["in"]
        if not isinstance(values, list) or not values:
            raise SchemaError(f"{where}.in must be a non-empty list")
        return ValueGuard(scope=scope, name=name, op="in", expected=tuple(values))
    return ValueGuard(scope=scope, name=name)


def referenced_parameters(guard: Guard) -> FrozenSet[str]:
    if isinstance(guard, ValueGuard):
        return frozenset({guard.name}) if guard.scope == "params" else frozenset()
    if isinstance(guard, NotGuard):
        return referenced_parameters(guard.child)
    names: FrozenSet[str] = frozenset()
    for child in guard.children:
        names = names | referenced_parameters(child)
    return names
