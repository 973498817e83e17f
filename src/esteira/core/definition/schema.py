# src/esteira/core/definition/schema.py
"""
Schema canônico da definição de pipeline (v1).

Este módulo valida estruturalmente um documento já parseado (YAML/JSON)
e o materializa como `PipelineDefinition` imutável.

Formato (v1):

    schema_version: "1"
    name: java-app
    parameters:
      IMAGE_TAG: {type: string, default: latest}
      RUN_SCAN:  {type: boolean, default: true}
    environment:
      REGISTRY: registry.example.com
      IMAGE: ${env.REGISTRY}/app:${params.IMAGE_TAG}
    options:
      max_concurrency: 2
      run_timeout_seconds: 3600
    stages:
      - name: build
        steps:
          - mvn -B package            # atalho para {kind: sh, run: ...}
      - name: scan
        depends_on: [build]
        when: {param: RUN_SCAN}
        retry: {max_attempts: 2, backoff_seconds: 5}
        on_failure: continue
        steps:
          - {run: trivy fs ., timeout_seconds: 600}

Decisões arquiteturais:
    - Chaves desconhecidas em qualquer nível são erro (`SchemaError`)
    - Placeholders `${params.X}` que citam parâmetros não declarados são
      rejeitados já no carregamento
    - Validação de grafo (duplicidade, dependências, ciclos) é do planner

Limites explícitos:
    - Não lê arquivos (ver `loader`)
    - Não vincula valores de parâmetros de uma run (ver `params`)
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Tuple

from esteira.core.exceptions import ParameterBindingError, SchemaError, UnresolvedPlaceholderError

from .guards import parse_guard, referenced_parameters
from .params import coerce_value
from .templating import placeholders
from .types import (
    FailurePolicy,
    ParameterSpec,
    ParameterType,
    PipelineDefinition,
    RetryPolicy,
    StageSpec,
    StepSpec,
)


SCHEMA_VERSION = "1"

_TOP_LEVEL_KEYS = {"schema_version", "name", "description", "parameters", "environment", "options", "stages"}
_OPTION_KEYS = {"max_concurrency", "run_timeout_seconds"}
_STAGE_KEYS = {"name", "steps", "depends_on", "when", "retry", "on_failure", "environment"}
_STEP_KEYS = {"name", "kind", "run", "workdir", "timeout_seconds", "with"}
_RETRY_KEYS = {"max_attempts", "backoff_seconds", "backoff_multiplier"}
_PARAM_KEYS = {"type", "default", "choices", "description"}
_STEP_KINDS_REQUIRING_RUN = {"sh"}


def _is_non_empty_str(x: Any) -> bool:
    return isinstance(x, str) and bool(x.strip())


def _expect(cond: bool, msg: str) -> None:
    if not cond:
        raise SchemaError(msg)


def _no_unknown_keys(data: Dict[str, Any], allowed: Iterable[str], where: str) -> None:
    extra = sorted(set(data) - set(allowed))
    _expect(not extra, f"{where} has unknown keys: {extra}")


def _number(value: Any, where: str, *, minimum: float, strict: bool = False) -> float:
    _expect(
        isinstance(value, (int, float)) and not isinstance(value, bool),
        f"{where} must be a number",
    )
    ok = value > minimum if strict else value >= minimum
    _expect(ok, f"{where} must be {'>' if strict else '>='} {minimum}")
    return float(value)


def _env_mapping(data: Any, where: str) -> Dict[str, str]:
    if data is None:
        return {}
    _expect(isinstance(data, dict), f"{where} must be a mapping")
    env: Dict[str, str] = {}
    for key, value in data.items():
        _expect(_is_non_empty_str(key), f"{where} keys must be non-empty strings")
        _expect(
            value is None or isinstance(value, (str, int, float, bool)),
            f"{where}.{key} must be a scalar",
        )
        if isinstance(value, bool):
            env[key] = "true" if value else "false"
        else:
            env[key] = "" if value is None else str(value)
    return env


def _parameters(data: Any) -> Dict[str, ParameterSpec]:
    if data is None:
        return {}
    _expect(isinstance(data, dict), "parameters must be a mapping")
    specs: Dict[str, ParameterSpec] = {}
    for name, raw in data.items():
        _expect(_is_non_empty_str(name), "parameter names must be non-empty strings")
        where = f"parameters.{name}"

        # atalho: NOME: valor-default  → string com default
        if not isinstance(raw, dict):
            _expect(isinstance(raw, (str, int, float, bool)), f"{where} must be a mapping or scalar default")
            specs[name] = ParameterSpec(
                name=name,
                type=ParameterType.BOOLEAN if isinstance(raw, bool) else ParameterType.STRING,
                default=raw if isinstance(raw, bool) else str(raw),
                has_default=True,
            )
            continue

        _no_unknown_keys(raw, _PARAM_KEYS, where)
        type_raw = raw.get("type", "string")
        try:
            ptype = ParameterType(type_raw)
        except ValueError:
            raise SchemaError(
                f"{where}.type must be one of {[t.value for t in ParameterType]}"
            ) from None

        choices: Tuple[str, ...] = ()
        if ptype == ParameterType.CHOICE:
            raw_choices = raw.get("choices")
            _expect(isinstance(raw_choices, list) and raw_choices, f"{where}.choices must be a non-empty list")
            choices = tuple(str(c) for c in raw_choices)
            _expect(len(set(choices)) == len(choices), f"{where}.choices has duplicates")
        else:
            _expect("choices" not in raw, f"{where}.choices only applies to type choice")

        spec = ParameterSpec(
            name=name,
            type=ptype,
            choices=choices,
            description=str(raw.get("description") or ""),
        )
        if "default" in raw:
            try:
                default = coerce_value(spec, raw["default"])
            except ParameterBindingError as e:
                raise SchemaError(f"{where}.default is invalid: {e}") from e
            spec = ParameterSpec(
                name=name,
                type=ptype,
                default=default,
                has_default=True,
                choices=choices,
                description=spec.description,
            )
        specs[name] = spec
    return specs


def _retry(data: Any, where: str) -> RetryPolicy:
    if data is None:
        return RetryPolicy()
    if isinstance(data, int) and not isinstance(data, bool):
        _expect(data >= 1, f"{where} must be >= 1")
        return RetryPolicy(max_attempts=data)
    _expect(isinstance(data, dict), f"{where} must be a mapping or an integer")
    _no_unknown_keys(data, _RETRY_KEYS, where)
    attempts = data.get("max_attempts", 1)
    _expect(
        isinstance(attempts, int) and not isinstance(attempts, bool) and attempts >= 1,
        f"{where}.max_attempts must be an integer >= 1",
    )
    return RetryPolicy(
        max_attempts=attempts,
        backoff_seconds=_number(data.get("backoff_seconds", 0), f"{where}.backoff_seconds", minimum=0),
        backoff_multiplier=_number(data.get("backoff_multiplier", 1), f"{where}.backoff_multiplier", minimum=1),
    )


def _step(raw: Any, where: str) -> StepSpec:
    if isinstance(raw, str):
        _expect(bool(raw.strip()), f"{where} must be a non-empty command")
        return StepSpec(kind="sh", run=raw)

    _expect(isinstance(raw, dict), f"{where} must be a command string or a mapping")
    _no_unknown_keys(raw, _STEP_KEYS, where)

    kind = raw.get("kind", "sh")
    _expect(_is_non_empty_str(kind), f"{where}.kind must be a non-empty string")
    run = raw.get("run", "")
    _expect(isinstance(run, str), f"{where}.run must be a string")
    if kind in _STEP_KINDS_REQUIRING_RUN:
        _expect(bool(run.strip()), f"{where}.run is required for kind {kind}")

    workdir = raw.get("workdir", ".")
    _expect(_is_non_empty_str(workdir), f"{where}.workdir must be a non-empty string")

    timeout: Optional[float] = None
    if raw.get("timeout_seconds") is not None:
        timeout = _number(raw["timeout_seconds"], f"{where}.timeout_seconds", minimum=0, strict=True)

    options = raw.get("with") or {}
    _expect(isinstance(options, dict), f"{where}.with must be a mapping")

    name = raw.get("name")
    _expect(name is None or _is_non_empty_str(name), f"{where}.name must be a non-empty string")

    return StepSpec(
        kind=kind,
        run=run,
        workdir=workdir,
        timeout_seconds=timeout,
        options=MappingProxyType(dict(options)),
        name=name,
    )


def _stage(raw: Any, index: int) -> StageSpec:
    where = f"stages[{index}]"
    _expect(isinstance(raw, dict), f"{where} must be a mapping")
    _no_unknown_keys(raw, _STAGE_KEYS, where)

    name = raw.get("name")
    _expect(_is_non_empty_str(name), f"{where}.name is required")
    where = f"stages[{name}]"

    steps = raw.get("steps")
    _expect(isinstance(steps, list) and steps, f"{where}.steps must be a non-empty list")

    deps = raw.get("depends_on") or []
    if isinstance(deps, str):
        deps = [deps]
    _expect(isinstance(deps, list), f"{where}.depends_on must be a list")
    for d in deps:
        _expect(_is_non_empty_str(d), f"{where}.depends_on entries must be non-empty strings")
    _expect(len(set(deps)) == len(deps), f"{where}.depends_on has duplicates")

    on_failure = raw.get("on_failure", FailurePolicy.ABORT_RUN.value)
    try:
        policy = FailurePolicy(on_failure)
    except ValueError:
        raise SchemaError(
            f"{where}.on_failure must be one of {[p.value for p in FailurePolicy]}"
        ) from None

    when = raw.get("when")
    return StageSpec(
        name=name,
        steps=tuple(_step(s, f"{where}.steps[{i}]") for i, s in enumerate(steps)),
        depends_on=tuple(deps),
        when=parse_guard(when, where=f"{where}.when") if when is not None else None,
        retry=_retry(raw.get("retry"), f"{where}.retry"),
        on_failure=policy,
        environment=MappingProxyType(_env_mapping(raw.get("environment"), f"{where}.environment")),
    )


def _check_parameter_references(
    templates: List[Tuple[str, str]],
    declared: Iterable[str],
) -> None:
    known = set(declared)
    for where, template in templates:
        for scope, name in placeholders(template):
            if scope == "params" and name not in known:
                raise UnresolvedPlaceholderError(
                    f"{where} references undeclared parameter '{name}'",
                    details={"where": where, "placeholder": f"params.{name}"},
                )


def validate_pipeline_definition_v1(data: Any, *, source_hash: str = "") -> PipelineDefinition:
    """Valida e materializa uma definição de pipeline v1."""
    _expect(isinstance(data, dict), "Pipeline definition must be a mapping/dict")
    _no_unknown_keys(data, _TOP_LEVEL_KEYS, "definition")

    version = data.get("schema_version")
    _expect(version is not None, "schema_version is required")
    _expect(str(version) == SCHEMA_VERSION, f"schema_version must be '{SCHEMA_VERSION}' in v1")

    name = data.get("name")
    _expect(_is_non_empty_str(name), "name is required")

    options = data.get("options") or {}
    _expect(isinstance(options, dict), "options must be a mapping")
    _no_unknown_keys(options, _OPTION_KEYS, "options")
    max_concurrency = options.get("max_concurrency")
    if max_concurrency is not None:
        _expect(
            isinstance(max_concurrency, int) and not isinstance(max_concurrency, bool) and max_concurrency >= 1,
            "options.max_concurrency must be an integer >= 1",
        )
    run_timeout = options.get("run_timeout_seconds")
    if run_timeout is not None:
        run_timeout = _number(run_timeout, "options.run_timeout_seconds", minimum=0, strict=True)

    parameters = _parameters(data.get("parameters"))
    environment = _env_mapping(data.get("environment"), "environment")

    stages_raw = data.get("stages")
    _expect(isinstance(stages_raw, list) and stages_raw, "stages must be a non-empty list")
    stages = tuple(_stage(s, i) for i, s in enumerate(stages_raw))

    templates: List[Tuple[str, str]] = [(f"environment.{k}", v) for k, v in environment.items()]
    for stage in stages:
        templates.extend((f"stages[{stage.name}].environment.{k}", v) for k, v in stage.environment.items())
        for i, step in enumerate(stage.steps):
            templates.append((f"stages[{stage.name}].steps[{i}].run", step.run))
            templates.append((f"stages[{stage.name}].steps[{i}].workdir", step.workdir))
            for key, value in step.options.items():
                values = value if isinstance(value, list) else [value]
                templates.extend(
                    (f"stages[{stage.name}].steps[{i}].with.{key}", v) for v in values if isinstance(v, str)
                )
        if stage.when is not None:
            missing = sorted(referenced_parameters(stage.when) - set(parameters))
            _expect(not missing, f"stages[{stage.name}].when references undeclared parameters: {missing}")
    _check_parameter_references(templates, parameters)

    return PipelineDefinition(
        name=name,
        stages=stages,
        parameters=MappingProxyType(parameters),
        environment=MappingProxyType(environment),
        schema_version=SCHEMA_VERSION,
        description=str(data.get("description") or ""),
        max_concurrency=max_concurrency,
        run_timeout_seconds=run_timeout,
        source_hash=source_hash,
    )
