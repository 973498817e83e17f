# src/esteira/core/definition/loader.py
"""
Loader de definições de pipeline (YAML/JSON).

O carregamento é a fronteira onde erros de definição são fatais:
parse, schema e grafo (duplicidade, dependências, ciclos) são validados
aqui, antes que qualquer run seja criada.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from esteira.core.config.hashing import compute_config_hash
from esteira.core.exceptions import SchemaError

from .schema import validate_pipeline_definition_v1
from .types import PipelineDefinition


def read_definition_document(path: Union[str, Path]) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise SchemaError(f"definition file not found: {p}", details={"path": str(p)})

    suffix = p.suffix.lower()
    if suffix not in {".yml", ".yaml", ".json"}:
        raise SchemaError(f"unsupported definition format: {suffix}", details={"path": str(p)})

    raw = p.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw) if suffix in {".yml", ".yaml"} else json.loads(raw)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise SchemaError(f"failed to parse definition: {e}", details={"path": str(p)}) from e

    if data is None:
        # YAML vazio -> None
        raise SchemaError("definition file is empty", details={"path": str(p)})
    if not isinstance(data, dict):
        raise SchemaError("definition root must be a mapping/dict", details={"path": str(p)})
    return data


def parse_definition(data: Dict[str, Any]) -> PipelineDefinition:
    """Valida um documento já parseado, inclusive a estrutura do grafo."""
    from esteira.core.engine.planner import build_graph

    definition = validate_pipeline_definition_v1(data, source_hash=compute_config_hash(data))
    build_graph(definition)
    return definition


def load_definition(path: Union[str, Path]) -> PipelineDefinition:
    return parse_definition(read_definition_document(path))
