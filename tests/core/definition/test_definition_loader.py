# tests/core/definition/test_definition_loader.py
"""
Testes do loader de definições (YAML/JSON).

O loader é a fronteira onde erros de definição são fatais: leitura,
parse, schema e grafo. O exemplo empacotado `pipelines/java-app.yaml`
também é validado aqui.
"""

import json
from pathlib import Path

import pytest

try:
    from esteira.core.definition.loader import load_definition
    from esteira.core.definition.types import FailurePolicy
    from esteira.core.engine.planner import build_graph
    from esteira.core.exceptions import CycleError, SchemaError
except Exception as e:  # noqa: BLE001
    load_definition = None
    _IMPORT_ERR = e
else:
    _IMPORT_ERR = None


def _require_imports():
    if _IMPORT_ERR is not None:
        pytest.fail(f"Missing definition loader. Import error: {_IMPORT_ERR}")


_YAML = """\
schema_version: "1"
name: demo
stages:
  - name: build
    steps: [make]
  - name: test
    depends_on: build
    steps: [make test]
"""


def test_load_yaml(tmp_path: Path):
    _require_imports()
    path = tmp_path / "pipeline.yaml"
    path.write_text(_YAML, encoding="utf-8")
    d = load_definition(path)
    assert d.stage_names == ("build", "test")
    assert len(d.source_hash) == 64


def test_yaml_and_json_share_source_hash(tmp_path: Path):
    """O hash identifica a estrutura, não a sintaxe do arquivo."""
    _require_imports()
    import yaml

    y = tmp_path / "p.yaml"
    j = tmp_path / "p.json"
    y.write_text(_YAML, encoding="utf-8")
    j.write_text(json.dumps(yaml.safe_load(_YAML)), encoding="utf-8")
    assert load_definition(y).source_hash == load_definition(j).source_hash


@pytest.mark.parametrize(
    "filename, content",
    [
        ("p.yaml", ""),
        ("p.yaml", "- a\n- b\n"),
        ("p.yaml", "name: [unclosed\n"),
        ("p.json", "{not json"),
        ("p.txt", "schema_version: '1'"),
    ],
)
def test_unreadable_documents_raise_schema_error(tmp_path: Path, filename, content):
    _require_imports()
    path = tmp_path / filename
    path.write_text(content, encoding="utf-8")
    with pytest.raises(SchemaError):
        load_definition(path)


def test_missing_file_raises(tmp_path: Path):
    _require_imports()
    with pytest.raises(SchemaError):
        load_definition(tmp_path / "nope.yaml")


def test_graph_errors_surface_at_load(tmp_path: Path):
    _require_imports()
    path = tmp_path / "cycle.yaml"
    path.write_text(
        """\
schema_version: "1"
name: cyclic
stages:
  - {name: a, depends_on: [b], steps: ["true"]}
  - {name: b, depends_on: [a], steps: ["true"]}
""",
        encoding="utf-8",
    )
    with pytest.raises(CycleError):
        load_definition(path)


def test_bundled_java_app_example(java_app_path: Path):
    """
    Verifica que o exemplo empacotado é uma definição válida.

    Invariantes:
        - compile é o primeiro stage
        - bump-deployment-tag depende do push da imagem
        - o scan de filesystem não derruba a run (mark-unstable)
    """
    _require_imports()
    d = load_definition(java_app_path)
    graph = build_graph(d)
    assert d.name == "java-app"
    assert graph.order[0] == "compile"
    assert graph.position("docker-build") < graph.position("docker-push") < graph.position("bump-deployment-tag")
    assert d.stage("trivy-fs-scan").on_failure == FailurePolicy.MARK_UNSTABLE
    assert d.stage("sonar").when is not None
    assert d.stage("unit-tests").steps[1].kind == "archive"
