# tests/conftest.py
"""
Fixtures compartilhados para testes do Esteira CI.

Este módulo define fixtures reutilizáveis que fornecem:
- configurações de engine mínimas e determinísticas
- definições de pipeline construídas a partir de dicionários
- State Store em memória e Scheduler prontos para uso
- um helper para executar uma definição até o status terminal

Decisões arquiteturais:
    - Imports do core são realizados de forma lazy para melhorar a
      clareza de erros durante falhas de import
    - Workspaces de run sempre vivem sob `tmp_path`
    - Timeouts e períodos de graça são curtos para manter a suíte rápida

Invariantes:
    - Nenhuma fixture depende de variáveis de ambiente do operador
    - Cada teste recebe store e workspace isolados

Limites explícitos:
    - Não substitui testes de integração do CLI
    - Não executa ferramentas externas (Maven, Docker)
"""

from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parent.parent


# =====================================================
# Config
# =====================================================

@pytest.fixture
def engine_defaults_yaml() -> str:
    """YAML de defaults semelhante a um `esteira.defaults.yaml` real."""
    return """\
engine:
  max_concurrency: 4
  grace_seconds: 5
  log_level: INFO
store:
  backend: memory
"""


@pytest.fixture
def engine_local_yaml() -> str:
    """YAML de overrides locais (por máquina)."""
    return """\
engine:
  max_concurrency: 2
  log_level: DEBUG
store:
  backend: file
  path: .esteira/runs
"""


@pytest.fixture
def settings(tmp_path):
    """EngineSettings rápidas, com workspaces sob `tmp_path`."""
    from esteira.core.config.settings import EngineSettings

    return EngineSettings(
        max_concurrency=4,
        grace_seconds=0.5,
        poll_interval_seconds=0.01,
        workspace_root=tmp_path / "workspaces",
    )


# =====================================================
# Definições
# =====================================================

@pytest.fixture
def make_definition():
    """
    Factory que valida um documento (dict) e devolve PipelineDefinition.

    `schema_version` e `name` recebem valores padrão quando omitidos.
    """
    from esteira.core.definition.loader import parse_definition

    def _make(doc: dict):
        data = {"schema_version": "1", "name": "test-pipeline"}
        data.update(doc)
        return parse_definition(data)

    return _make


@pytest.fixture
def java_app_path() -> Path:
    return REPO_ROOT / "pipelines" / "java-app.yaml"


# =====================================================
# Store / Scheduler
# =====================================================

@pytest.fixture
def memory_store():
    from esteira.core.store.memory import InMemoryStateStore

    return InMemoryStateStore()


@pytest.fixture
def scheduler(memory_store, settings):
    from esteira.core.engine.scheduler import Scheduler

    return Scheduler(memory_store, settings=settings)


@pytest.fixture
def run_pipeline(scheduler, make_definition):
    """
    Executa um documento de pipeline de forma síncrona.

    Returns:
        callable(doc, params=None) -> Run terminal
    """
    from esteira.core.engine.scheduler import new_run

    def _run(doc: dict, params=None):
        definition = make_definition(doc)
        return scheduler.execute(new_run(definition, params), definition)

    return _run
