# src/esteira/cli.py
"""
CLI do Esteira CI.

Comandos:
    - validate  → valida uma definição e mostra a ordem dos stages
    - run       → executa uma definição até o status terminal
    - status    → mostra o estado de uma run gravada
    - logs      → mostra o log capturado de um stage
    - artifacts → lista (e opcionalmente extrai) os artefatos de uma run

Códigos de saída:
    0 sucesso · 1 run falhou · 2 definição/configuração inválida · 130 run abortada
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from esteira import __version__
from esteira.core.config import ConfigError, EngineSettings, load_config
from esteira.core.definition import load_definition
from esteira.core.engine import Scheduler, build_graph, check_step_kinds, default_registry
from esteira.core.exceptions import DefinitionError, StoreError
from esteira.core.pipeline.types import Run, RunStatus
from esteira.core.store import FileStateStore, create_store
from esteira.core.triggers import ManualTrigger, PipelineService


EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.ABORTED: 130,
}

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    logging.getLogger("esteira").setLevel(numeric)


def _parse_params(values: Tuple[str, ...]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="-p/--param")
        params[key.strip()] = value
    return params


def _fail(ctx: click.Context, message: str, code: int = 2) -> None:
    click.echo(f"error: {message}", err=True)
    ctx.exit(code)


def _print_run(run: Run) -> None:
    click.echo(f"run {run.run_id}  {run.definition_name}  {run.status.value}")
    if run.reason:
        click.echo(f"  reason: {run.reason}")
    for result in run.results:
        line = f"  {result.stage:<24} {result.status.value:<10} attempts={result.attempts}"
        if result.exit_code is not None:
            line += f" exit={result.exit_code}"
        if result.reason:
            line += f"  {result.reason}"
        click.echo(line)
    for warning in run.warnings:
        click.echo(f"  warning: {warning}")


@click.group()
@click.version_option(version=__version__, prog_name="esteira")
@click.option("--log-level", default=None, help="Nível do logging (DEBUG, INFO, WARNING, ERROR).")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """Esteira CI - executor de pipelines declarativos.

    Use 'esteira COMMAND --help' para detalhes de um comando.
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("definition", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def validate(ctx: click.Context, definition: Path) -> None:
    """Valida DEFINITION e mostra a ordem de execução dos stages."""
    try:
        loaded = load_definition(definition)
        graph = build_graph(loaded)
        check_step_kinds(loaded, default_registry())
    except DefinitionError as e:
        _fail(ctx, e.message)
        return

    click.echo(f"pipeline {loaded.name}: {len(graph.order)} stages")
    for index, name in enumerate(graph.order, start=1):
        deps = sorted(graph.dependencies(name), key=graph.position)
        suffix = f"  (after {', '.join(deps)})" if deps else ""
        click.echo(f"  {index}. {name}{suffix}")


@cli.command()
@click.argument("definition", type=click.Path(dir_okay=False, path_type=Path))
@click.option("-p", "--param", "params", multiple=True, help="Parâmetro KEY=VALUE (repetível).")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Arquivo YAML/JSON com overrides da configuração do engine.")
@click.option("--store", "store_dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Diretório do State Store em arquivo.")
@click.option("--workspace-root", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Diretório base dos workspaces de run.")
@click.pass_context
def run(
    ctx: click.Context,
    definition: Path,
    params: Tuple[str, ...],
    config_path: Optional[Path],
    store_dir: Optional[Path],
    workspace_root: Optional[Path],
) -> None:
    """Executa DEFINITION até o status terminal."""
    try:
        settings = EngineSettings.from_config(load_config(local_path=config_path))
    except ConfigError as e:
        _fail(ctx, str(e))
        return

    overrides = {}
    if store_dir is not None:
        overrides.update(store_backend="file", store_path=store_dir)
    if workspace_root is not None:
        overrides["workspace_root"] = workspace_root
    settings = dataclasses.replace(settings, **overrides)
    configure_logging(ctx.obj.get("log_level") or settings.log_level)

    try:
        loaded = load_definition(definition)
        check_step_kinds(loaded, default_registry())
    except DefinitionError as e:
        _fail(ctx, e.message)
        return

    service = PipelineService(Scheduler(create_store(settings), settings=settings))
    service.register_definition(loaded.name, loaded)
    try:
        run_id = ManualTrigger(service, loaded.name).fire(_parse_params(params))
    except DefinitionError as e:
        _fail(ctx, e.message)
        return

    click.echo(f"run {run_id} started")
    try:
        try:
            final = service.wait(run_id)
        except KeyboardInterrupt:
            click.echo("cancelling...", err=True)
            service.cancel_run(run_id)
            final = service.wait(run_id)
    except DefinitionError as e:
        _fail(ctx, e.message)
        return
    except StoreError as e:
        _fail(ctx, e.message, code=1)
        return

    _print_run(final)
    ctx.exit(EXIT_CODES.get(final.status, 1))


def _open_store(ctx: click.Context, store_dir: Path) -> FileStateStore:
    if not store_dir.is_dir():
        _fail(ctx, f"store not found: {store_dir}")
    return FileStateStore(store_dir)


@cli.command()
@click.argument("run_id")
@click.option("--store", "store_dir", type=click.Path(file_okay=False, path_type=Path), required=True)
@click.pass_context
def status(ctx: click.Context, run_id: str, store_dir: Path) -> None:
    """Mostra o status de RUN_ID."""
    store = _open_store(ctx, store_dir)
    try:
        _print_run(store.get(run_id))
    except StoreError as e:
        _fail(ctx, e.message, code=1)


@cli.command()
@click.argument("run_id")
@click.argument("stage")
@click.option("--store", "store_dir", type=click.Path(file_okay=False, path_type=Path), required=True)
@click.pass_context
def logs(ctx: click.Context, run_id: str, stage: str, store_dir: Path) -> None:
    """Mostra o log capturado de STAGE em RUN_ID."""
    store = _open_store(ctx, store_dir)
    try:
        click.echo(store.read_log(run_id, stage), nl=False)
    except StoreError as e:
        _fail(ctx, e.message, code=1)


@cli.command()
@click.argument("run_id")
@click.option("--store", "store_dir", type=click.Path(file_okay=False, path_type=Path), required=True)
@click.option("--output", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Extrai os artefatos para este diretório.")
@click.pass_context
def artifacts(ctx: click.Context, run_id: str, store_dir: Path, output: Optional[Path]) -> None:
    """Lista os artefatos de RUN_ID."""
    store = _open_store(ctx, store_dir)
    try:
        refs = store.list_artifacts(run_id)
        for ref in refs:
            click.echo(f"{ref.uri}  {ref.size} bytes  sha256={ref.sha256}")
            if output is not None:
                target = output / ref.stage / ref.name
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(store.get_artifact(ref))
    except StoreError as e:
        _fail(ctx, e.message, code=1)


def main() -> None:
    cli(obj={}, prog_name="esteira")


if __name__ == "__main__":
    main()
