# src/esteira/core/engine/planner.py
"""
Planejador de execução do pipeline (DAG Builder).

Este módulo valida a estrutura de uma `PipelineDefinition` e produz um
`ExecutionGraph`: nós são stages, arestas são dependências declaradas.

O planner opera exclusivamente em nível estrutural, analisando:
    - unicidade de nomes de stages
    - dependências declaradas
    - formação de ciclos

Princípios fundamentais:
    - O pipeline deve formar um DAG válido
    - A ordenação é determinística para a mesma entrada
    - Validação estrutural ocorre antes da execução

Decisões arquiteturais:
    - Ciclos são detectados por DFS com pilha de recursão explícita,
      o que permite reportar o caminho exato do ciclo
    - A ordem topológica usa Kahn com desempate pela ordem de declaração
    - Erros estruturais são tratados como falhas fatais (DefinitionError)

Invariantes:
    - Nenhum stage aparece na ordem antes de suas dependências
    - Todos os stages aparecem exatamente uma vez
    - A mesma definição produz sempre o mesmo grafo

Limites explícitos:
    - Não executa stages
    - Não avalia guards
    - Não decide políticas de execução
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Set, Tuple

from esteira.core.definition.types import PipelineDefinition, StageSpec
from esteira.core.exceptions import CycleError, DuplicateStageError, UnknownDependencyError


@dataclass(frozen=True)
class ExecutionGraph:
    """
    Grafo de execução validado.

    Campos:
        - stages: StageSpec por nome
        - order: ordem topológica determinística
        - edges: dependências diretas por stage
        - reverse: dependentes diretos por stage

    Esta estrutura é imutável e pode ser compartilhada entre runs.
    """

    stages: Mapping[str, StageSpec]
    order: Tuple[str, ...]
    edges: Mapping[str, FrozenSet[str]]
    reverse: Mapping[str, FrozenSet[str]]

    def dependencies(self, name: str) -> FrozenSet[str]:
        return self.edges[name]

    def dependents(self, name: str) -> FrozenSet[str]:
        return self.reverse[name]

    def descendants(self, name: str) -> FrozenSet[str]:
        seen: Set[str] = set()
        stack = list(self.reverse[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.reverse[current])
        return frozenset(seen)

    def position(self, name: str) -> int:
        return self.order.index(name)


def _find_cycle(names: List[str], deps: Dict[str, Tuple[str, ...]]) -> List[str]:
    """
    Procura um ciclo via DFS com pilha de recursão.

    Retorna o caminho do ciclo (primeiro nó repetido no final) ou lista
    vazia. A travessia é iterativa para não depender do limite de
    recursão do interpretador em pipelines grandes.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color: Dict[str, int] = {n: WHITE for n in names}

    for root in names:
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        iters = [iter(deps[root])]
        color[root] = GRAY
        while iters:
            child = next(iters[-1], None)
            if child is None:
                color[path.pop()] = BLACK
                iters.pop()
                continue
            if color[child] == GRAY:
                start = path.index(child)
                return path[start:] + [child]
            if color[child] == WHITE:
                color[child] = GRAY
                path.append(child)
                iters.append(iter(deps[child]))
    return []


def build_graph(definition: PipelineDefinition) -> ExecutionGraph:
    """
    Valida e transforma uma definição em grafo de execução.

    Args:
        definition (PipelineDefinition): Definição validada pelo schema.

    Returns:
        ExecutionGraph: Grafo imutável com ordem topológica determinística.

    Raises:
        DuplicateStageError: Se dois stages compartilharem o mesmo nome.
        UnknownDependencyError: Se um stage depender de nome não declarado.
        CycleError: Se as dependências formarem um ciclo.
    """
    by_name: Dict[str, StageSpec] = {}
    declared: List[str] = []
    for stage in definition.stages:
        if stage.name in by_name:
            raise DuplicateStageError(
                f"Duplicate stage name: {stage.name}",
                details={"stage": stage.name},
            )
        by_name[stage.name] = stage
        declared.append(stage.name)

    deps: Dict[str, Tuple[str, ...]] = {}
    for name in declared:
        for dep in by_name[name].depends_on:
            if dep not in by_name:
                raise UnknownDependencyError(
                    f"Stage '{name}' depends on unknown stage '{dep}'",
                    details={"stage": name, "dependency": dep},
                )
        deps[name] = tuple(by_name[name].depends_on)

    cycle = _find_cycle(declared, deps)
    if cycle:
        raise CycleError(
            "Cycle detected in stage dependency graph: " + " -> ".join(cycle),
            details={"cycle": cycle},
        )

    # Kahn (determinístico pela ordem de declaração)
    rank = {name: i for i, name in enumerate(declared)}
    incoming = {name: len(deps[name]) for name in declared}
    reverse: Dict[str, Set[str]] = {name: set() for name in declared}
    for name, dlist in deps.items():
        for dep in dlist:
            reverse[dep].add(name)

    ready = [name for name in declared if incoming[name] == 0]
    order: List[str] = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        for child in sorted(reverse[current], key=rank.__getitem__):
            incoming[child] -= 1
            if incoming[child] == 0:
                ready.append(child)
                ready.sort(key=rank.__getitem__)

    return ExecutionGraph(
        stages=MappingProxyType(dict(by_name)),
        order=tuple(order),
        edges=MappingProxyType({n: frozenset(d) for n, d in deps.items()}),
        reverse=MappingProxyType({n: frozenset(r) for n, r in reverse.items()}),
    )
