# src/esteira/__init__.py
"""
Esteira CI — executor de pipelines declarativos de integração contínua.

Um pipeline é um DAG de stages; cada stage é uma sequência de steps
executados como processos com timeout, retry e política de falha
explícitos. Toda execução (Run) é registrada em um State Store durável.

Arquitetura em alto nível:
    - core.config     → carregamento, merge e hashing de configuração
    - core.definition → documento de pipeline, parâmetros, templates e guards
    - core.engine     → planejamento (DAG), executor, handlers e scheduler
    - core.pipeline   → tipos de execução e contexto de run
    - core.store      → State Store (memória e sistema de arquivos)
    - core.triggers   → disparo manual, por webhook e por polling
    - cli             → interface de linha de comando
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
