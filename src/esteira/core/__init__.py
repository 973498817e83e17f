# src/esteira/core/__init__.py
"""
Core do Esteira CI.

Componentes principais:
    - config     → resolução de configuração (merge, hashing, settings)
    - definition → definição validada e imutável do pipeline
    - engine     → planejamento e execução controlada de runs
    - pipeline   → Run, StageResult e RunContext
    - store      → registro durável de runs, logs, artefatos e eventos
    - triggers   → fontes de disparo de runs

Princípios fundamentais:
    - Nenhuma decisão silenciosa: todo desfecho de stage é registrado
    - Falhas são estruturadas (EsteiraErrorPayload), nunca stack traces crus

Limites explícitos:
    - Não integra ferramentas específicas (Maven, Docker, Trivy)
    - Não provê interface web
"""
