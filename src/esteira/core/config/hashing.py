# src/esteira/core/config/hashing.py
"""
Hash canônico de estruturas declarativas.

Usado tanto para a configuração resolvida do engine quanto para o
documento bruto de uma definição de pipeline (`Run.definition_hash`).
O JSON canônico usa chaves ordenadas e separadores compactos, de modo
que a mesma estrutura produz sempre o mesmo SHA-256.
"""

import hashlib
import json
from typing import Any, Dict


def compute_config_hash(config: Dict[str, Any]) -> str:
    if not isinstance(config, dict):
        raise TypeError(
            f"Config para hashing deve ser dict, recebido: {type(config).__name__}"
        )

    canonical_json = json.dumps(
        config,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
