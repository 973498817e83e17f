# src/esteira/core/triggers/sources.py
"""
Fontes de trigger.

Cada fonte traduz um evento externo em `PipelineService.start_run`.

Fontes definidas:
    - ManualTrigger: disparo explícito com parâmetros
    - WebhookTrigger: corpo JSON + assinatura HMAC-SHA256 opcional
    - PollTrigger: sonda de revisão; dispara quando a revisão muda

Invariantes:
    - Triggers nunca executam lógica de pipeline
    - Evento recusado levanta TriggerRejectedError e não cria Run
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Union

from esteira.core.exceptions import TriggerRejectedError

from .service import PipelineService


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Esteira-Signature"


class Trigger:
    """Base polimórfica das fontes de trigger."""

    source = "trigger"

    def __init__(self, service: PipelineService, definition_id: str) -> None:
        self.service = service
        self.definition_id = definition_id

    def fire(self, parameters: Optional[Mapping[str, Any]] = None) -> str:
        return self.service.start_run(self.definition_id, parameters, source=self.source)


class ManualTrigger(Trigger):
    source = "manual"


def _lookup_path(payload: Any, path: str) -> Any:
    current = payload
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(path)
    return current


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookTrigger(Trigger):
    """
    Trigger por webhook.

    `parameter_map` associa parâmetros da definição a caminhos pontuados no
    corpo JSON (ex.: `{"BRANCH": "ref", "COMMIT": "head_commit.id"}`).
    Caminhos ausentes no corpo são ignorados e o default do parâmetro vale.
    """

    source = "webhook"

    def __init__(
        self,
        service: PipelineService,
        definition_id: str,
        *,
        secret: Optional[str] = None,
        parameter_map: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(service, definition_id)
        self.secret = secret
        self.parameter_map = dict(parameter_map or {})

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self.secret:
            return
        normalized = {k.lower(): v for k, v in headers.items()}
        received = normalized.get(SIGNATURE_HEADER.lower())
        if not received:
            raise TriggerRejectedError(
                "Missing webhook signature",
                details={"header": SIGNATURE_HEADER},
            )
        if not hmac.compare_digest(received, sign_payload(self.secret, body)):
            raise TriggerRejectedError(
                "Invalid webhook signature",
                details={"header": SIGNATURE_HEADER},
                hint="Confira o segredo compartilhado configurado na origem do webhook.",
            )

    def parameters_from(self, payload: Any) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for name, path in self.parameter_map.items():
            try:
                params[name] = _lookup_path(payload, path)
            except KeyError:
                continue
        return params

    def handle(self, body: Union[bytes, str], headers: Optional[Mapping[str, str]] = None) -> str:
        raw = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        self.verify(raw, headers or {})
        try:
            payload = json.loads(raw.decode("utf-8")) if raw.strip() else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TriggerRejectedError("Webhook body is not valid JSON", details={"error": str(e)}) from e
        return self.fire(self.parameters_from(payload))


class PollTrigger(Trigger):
    """Dispara quando `probe()` devolve uma revisão diferente da última vista."""

    source = "poll"

    def __init__(
        self,
        service: PipelineService,
        definition_id: str,
        probe: Callable[[], Optional[str]],
        *,
        revision_parameter: Optional[str] = None,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(service, definition_id)
        self.probe = probe
        self.revision_parameter = revision_parameter
        self.parameters = dict(parameters or {})
        self.last_revision: Optional[str] = None

    def check(self) -> Optional[str]:
        """Consulta a sonda uma vez; devolve o run_id disparado, se houver."""
        revision = self.probe()
        if revision is None or revision == self.last_revision:
            return None
        params = dict(self.parameters)
        if self.revision_parameter:
            params[self.revision_parameter] = revision
        logger.info("revision changed to %s for %s", revision, self.definition_id)
        run_id = self.fire(params)
        # só marca como vista depois do disparo aceito
        self.last_revision = revision
        return run_id

    def run_forever(self, stop_event: threading.Event, interval: float = 60.0) -> None:
        """Sonda até `stop_event`; falhas de sonda ou de disparo não encerram o loop."""
        while not stop_event.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("poll check failed for %s", self.definition_id)
            stop_event.wait(interval)
