# src/esteira/core/triggers/__init__.py
"""
Trigger Listener do Esteira CI.

Componentes:
    - service → PipelineService (registro de definições, start/cancel/status/wait)
    - sources → ManualTrigger, WebhookTrigger, PollTrigger
"""

from .service import PipelineService
from .sources import ManualTrigger, PollTrigger, Trigger, WebhookTrigger, sign_payload

__all__ = [
    "ManualTrigger",
    "PipelineService",
    "PollTrigger",
    "Trigger",
    "WebhookTrigger",
    "sign_payload",
]
