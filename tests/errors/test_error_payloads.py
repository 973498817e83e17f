# tests/errors/test_error_payloads.py
"""
Testes do payload canônico de erro (EsteiraErrorPayload).

Os testes asseguram que:
- cada exceção tipada mapeia para um código estável do catálogo
- exceções inesperadas viram ENGINE_EXECUTION_ERROR sem stack trace
- o payload é serializável e reconstruível
"""

import json

import pytest

try:
    from esteira.core.errors import (
        DEFINITION_INVALID,
        ENGINE_EXECUTION_ERROR,
        PROCESS_SPAWN_FAILED,
        STAGE_CANCELLED,
        STAGE_FAILED,
        STEP_TIMEOUT,
        EsteiraErrorPayload,
        exception_to_payload,
    )
    from esteira.core.exceptions import (
        CancellationError,
        CycleError,
        ProcessSpawnError,
        StepFailedError,
        StepTimeoutError,
    )
except Exception as e:  # noqa: BLE001
    exception_to_payload = None
    _IMPORT_ERR = e
else:
    _IMPORT_ERR = None


def _require_imports():
    if _IMPORT_ERR is not None:
        pytest.fail(f"Missing error payloads. Import error: {_IMPORT_ERR}")


@pytest.mark.parametrize(
    "factory, code",
    [
        (lambda: StepFailedError("exit 2", exit_code=2), "STAGE_FAILED"),
        (lambda: StepTimeoutError("timeout"), "STEP_TIMEOUT"),
        (lambda: ProcessSpawnError("no cwd"), "PROCESS_SPAWN_FAILED"),
        (lambda: CancellationError("cancelled"), "STAGE_CANCELLED"),
        (lambda: CycleError("cycle", details={"cycle": ["a", "a"]}), "DEFINITION_INVALID"),
    ],
)
def test_typed_exceptions_map_to_catalog(factory, code):
    _require_imports()
    payload = exception_to_payload(factory())
    assert payload.type == code
    assert code in {STAGE_FAILED, STEP_TIMEOUT, PROCESS_SPAWN_FAILED, STAGE_CANCELLED, DEFINITION_INVALID}


def test_step_failure_keeps_exit_code_and_default_hint():
    _require_imports()
    payload = exception_to_payload(StepFailedError("exit 2", exit_code=2, details={"stage": "build"}))
    assert payload.details == {"stage": "build", "exit_code": 2}
    assert payload.hint


def test_explicit_hint_wins():
    _require_imports()
    payload = exception_to_payload(ProcessSpawnError("no cwd", hint="crie o diretório"))
    assert payload.hint == "crie o diretório"


def test_unexpected_exception_is_wrapped_without_traceback():
    _require_imports()
    try:
        raise KeyError("boom")
    except KeyError as e:
        payload = exception_to_payload(e)
    assert payload.type == ENGINE_EXECUTION_ERROR
    assert payload.details == {"exception_class": "KeyError"}
    assert "Traceback" not in json.dumps(payload.to_dict())


def test_payload_round_trip():
    _require_imports()
    payload = exception_to_payload(StepTimeoutError("timeout", details={"timeout_seconds": 5.0}))
    restored = EsteiraErrorPayload.from_dict(json.loads(json.dumps(payload.to_dict())))
    assert restored == payload
