# src/esteira/core/engine/executor.py
"""
Step Executor: execução de um processo com saída capturada, timeout e
cancelamento cooperativo.

Contrato:
    execute(command, cwd, env, timeout, cancel_event, on_output)
        -> ProcessOutcome{exit_code, stdout, stderr, duration_ms}
    ou levanta StepTimeoutError / CancellationError / ProcessSpawnError.

Decisões arquiteturais:
    - O comando roda via shell configurado (`<shell> -c <command>`) em uma
      nova sessão, para que timeout e cancelamento alcancem o grupo de
      processos inteiro (ex.: `mvn` que dispara JVMs filhas)
    - Terminação graciosa: SIGTERM, espera `grace_seconds`, depois SIGKILL
    - Linhas de stdout/stderr são entregues a `on_output` assim que lidas
    - Exit code não-zero não é exceção aqui; quem decide é o handler

Limites explícitos:
    - Não resolve templates (recebe o comando já resolvido)
    - Não grava no State Store diretamente
    - Não decide retry nem política de falha
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from esteira.core.exceptions import (
    CancellationError,
    EsteiraException,
    ProcessSpawnError,
    StepTimeoutError,
)


OutputCallback = Callable[[str, str], None]

_TAIL_LINES = 20


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int


def _tail(lines: List[str]) -> str:
    return "".join(lines[-_TAIL_LINES:])


class StepExecutor:
    """Executa comandos de step como processos do sistema operacional."""

    def __init__(
        self,
        *,
        shell: str = "/bin/sh",
        grace_seconds: float = 5.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.shell = shell
        self.grace_seconds = grace_seconds
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Terminação
    # ------------------------------------------------------------------

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == getattr(signal, "SIGKILL", None):
                proc.kill()
            else:
                proc.terminate()
        except ProcessLookupError:
            pass

    def terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM no grupo, espera o período de graça, depois SIGKILL."""
        if proc.poll() is not None:
            return
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.grace_seconds)
            return
        except subprocess.TimeoutExpired:
            pass
        self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()

    # ------------------------------------------------------------------
    # Execução
    # ------------------------------------------------------------------

    def execute(
        self,
        command: str,
        *,
        cwd: Union[str, Path],
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ProcessOutcome:
        workdir = Path(cwd)
        if not workdir.is_dir():
            raise ProcessSpawnError(
                f"Working directory does not exist: {workdir}",
                details={"cwd": str(workdir)},
            )
        if cancel_event is not None and cancel_event.is_set():
            raise CancellationError("Step cancelled before start", details={"command": command})

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                [self.shell, "-c", command],
                cwd=str(workdir),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as e:
            raise ProcessSpawnError(
                f"Failed to spawn process: {e.strerror or e}",
                details={"shell": self.shell, "cwd": str(workdir), "errno": e.errno},
            ) from e

        captured: Dict[str, List[str]] = {"stdout": [], "stderr": []}
        callback_errors: List[BaseException] = []

        def _pump(stream_name: str) -> None:
            stream = getattr(proc, stream_name)
            for line in stream:
                captured[stream_name].append(line)
                if on_output is not None and not callback_errors:
                    try:
                        on_output(stream_name, line)
                    except Exception as e:  # reraised after the process exits
                        callback_errors.append(e)
            stream.close()

        readers = [
            threading.Thread(target=_pump, args=(name,), daemon=True, name=f"esteira-{name}-{proc.pid}")
            for name in ("stdout", "stderr")
        ]
        for t in readers:
            t.start()

        deadline = started + timeout if timeout is not None else None
        outcome_error: Optional[EsteiraException] = None
        while proc.poll() is None:
            if cancel_event is not None and cancel_event.wait(self.poll_interval):
                self.terminate(proc)
                outcome_error = CancellationError("Step cancelled", details={"command": command})
                break
            if cancel_event is None:
                time.sleep(self.poll_interval)
            if deadline is not None and time.monotonic() >= deadline:
                self.terminate(proc)
                outcome_error = StepTimeoutError(
                    f"Step exceeded timeout of {timeout:g}s",
                    details={"command": command, "timeout_seconds": timeout},
                )
                break

        for t in readers:
            t.join(timeout=self.grace_seconds + 1.0)

        duration_ms = int((time.monotonic() - started) * 1000)
        if outcome_error is not None:
            outcome_error.details["duration_ms"] = duration_ms
            outcome_error.details["stderr_tail"] = _tail(captured["stderr"])
            raise outcome_error
        if callback_errors:
            raise callback_errors[0]

        return ProcessOutcome(
            exit_code=proc.returncode,
            stdout="".join(captured["stdout"]),
            stderr="".join(captured["stderr"]),
            duration_ms=duration_ms,
        )
