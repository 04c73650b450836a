from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Sequence

import pytest

from relayci.executor import CommandResult
from relayci.ui.console import Console, set_console


class FakeRunner:
    """
    CommandRunner that never spawns processes.

    exit_codes maps a full command line ("cargo test") to its exit code;
    anything else exits 0.
    """

    def __init__(
        self,
        exit_codes: Optional[Dict[str, int]] = None,
        delay: float = 0.0,
        barrier: Optional[threading.Barrier] = None,
    ):
        self.exit_codes = exit_codes or {}
        self.delay = delay
        self.barrier = barrier
        self.calls: List[str] = []
        self.envs: List[Dict[str, str]] = []
        self._lock = threading.Lock()

    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        line = " ".join([command, *args])
        with self._lock:
            self.calls.append(line)
            self.envs.append(dict(env or {}))

        if self.barrier is not None:
            self.barrier.wait()
        if self.delay:
            if timeout is not None and timeout < self.delay:
                return CommandResult(exit_code=-15, timed_out=True)
            if cancel is not None:
                if cancel.wait(self.delay):
                    return CommandResult(exit_code=-15, cancelled=True)
            else:
                time.sleep(self.delay)

        code = self.exit_codes.get(line, 0)
        return CommandResult(
            exit_code=code,
            stdout=f"ran {line}",
            stderr="" if code == 0 else f"{line}: failed",
        )


@pytest.fixture(autouse=True)
def quiet_console() -> Console:
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
