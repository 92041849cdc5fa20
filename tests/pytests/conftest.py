from __future__ import annotations

from typing import Callable

import pytest

from scripts.provision.command_runner import SUDO_PREFIX, CommandResult, CommandRunner
from scripts.provision.errors import CommandError


class FakeRunner(CommandRunner):
    """CommandRunner that answers from scripted responses instead of running anything.

    Responses are matched by the longest registered argv prefix.  A list of
    results is consumed in order and the last one repeats.  Unmatched commands
    succeed with empty output.
    """

    def __init__(self, *, root: bool = True, executables: set[str] | None = None, user: str = "ubuntu"):
        super().__init__(elevation_prefix=[] if root else list(SUDO_PREFIX))
        self.executables: set[str] = set(executables or ())
        self.user = user
        self.calls: list[list[str]] = []
        self.privileged_calls: list[list[str]] = []
        self.inputs: dict[str, str] = {}
        self._responses: dict[tuple[str, ...], list[tuple[int, str, str]]] = {}
        self._effects: dict[tuple[str, ...], Callable[[], None]] = {}

    def on(
        self,
        *prefix: str,
        returncode: int | list[int] = 0,
        stdout: str | list[str] = "",
        stderr: str = "",
        effect: Callable[[], None] | None = None,
    ) -> FakeRunner:
        codes = returncode if isinstance(returncode, list) else [returncode]
        outs = stdout if isinstance(stdout, list) else [stdout] * len(codes)
        self._responses[tuple(prefix)] = [(code, out, stderr) for code, out in zip(codes, outs)]
        if effect is not None:
            self._effects[tuple(prefix)] = effect
        return self

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.executables else None

    def invoking_user(self) -> str:
        return self.user

    def _match(self, cmd: list[str]) -> tuple[str, ...] | None:
        best: tuple[str, ...] | None = None
        for prefix in self._responses:
            if tuple(cmd[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        return best

    def run(self, cmd, *, privileged=False, check=True, input_text=None, timeout=None, action=None):
        cmd = list(cmd)
        self.calls.append(cmd)
        if privileged:
            self.privileged_calls.append(cmd)
        if input_text is not None and cmd:
            self.inputs[cmd[-1]] = input_text

        returncode, stdout, stderr = 0, "", ""
        prefix = self._match(cmd)
        if prefix is not None:
            queue = self._responses[prefix]
            returncode, stdout, stderr = queue.pop(0) if len(queue) > 1 else queue[0]
            effect = self._effects.get(prefix)
            if effect is not None:
                effect()

        full = [*self.elevation_prefix, *cmd] if privileged else cmd
        result = CommandResult(args=full, returncode=returncode, stdout=stdout, stderr=stderr)
        if check and not result.ok:
            raise CommandError(f"{action or 'Command failed'} (exit code {returncode}). {result.text()}", result=result)
        return result

    def ran(self, *prefix: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if tuple(cmd[: len(prefix)]) == prefix]

    def ran_containing(self, word: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if word in cmd]


class DummyResponse:
    def __init__(self, status_code: int = 200, text: str = "", payload: dict | None = None):
        self.status_code = status_code
        self.text = text
        self._payload = payload or {}

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> dict:
        return self._payload


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_runner() -> Callable[..., FakeRunner]:
    return FakeRunner


@pytest.fixture
def dummy_response() -> type[DummyResponse]:
    return DummyResponse
