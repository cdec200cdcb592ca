from collections import defaultdict
from typing import Optional

import pytest

from imageprep.checkpoint_store import InMemoryCheckpointStore
from imageprep.retry import RetryPolicy
from imageprep.steps.commands import CommandResult


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    Responses are keyed by an argv prefix; each key holds a queue of
    CommandResults (or exceptions to raise). The last queued response
    repeats once the queue is down to one entry. Unmatched commands exit 0.
    """

    def __init__(self):
        self.calls: list[tuple[str, ...]] = []
        self.timeouts: list[Optional[float]] = []
        self._responses: dict[tuple[str, ...], list] = defaultdict(list)

    def add(self, prefix, *responses) -> "FakeRunner":
        key = tuple(prefix)
        for response in responses:
            if isinstance(response, int):
                response = CommandResult(argv=key, exit_code=response)
            self._responses[key].append(response)
        return self

    def run(self, argv, timeout: Optional[float] = None, cwd: Optional[str] = None) -> CommandResult:
        argv = tuple(str(a) for a in argv)
        self.calls.append(argv)
        self.timeouts.append(timeout)
        for key in sorted(self._responses, key=len, reverse=True):
            if argv[: len(key)] == key:
                queue = self._responses[key]
                response = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(response, BaseException):
                    raise response
                return CommandResult(argv, response.exit_code, response.stdout, response.stderr)
        return CommandResult(argv, 0)

    def called(self, *prefix) -> int:
        return sum(1 for c in self.calls if c[: len(prefix)] == prefix)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config, logs and state out of the real IMAGEPREP_HOME."""
    home = tmp_path / "imageprep-home"
    monkeypatch.setenv("IMAGEPREP_HOME", str(home))
    return home


@pytest.fixture
def store():
    return InMemoryCheckpointStore(host="test-host")


@pytest.fixture
def policy():
    """Retry policy without delays."""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


@pytest.fixture
def fake_runner():
    return FakeRunner()
