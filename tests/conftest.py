"""Shared pytest fixtures for the ADB Hub test suite."""

import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core.adb.adb_bridge import ADBBridge  # noqa: E402
from core.adb.adb_locator import AdbLocator  # noqa: E402
from core.adb.shell_executor import RawShellResult, ShellResult  # noqa: E402

FAKE_ADB = "/fake/platform-tools/adb"


class FakeExecutor:
    """
    Scripted stand-in for ShellExecutor.

    Responses are keyed by the argument vector (without the executable).
    Unscripted calls return an empty successful result. Every call is recorded.
    """

    def __init__(self):
        self.responses: Dict[Tuple[str, ...], object] = {}
        self.raw_responses: Dict[Tuple[str, ...], RawShellResult] = {}
        self.calls: List[Tuple[str, Tuple[str, ...], Optional[float]]] = []

    def script(self, args: Sequence[str], output: str = "", error_output: str = "", exit_code: int = 0):
        self.responses[tuple(args)] = ShellResult(output=output, error_output=error_output, exit_code=exit_code)

    def script_error(self, args: Sequence[str], error: BaseException):
        self.responses[tuple(args)] = error

    def script_raw(self, args: Sequence[str], data: bytes, error_output: str = "", exit_code: int = 0):
        self.raw_responses[tuple(args)] = RawShellResult(data=data, error_output=error_output, exit_code=exit_code)

    def args_called(self) -> List[Tuple[str, ...]]:
        return [args for _, args, _ in self.calls]

    async def execute(self, executable, args, timeout=None):
        key = tuple(args)
        self.calls.append((executable, key, timeout))
        response = self.responses.get(key, ShellResult(output="", error_output="", exit_code=0))
        if isinstance(response, BaseException):
            raise response
        return response

    async def execute_raw(self, executable, args, timeout=None):
        key = tuple(args)
        self.calls.append((executable, key, timeout))
        return self.raw_responses.get(key, RawShellResult(data=b"", error_output="", exit_code=0))


@pytest.fixture()
def fake_executor():
    return FakeExecutor()


@pytest.fixture()
def locator():
    return AdbLocator(override_provider=lambda: FAKE_ADB, known_locations=[])


@pytest.fixture()
def bridge(fake_executor, locator):
    return ADBBridge(executor=fake_executor, locator=locator)
