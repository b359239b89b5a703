"""Shared pytest fixtures for cmdtest tests."""

from __future__ import annotations

import sys
import typing as typ
from pathlib import Path

import pytest

import cmdtest

TESTS_DIR = Path(__file__).resolve().parent
TESTDATA = TESTS_DIR / "testdata"
SCRIPTS = TESTS_DIR / "scripts"


def echo_stdin() -> int:
    """In-process twin of scripts/echo_stdin.py."""
    args = sys.argv[1:]
    if args[:1] == ["-exit"]:
        code = int(args[1])
        print(f"exiting with {code}", file=sys.stderr)
        return code
    print("Here is stdin:")
    sys.stdout.write(sys.stdin.read())
    return 0


def register_programs(suite: cmdtest.TestSuite) -> cmdtest.TestSuite:
    """Add the helper programs the golden files use."""
    suite.commands["echo-stdin"] = cmdtest.Program(
        sys.executable, str(SCRIPTS / "echo_stdin.py")
    )
    suite.commands["echoStdin"] = cmdtest.InProcessProgram("echoStdin", echo_stdin)
    return suite


@pytest.fixture
def read_suite() -> typ.Callable[..., cmdtest.TestSuite]:
    """Read a suite from tests/testdata (or any path) with logging disabled."""

    def _read(directory: str | Path) -> cmdtest.TestSuite:
        suite = cmdtest.read(TESTDATA / directory)
        suite.disable_logging = True
        return register_programs(suite)

    return _read


@pytest.fixture(autouse=True)
def _restore_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Undo environment changes made by setenv commands in golden files."""
    monkeypatch.setenv("CMDTEST_GREETING", "unset")
    monkeypatch.delenv("CMDTEST_UNDEFINED_VARIABLE", raising=False)
