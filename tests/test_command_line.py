"""Command-line syntax: FAIL annotations and ${VAR} expansion."""

from __future__ import annotations

import pytest

import cmdtest

VARIABLES = {"A": "1", "B_C": "234"}


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("ls", ("ls", False, None)),
        ("a b c --> FAIL   ", ("a b c", True, None)),
        ("a b c --> fail", ("a b c --> fail", False, None)),
        ("a b c -->  FAIL", ("a b c -->  FAIL", False, None)),
        ("a b c --> FAIL 23", ("a b c", True, 23)),
        ("a b c --> FAIL -1", ("a b c", True, -1)),
        ("x --> FAIL y --> FAIL 2", ("x --> FAIL y", True, 2)),
    ],
)
def test_parse_command_line(line: str, expected: tuple[str, bool, int | None]) -> None:
    """The rightmost FAIL marker splits off the failure expectation."""
    assert cmdtest.parse_command_line(line) == expected


@pytest.mark.parametrize(
    "line",
    ["a b c --> FAIL 23a", "a b c --> FAIL 0", "a --> FAIL 1_0", "a --> FAIL two"],
)
def test_parse_command_line_rejects_bad_exit_codes(line: str) -> None:
    """Exit codes must be non-zero integers."""
    with pytest.raises(cmdtest.CommandLineError):
        cmdtest.parse_command_line(line)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("", ""),
        ("plain", "plain"),
        ("${A}", "1"),
        ("${A}${B_C}", "1234"),
        (" x${A}y  ${B_C}z ", " x1y  234z "),
        (" ${A${B_C}", " ${A234"),
        ("$A ${}", "$A ${}"),
    ],
)
def test_expand_variables(text: str, expected: str) -> None:
    """Each ${VAR} is replaced by its value; other text is left alone."""
    assert cmdtest.expand_variables(text, VARIABLES.get) == expected


def test_expand_variables_unknown_variable() -> None:
    """A reference to an undefined variable is an error naming it."""
    with pytest.raises(cmdtest.UndefinedVariableError, match="'C'"):
        cmdtest.expand_variables("x${C}y", VARIABLES.get)


def test_expand_variables_does_not_rescan_values() -> None:
    """Substituted values that look like references stay as they are."""
    lookup = {"OUTER": "${INNER}"}.get

    assert cmdtest.expand_variables("${OUTER}", lookup) == "${INNER}"


def test_expand_variables_empty_value() -> None:
    """A variable set to the empty string expands to nothing."""
    assert cmdtest.expand_variables("[${E}]", {"E": ""}.get) == "[]"
