#!/usr/bin/env python3
"""
cmdtest: golden-output tests for command-line interfaces.

A test suite is a directory of ".ct" files. Each file holds commands to run
and their expected output (merged stdout and stderr):

    # Comments and blank lines are allowed before the first command.

    $ echo hello
    hello

    $ fecho greeting.txt hi\\nthere
    $ cat greeting.txt
    hi
    there

    $ cd missing --> FAIL 2

Consecutive lines starting with '$' form one test case. The lines after them,
up to the next '$' line, are the expected output. Trailing blank lines and
comments after the output belong to the next case (or to the end of the file),
so trailing blank lines in the output cannot be expressed. Neither can output
lines starting with '$', which would read as commands; updating a file
that produces one is an error.

A command line is a sequence of space-separated words; no quoting is
supported. If the next-to-last word is '<', the last word names a file that
becomes the command's standard input. A " --> FAIL" suffix marks a command
that must fail, optionally followed by the non-zero exit code it must fail
with. "${VAR}" is replaced by the value of the environment variable VAR;
undefined variables are errors.

Each file runs in a fresh temporary directory, exported as ROOTDIR, and
occurrences of that directory in the output are replaced by "${ROOTDIR}".
Files in a suite run in isolation: a failure in one does not stop the others.

    suite = cmdtest.read("testdata")
    suite.commands["mytool"] = cmdtest.Program("./mytool")
    suite.check(update=False)
"""

import argparse
import difflib
import io
import os
import queue
import re
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

import pexpect


class T:
    """Terminal color helper with ANSI escape sequences."""

    red, green, blue, yellow, grey, bold, clear = (
        "\033[31m",
        "\033[32m",
        "\033[34m",
        "\033[33m",
        "\033[90m",
        "\033[1m",
        "\033[0m",
    )


COMMAND_MARKER = "$"
COMMENT_MARKER = "#"
FAIL_MARKER = " --> FAIL"
TEST_FILE_EXT = ".ct"
FIXTURES_SUFFIX = "_tf"
SCRUBBED_ROOT_DIR = "${ROOTDIR}"

VARIABLE_PATTERN = re.compile(r"\$\{([^${}]+)\}")
EXIT_CODE_PATTERN = re.compile(r"[+-]?[0-9]+")

# Seconds a terminal program may run, and the pause between end-of-file
# characters sent to it
TERMINAL_TIMEOUT = 30
EOF_RETRY_INTERVAL = 0.2

# A command takes its arguments and the name of a file to use as standard
# input ("" for none), and returns its output.
CommandFunc = Callable[[list[str], str], Optional[bytes]]
Logger = Callable[[str], None]


class CmdTestError(Exception):
    """Base class for errors reported by cmdtest."""


class ParseError(CmdTestError):
    """A test file is malformed."""


class CommandLineError(CmdTestError):
    """A command line cannot be parsed."""


class UndefinedVariableError(CmdTestError):
    """A ${VAR} reference names a variable that is not set."""


class UnknownCommandError(CmdTestError):
    """A command line names a command that is not registered."""


class ExpectationError(CmdTestError):
    """A command succeeded or failed differently than the test file says."""


class CommandUsageError(CmdTestError):
    """A built-in command was called incorrectly."""


class SetupError(CmdTestError):
    """Preparing the working directory of a test file failed."""


class ProgramError(CmdTestError):
    """
    A program could not be run to completion, for example because it did not
    exit in time. Output read before giving up is kept.
    """

    def __init__(self, msg: str, output: bytes = b""):
        super().__init__(msg)
        self.output = output


class ExitCodeError(Exception):
    """
    Raised by a command to report an exit code.

    Only commands that don't fail with an OS error or a process exit status
    need this; those already carry a code. Any output produced before the
    failure can be passed along and ends up in the test output.
    """

    def __init__(self, msg: str, code: int, output: bytes = b""):
        super().__init__(msg, code)
        self.msg = msg
        self.code = code
        self.output = output

    def __str__(self) -> str:
        return f"{self.msg} (code {self.code})"


@dataclass
class TestCase:
    before: list[str]  # Blank and comment lines preceding the commands
    start_line: int  # Line of the first command
    commands: list[str] = field(default_factory=list)
    want_output: list[str] = field(default_factory=list)  # From the file
    got_output: Optional[list[str]] = None  # From execution, None if silent

    def add_command_line(self, line: str):
        self.commands.append(line[len(COMMAND_MARKER) :].strip())

    def write(self, f):
        """Write the case back in file format, preferring the new output."""
        write_lines(f, self.before)
        self.write_commands(f)
        output = self.got_output if self.got_output is not None else self.want_output
        write_lines(f, output)

    def write_commands(self, f):
        for command in self.commands:
            f.write(f"{COMMAND_MARKER} {command}\n")


@dataclass
class TestFile:
    filename: str
    cases: list[TestCase] = field(default_factory=list)
    suffix: list[str] = field(default_factory=list)  # Lines after the last case

    @property
    def name(self) -> str:
        """Test name: the filename without its extension."""
        if self.filename.endswith(TEST_FILE_EXT):
            return self.filename[: -len(TEST_FILE_EXT)]
        return self.filename

    @property
    def fixtures_dir(self) -> str:
        return self.name + FIXTURES_SUFFIX

    def add_case(self, case: TestCase) -> list[str]:
        """
        Split the collected output of case into the real output and a trailing
        run of blank and comment lines, store the case, and return that run.
        """
        keep = len(case.want_output)
        while keep > 0 and is_ignorable(case.want_output[keep - 1]):
            keep -= 1
        suffix = case.want_output[keep:]
        case.want_output = case.want_output[:keep]
        self.cases.append(case)
        return suffix

    def write(self, f):
        for case in self.cases:
            case.write(f)
        write_lines(f, self.suffix)


@dataclass
class FileResult:
    name: str
    filename: str
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.error is None


def is_ignorable(line: str) -> bool:
    """Blank lines and comments may surround test cases."""
    return line == "" or line.startswith(COMMENT_MARKER)


def write_lines(f, lines: list[str]):
    for line in lines:
        f.write(line)
        f.write("\n")


def sanitize_test_name(name: str) -> str:
    """Sanitize test name for use as directory name."""
    return re.sub(r"[^a-zA-Z0-9]", "_", name)


def get_terminal_width():
    """Get the terminal width, with fallback."""
    try:
        return os.get_terminal_size().columns
    except OSError:
        return 80  # fallback width if terminal size can't be determined


def print_horizontal_rule():
    """Print a horizontal rule spanning the terminal width."""
    width = get_terminal_width()
    print(f"{T.grey}{'─' * width}{T.clear}")


def print_with_left_border(text, border_char="│", border_color=None, text_color=None):
    """Print text with a left border, wrapping lines to terminal width."""
    width = get_terminal_width()
    border_prefix = f"{border_color or ''}{border_char}{T.clear} {text_color or ''}"
    content_width = max(width - len(border_char) - 1, 1)

    for line in text.split("\n"):
        if not line.strip():
            print(f"{border_prefix}{T.clear}")
        elif len(line) <= content_width:
            print(f"{border_prefix}{line}{T.clear}")
        else:
            while line:
                chunk = line[:content_width]
                line = line[content_width:]
                print(f"{border_prefix}{chunk}{T.clear}")


def print_log(message: str):
    """Default logger: command lines and their output, in grey."""
    print_with_left_border(
        message.rstrip("\n"), border_color=T.grey, text_color=T.grey
    )


def noop_log(message: str):
    pass


class Reader:
    def __init__(self, content: str):
        self.lines = content.split("\n")
        if self.lines and self.lines[-1] == "":
            # The text after the final newline is not a line.
            self.lines.pop()
        self.position = 0

    def consume(self) -> str:
        """Consume and return the next line, raises EOFError if at EOF"""
        if self.position >= len(self.lines):
            raise EOFError("Attempted to consume line at EOF")
        line = self.lines[self.position]
        self.position += 1
        return line.removesuffix("\r")

    def is_eof(self) -> bool:
        return self.position >= len(self.lines)

    def line_number(self) -> int:
        return self.position + 1


class ParseState(Enum):
    BEFORE_FIRST_COMMAND = "before_first_command"
    IN_COMMANDS = "in_commands"
    IN_OUTPUT = "in_output"


class Parser:
    """Line-oriented state machine turning the text of a .ct file into cases."""

    def __init__(self, content: str, filename: str = "<string>"):
        self.reader = Reader(content)
        self.test_file = TestFile(filename)

    def parse(self) -> TestFile:
        state = ParseState.BEFORE_FIRST_COMMAND
        case: Optional[TestCase] = None
        prefix: list[str] = []

        while not self.reader.is_eof():
            line_number = self.reader.line_number()
            line = self.reader.consume()
            is_command = line.startswith(COMMAND_MARKER)

            if state == ParseState.BEFORE_FIRST_COMMAND:
                if is_command:
                    case = TestCase(before=prefix, start_line=line_number)
                    case.add_command_line(line)
                    state = ParseState.IN_COMMANDS
                    continue
                line = line.strip()
                if not is_ignorable(line):
                    raise ParseError(
                        f"{self.test_file.filename}:{line_number}: bad line {line!r} "
                        f"(line must begin with a comment marker '{COMMENT_MARKER}')"
                    )
                prefix.append(line)

            elif state == ParseState.IN_COMMANDS:
                if is_command:
                    case.add_command_line(line)
                else:
                    # The end of the commands is the start of the output
                    case.want_output.append(line)
                    state = ParseState.IN_OUTPUT

            elif state == ParseState.IN_OUTPUT:
                if is_command:
                    prefix = self.test_file.add_case(case)
                    case = TestCase(before=prefix, start_line=line_number)
                    case.add_command_line(line)
                    state = ParseState.IN_COMMANDS
                else:
                    case.want_output.append(line)

        if case is not None:
            self.test_file.suffix = self.test_file.add_case(case)
        else:
            self.test_file.suffix = prefix
        return self.test_file


def parse(content: str, filename: str = "<string>") -> TestFile:
    """Parse the text of a test file."""
    return Parser(content, filename).parse()


def read_file(filename) -> TestFile:
    filename = os.fspath(filename)
    with open(filename, "r", encoding="utf-8", newline="") as f:
        content = f.read()
    return parse(content, filename)


def parse_command_line(line: str) -> tuple[str, bool, Optional[int]]:
    """
    Split a command line into the command, whether it must fail, and the exit
    code it must fail with (None if any failure will do).
    """
    i = line.rfind(FAIL_MARKER)
    if i < 0:
        return line, False, None

    command = line[:i]
    rest = line[i + len(FAIL_MARKER) :].strip()
    if not rest:
        return command, True, None
    if not EXIT_CODE_PATTERN.fullmatch(rest):
        raise CommandLineError(f"{rest!r} is not a valid FAIL exit code")
    want_exit_code = int(rest)
    if want_exit_code == 0:
        raise CommandLineError("cannot use 0 as a FAIL exit code")
    return command, True, want_exit_code


def expand_variables(s: str, lookup: Callable[[str], Optional[str]]) -> str:
    """
    Replace each "${VAR}" in s with lookup(VAR).

    Unlike os.path.expandvars, "$VAR" is left alone and an unknown variable is
    an error instead of being left in place. Substituted values are not
    expanded again.
    """
    parts = []
    pos = 0
    while True:
        match = VARIABLE_PATTERN.search(s, pos)
        if match is None:
            parts.append(s[pos:])
            return "".join(parts)
        name = match.group(1)
        value = lookup(name)
        if value is None:
            raise UndefinedVariableError(f"variable {name!r} not found")
        parts.append(s[pos : match.start()])
        parts.append(value)
        pos = match.end()


def _error_chain(err: BaseException) -> Iterator[BaseException]:
    # Only explicit "raise ... from" wrapping; an exception that merely
    # happened while handling another one does not inherit its code.
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def extract_exit_code(err: BaseException) -> Optional[int]:
    """
    Find an exit code in err or the exceptions it was raised from (its
    __cause__ chain).

    Process exit statuses win over OS error numbers, which win over
    ExitCodeError. Returns None if there is none.
    """
    chain = list(_error_chain(err))
    for e in chain:
        if isinstance(e, subprocess.CalledProcessError):
            return e.returncode
    for e in chain:
        if isinstance(e, OSError) and e.errno is not None:
            return e.errno
    for e in chain:
        if isinstance(e, ExitCodeError):
            return e.code
    return None


def describe_error(err: BaseException) -> str:
    if isinstance(err, OSError) and err.strerror and err.filename is None:
        return err.strerror
    return str(err)


def scrub(root_dir: str, output: str) -> str:
    """Replace the root directory in output with ${ROOTDIR}."""
    if not root_dir:
        return output
    output = output.replace(root_dir + os.sep, SCRUBBED_ROOT_DIR + os.sep)
    return output.replace(root_dir, SCRUBBED_ROOT_DIR)


def check_path(path: str):
    if "/" in path or "\\" in path:
        raise CommandUsageError(
            f"argument must be in the current directory ({path!r} has a '/')"
        )


def _os_error(op: str, path: str, err: OSError) -> OSError:
    return OSError(err.errno, f"{op} {path}: {err.strerror}")


def fixed_arg_builtin(
    nargs: int, func: Callable[[list[str]], Optional[bytes]]
) -> CommandFunc:
    def run(args: list[str], input_file: str) -> Optional[bytes]:
        if len(args) != nargs:
            raise CommandUsageError(f"need exactly {nargs} arguments")
        if input_file:
            raise CommandUsageError("input redirection not supported")
        return func(args)

    return run


def cd_cmd(args: list[str]) -> None:
    """cd DIR: change directory."""
    check_path(args[0])
    path = os.path.join(os.getcwd(), args[0])
    try:
        os.chdir(path)
    except OSError as e:
        raise _os_error("chdir", path, e) from None


def cat_cmd(args: list[str]) -> bytes:
    """cat FILE: copy file to output."""
    check_path(args[0])
    try:
        with open(args[0], "rb") as f:
            return f.read()
    except OSError as e:
        raise _os_error("open", args[0], e) from None


def mkdir_cmd(args: list[str]) -> None:
    """mkdir DIR: create directory."""
    check_path(args[0])
    try:
        os.mkdir(args[0], 0o700)
    except OSError as e:
        raise _os_error("mkdir", args[0], e) from None


def setenv_cmd(args: list[str]) -> None:
    """setenv VAR VALUE: set environment variable."""
    os.environ[args[0]] = args[1]


def _echo_text(args: list[str]) -> str:
    # A literal "\n" in the arguments becomes a newline.
    return " ".join(args).replace("\\n", "\n") + "\n"


def echo_cmd(args: list[str], input_file: str) -> bytes:
    """echo ARG1 ARG2 ...: write args to output."""
    if input_file:
        raise CommandUsageError("input redirection not supported")
    return _echo_text(args).encode()


def fecho_cmd(args: list[str], input_file: str) -> None:
    """fecho FILE ARG1 ARG2 ...: write args to FILE."""
    if len(args) < 1:
        raise CommandUsageError("need at least 1 argument")
    if input_file:
        raise CommandUsageError("input redirection not supported")
    check_path(args[0])
    try:
        with open(args[0], "w", encoding="utf-8", newline="") as f:
            f.write(_echo_text(args[1:]))
    except OSError as e:
        raise _os_error("open", args[0], e) from None


def builtin_commands() -> dict[str, CommandFunc]:
    return {
        "cat": fixed_arg_builtin(1, cat_cmd),
        "cd": fixed_arg_builtin(1, cd_cmd),
        "echo": echo_cmd,
        "fecho": fecho_cmd,
        "mkdir": fixed_arg_builtin(1, mkdir_cmd),
        "setenv": fixed_arg_builtin(2, setenv_cmd),
    }


def Program(path, *leading_args: str) -> CommandFunc:
    """
    Command that runs the executable at path and returns its combined output.

    A relative path is resolved against the current directory at the time
    Program is called. leading_args are passed before the arguments from the
    command line, which allows running scripts through an interpreter.
    """
    executable_path = os.path.abspath(path)

    def run(args: list[str], input_file: str) -> bytes:
        cmd_line = [executable_path, *leading_args, *args]
        if input_file:
            with open(input_file, "rb") as stdin:
                result = subprocess.run(
                    cmd_line,
                    stdin=stdin,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                )
        else:
            result = subprocess.run(
                cmd_line,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        if result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, cmd_line, output=result.stdout
            )
        return result.stdout

    return run


def TerminalProgram(
    path, *leading_args: str, timeout: float = TERMINAL_TIMEOUT
) -> CommandFunc:
    """
    Like Program, but runs the executable attached to a pseudo-terminal, for
    programs that behave differently when their output is a terminal.

    The input file, if any, is typed into the terminal, followed by end of
    file in every case. Terminal line endings are translated back to "\\n".
    A program still running after timeout seconds is killed and the command
    fails with ProgramError.
    """
    executable_path = os.path.abspath(path)

    def run(args: list[str], input_file: str) -> bytes:
        cmd_args = [*leading_args, *args]
        proc = pexpect.spawn(executable_path, cmd_args, timeout=timeout, echo=False)
        deadline = time.monotonic() + timeout
        try:
            if input_file:
                with open(input_file, "rb") as f:
                    proc.send(f.read())
            # End of file only takes effect at the start of a line, and a
            # reader may have to see it more than once, so repeat it until
            # the program exits.
            while True:
                if proc.isalive():
                    proc.sendeof()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProgramError(
                        f"timed out after {timeout} seconds",
                        output=_terminal_output(proc.before),
                    )
                index = proc.expect(
                    [pexpect.EOF, pexpect.TIMEOUT],
                    timeout=min(EOF_RETRY_INTERVAL, remaining),
                )
                if index == 0:
                    break
        except pexpect.ExceptionPexpect as e:
            raise ProgramError(
                f"lost the terminal: {e}", output=_terminal_output(proc.before)
            ) from e
        finally:
            proc.close(force=True)

        output = _terminal_output(proc.before)
        if proc.signalstatus is not None:
            exit_code = -proc.signalstatus
        else:
            exit_code = proc.exitstatus or 0
        if exit_code != 0:
            raise subprocess.CalledProcessError(
                exit_code, [executable_path, *cmd_args], output=output
            )
        return output

    return run


def _terminal_output(data: Optional[bytes]) -> bytes:
    return (data or b"").replace(b"\r\n", b"\n")


def _call_main(main: Callable[[], int]) -> int:
    try:
        return main() or 0
    except SystemExit as e:
        if e.code is None:
            return 0
        if isinstance(e.code, int):
            return e.code
        print(e.code, file=sys.stderr)
        return 1


def InProcessProgram(name: str, main: Callable[[], int]) -> CommandFunc:
    """
    Command that calls main, a function that behaves like a program's entry
    point but returns its exit code (raising SystemExit works too).

    While main runs, sys.argv is [name, *args], sys.stdin reads the input
    file if there is one, and sys.stdout and sys.stderr both write to a pipe
    whose contents become the output. The previous values are restored
    afterwards, however main exits. An exception escaping main fails the
    command like an uncaught exception fails a program: with exit code 1, the
    output printed so far, and the exception as __cause__.
    """

    def run(args: list[str], input_file: str) -> bytes:
        read_fd, write_fd = os.pipe()
        buf = io.BytesIO()
        done: "queue.Queue[Optional[OSError]]" = queue.Queue(maxsize=1)

        def copy_output():
            try:
                with os.fdopen(read_fd, "rb") as pipe:
                    shutil.copyfileobj(pipe, buf)
            except OSError as e:
                done.put(e)
            else:
                done.put(None)

        copier = threading.Thread(
            target=copy_output, name=f"{name}-output", daemon=True
        )
        copier.start()

        writer = os.fdopen(write_fd, "w", encoding="utf-8", errors="replace")
        saved = sys.argv, sys.stdin, sys.stdout, sys.stderr
        stdin = None
        crash = None
        try:
            if input_file:
                stdin = open(input_file, "r", encoding="utf-8")
                sys.stdin = stdin
            sys.argv = [name, *args]
            sys.stdout = sys.stderr = writer
            exit_code = _call_main(main)
        except Exception as e:
            crash = e
        finally:
            sys.argv, sys.stdin, sys.stdout, sys.stderr = saved
            if stdin is not None:
                stdin.close()
            writer.close()
            copy_error = done.get()

        if copy_error is not None:
            raise copy_error
        output = buf.getvalue()
        if crash is not None:
            raise ExitCodeError(
                f"{name} raised {type(crash).__name__}: {crash}", 1, output=output
            ) from crash
        if exit_code != 0:
            raise ExitCodeError(f"{name} failed", exit_code, output=output)
        return output

    return run


class AtomicFile:
    """
    A temporary file that ends up either replacing path or deleted.

    The file is created in the directory of path so that the final rename is
    atomic. Call close_atomically_replace() to install it; cleanup(), which
    also runs when used as a context manager, deletes it unless it was
    installed.
    """

    def __init__(self, path):
        self.path = os.fspath(path)
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, self.name = tempfile.mkstemp(
            prefix=f".{os.path.basename(self.path)}.", suffix=".tmp", dir=directory
        )
        self._file = os.fdopen(fd, "w", encoding="utf-8", newline="")
        self._done = False

    def __enter__(self) -> "AtomicFile":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()

    def write(self, s: str) -> int:
        return self._file.write(s)

    def cleanup(self):
        if self._done:
            return
        try:
            self._file.close()
        finally:
            os.remove(self.name)
            self._done = True

    def close_atomically_replace(self):
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        if os.path.exists(self.path):
            shutil.copymode(self.path, self.name)
        os.replace(self.name, self.path)
        self._done = True


class TestRunner:
    """Runs the files of a suite, comparing or updating their output."""

    def __init__(self, suite: "TestSuite", parallel: bool = False):
        self.suite = suite
        self.parallel = parallel

    @property
    def log(self) -> Logger:
        return noop_log if self.suite.disable_logging else print_log

    def run_file(self, test_file: TestFile, update: bool) -> FileResult:
        """Compare or update one file; errors are reported, not raised."""
        try:
            if update:
                self.update_file(test_file)
                error = None
            else:
                error = self.compare_file(test_file) or None
        except Exception as e:
            error = str(e)
        return FileResult(test_file.name, test_file.filename, error)

    def compare_file(self, test_file: TestFile) -> str:
        """Execute test_file and return a report of output mismatches."""
        self.execute_file(test_file, self.log)
        report = io.StringIO()
        for case in test_file.cases:
            got = case.got_output if case.got_output is not None else []
            if case.want_output == got:
                continue
            report.write(f"{test_file.filename}:{case.start_line}: want=-, got=+\n")
            case.write_commands(report)
            diff = difflib.unified_diff(
                case.want_output, got, fromfile="want", tofile="got", lineterm=""
            )
            report.write("\n".join(diff))
            report.write("\n")
        return report.getvalue()

    def update_file(self, test_file: TestFile):
        """Execute test_file and atomically rewrite it with the new output."""
        self.execute_file(test_file, noop_log)
        for case in test_file.cases:
            for line in case.got_output or []:
                if line.startswith(COMMAND_MARKER):
                    raise CmdTestError(
                        f"{test_file.filename}:{case.start_line}: output line "
                        f"{line!r} would be read back as a command"
                    )
        with AtomicFile(test_file.filename) as f:
            test_file.write(f)
            f.close_atomically_replace()

    def execute_file(self, test_file: TestFile, log: Logger):
        if self.parallel:
            self._setup(test_file, "")
            self._execute_cases(test_file, log)
            return

        base_name = os.path.basename(test_file.name)
        root_dir = os.path.realpath(
            tempfile.mkdtemp(prefix=f"cmdtest-{sanitize_test_name(base_name)}-")
        )
        if self.suite.keep_root_dirs:
            print(f"{test_file.filename}: test root directory: {root_dir}")
        old_cwd = os.getcwd()
        os.environ["ROOTDIR"] = root_dir
        try:
            if os.path.isdir(test_file.fixtures_dir):
                try:
                    copy_test_files(root_dir, test_file.fixtures_dir)
                except OSError as e:
                    raise SetupError(
                        f"{test_file.filename}: copying test files: {e}"
                    ) from e
            os.chdir(root_dir)
            self._setup(test_file, root_dir)
            self._execute_cases(test_file, log)
        finally:
            # Always restore original directory
            os.chdir(old_cwd)
            os.environ.pop("ROOTDIR", None)
            if not self.suite.keep_root_dirs:
                shutil.rmtree(root_dir, ignore_errors=True)

    def _setup(self, test_file: TestFile, root_dir: str):
        if self.suite.setup is None:
            return
        try:
            self.suite.setup(root_dir)
        except Exception as e:
            raise SetupError(f"{test_file.filename}: calling Setup: {e}") from e

    def _execute_cases(self, test_file: TestFile, log: Logger):
        # Execution stops at the first case that misbehaves
        for case in test_file.cases:
            self.execute_case(test_file, case, log)

    def execute_case(self, test_file: TestFile, case: TestCase, log: Logger):
        """
        Run the commands of case in order, collecting their output in
        case.got_output.

        Raises if a command line is malformed, names an unknown command or
        variable, or succeeds or fails differently than expected.
        """
        case.got_output = None
        all_output = bytearray()
        for i, command_line in enumerate(case.commands):
            location = f"{test_file.filename}:{case.start_line + i}"
            output = self.run_command(command_line, location, log)
            all_output += output

        if all_output:
            text = all_output.decode("utf-8", errors="replace")
            if not self.parallel:
                # Setup may have changed ROOTDIR
                text = scrub(os.environ.get("ROOTDIR", ""), text)
            case.got_output = text.rstrip(" \t\n").split("\n")

    def run_command(self, command_line: str, location: str, log: Logger) -> bytes:
        """Run one command line and return its output."""
        try:
            command, must_fail, want_exit_code = parse_command_line(command_line)
        except CommandLineError as e:
            raise CommandLineError(f"{location}: {e}") from None

        args = command.split()
        if not args:
            raise CommandLineError(f"{location}: empty command")
        try:
            args = [expand_variables(arg, os.environ.get) for arg in args]
        except UndefinedVariableError as e:
            raise UndefinedVariableError(f"{location}: {e}") from None

        log(f"{COMMAND_MARKER} {' '.join(args)}")
        name, args = args[0], args[1:]
        input_file = ""
        if len(args) >= 2 and args[-2] == "<":
            input_file = args[-1]
            args = args[:-2]
            if "/" in input_file or "\\" in input_file:
                raise CommandLineError(
                    f"{location}: input file {input_file!r} "
                    "must be in the current directory"
                )

        func = self.suite.commands.get(name)
        if func is None:
            raise UnknownCommandError(f"{location}: no such command {name!r}")

        error = None
        try:
            result = func(args, input_file)
        except ProgramError as e:
            if e.output:
                log(e.output.decode("utf-8", errors="replace"))
            raise ExpectationError(f'{location}: "{command}" {e}') from e
        except Exception as e:
            error = e
            result = getattr(e, "output", None)
        output = _output_bytes(result, location)
        if output:
            log(output.decode("utf-8", errors="replace"))

        if error is None and must_fail:
            raise ExpectationError(
                f'{location}: "{command}" succeeded, but it was expected to fail'
            )
        if error is not None and not must_fail:
            raise ExpectationError(
                f'{location}: "{command}" failed with {describe_error(error)}'
            ) from error
        if error is not None and want_exit_code is not None:
            got_exit_code = extract_exit_code(error)
            if got_exit_code is None:
                raise ExpectationError(
                    f'{location}: "{command}" failed without an exit code, '
                    "but one was expected"
                ) from error
            if got_exit_code != want_exit_code:
                raise ExpectationError(
                    f'{location}: "{command}" failed with exit code {got_exit_code}, '
                    f"but {want_exit_code} was expected"
                ) from error
        return output


def _output_bytes(output, location: str) -> bytes:
    # Commands return bytes; text (as from subprocess with text=True) is
    # accepted and encoded.
    if output is None:
        return b""
    if isinstance(output, str):
        return output.encode("utf-8")
    if isinstance(output, (bytes, bytearray, memoryview)):
        return bytes(output)
    raise CmdTestError(
        f"{location}: command output must be bytes or str, not "
        f"{type(output).__name__}"
    )


def copy_test_files(root_dir: str, fixtures_dir: str):
    """Copy the files (not subdirectories) of fixtures_dir into root_dir."""
    for entry in sorted(os.scandir(fixtures_dir), key=lambda e: e.name):
        if entry.is_file():
            shutil.copyfile(entry.path, os.path.join(root_dir, entry.name))


class TestSuite:
    """
    The test files of one directory, plus the commands they may use.

    Configure the suite (add commands, set setup and the flags) before running
    it; the configuration is shared by every file and must not change while a
    run is in progress.
    """

    def __init__(self, files: Optional[list[TestFile]] = None):
        self.files: list[TestFile] = files or []
        self.commands: dict[str, CommandFunc] = builtin_commands()
        # Called for each file with its root directory, after it has been made
        # the current directory.
        self.setup: Optional[Callable[[str], None]] = None
        # Don't delete the root directories; print their names instead.
        self.keep_root_dirs = False
        # Don't log commands and their output while comparing.
        self.disable_logging = False

    def run(self, update: bool = False, parallel: bool = False) -> list[FileResult]:
        """
        Run every file. Compare their output with the expected output, or with
        update, rewrite the files with the new output.

        Files normally run one at a time, each in its own temporary directory.
        With parallel they run concurrently in the current directory, ROOTDIR
        is neither set nor scrubbed, and they must not use cd or setenv.
        """
        runner = TestRunner(self, parallel=parallel)
        if not parallel:
            return [runner.run_file(tf, update) for tf in self.files]
        with ThreadPoolExecutor(max_workers=max(len(self.files), 1)) as executor:
            futures = [
                executor.submit(runner.run_file, tf, update) for tf in self.files
            ]
            return [future.result() for future in futures]

    def check(self, update: bool = False, parallel: bool = False):
        """Run the suite and raise AssertionError describing any failures."""
        failures = [r.error for r in self.run(update, parallel) if not r.passed]
        if failures:
            raise AssertionError("\n".join(failures))


def read(directory) -> TestSuite:
    """Read all the .ct files in directory into a TestSuite."""
    filenames = sorted(Path(directory).glob(f"*{TEST_FILE_EXT}"))
    return TestSuite([read_file(str(filename)) for filename in filenames])


def parse_command_spec(spec: str) -> tuple[str, str]:
    """Split a NAME=PATH command-line option."""
    name, sep, path = spec.partition("=")
    if not sep or not name or not path:
        raise argparse.ArgumentTypeError(f"expected NAME=PATH, got {spec!r}")
    return name, path


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(description="cmdtest golden-output test runner")
    parser.add_argument("directory", help="Directory containing .ct test files")
    parser.add_argument(
        "--update",
        action="store_true",
        help="Rewrite the test files with the actual output",
    )
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Run the files concurrently, without temporary directories",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print each command and its output",
    )
    parser.add_argument(
        "--keep-root-dirs",
        action="store_true",
        help="Keep the temporary directory of each file and print its name",
    )
    parser.add_argument(
        "--test",
        help="Run only files whose name contains this substring",
    )
    parser.add_argument(
        "--program",
        action="append",
        default=[],
        type=parse_command_spec,
        metavar="NAME=PATH",
        help="Make the executable at PATH available as command NAME",
    )
    parser.add_argument(
        "--terminal-program",
        action="append",
        default=[],
        type=parse_command_spec,
        metavar="NAME=PATH",
        help="Like --program, but run it attached to a pseudo-terminal",
    )
    args = parser.parse_args(argv)

    try:
        suite = read(args.directory)
    except ParseError as e:
        print(f"Parse error: {e}")
        sys.exit(1)
    except OSError as e:
        print(f"Cannot read test suite: {e}")
        sys.exit(1)

    for name, path in args.program:
        suite.commands[name] = Program(path)
    for name, path in args.terminal_program:
        suite.commands[name] = TerminalProgram(path)
    suite.keep_root_dirs = args.keep_root_dirs
    suite.disable_logging = not args.verbose
    if args.test:
        suite.files = [tf for tf in suite.files if args.test.lower() in tf.name.lower()]

    total = len(suite.files)
    print(f"{T.bold}{T.blue}cmdtest{T.clear}")
    print(f"Found {total} test files in {args.directory}")

    results = suite.run(update=args.update, parallel=args.parallel)

    failed = []
    for i, result in enumerate(results):
        print()
        print(f"{T.bold}{T.yellow}[{i + 1}/{total}] {result.name}{T.clear}")
        if result.passed:
            print(f"{T.bold}{T.green}{'UPDATED' if args.update else 'PASS'}{T.clear}")
        else:
            print_with_left_border(result.error.rstrip("\n"), border_color=T.red)
            print(f"{T.bold}{T.red}FAIL{T.clear}")
            failed.append(result)

    print()
    print_horizontal_rule()
    passed = total - len(failed)
    print(
        f"  {T.green}{passed} passed{T.clear}, "
        f"{T.red}{len(failed)} failed{T.clear} out of {total} files"
    )
    if failed:
        print(f"\n{T.bold}Failed files:{T.clear}")
        for result in failed:
            print(f"  {T.red}• {result.filename}{T.clear}")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
