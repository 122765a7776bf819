"""Exceptions raised while baking, starting and running commands."""

from __future__ import annotations

from typing import Any, Optional


class ShellBakeError(Exception):
    """Base class for all shell_bake errors."""


class UnrecognizedModifier(ShellBakeError, TypeError):
    """Raised when a command is called with a modifier it does not understand."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            f"Unrecognized command modifier of type {type(value).__name__}: {value!r}"
        )


class UnsupportedStreamBinding(ShellBakeError, TypeError):
    """Raised at start time when an input/output endpoint cannot be resolved."""

    def __init__(self, stream: str, value: Any):
        self.stream = stream
        self.value = value
        super().__init__(
            f"Cannot bind {type(value).__name__} as {stream}: {value!r}"
        )


class PipingNotImplemented(ShellBakeError):
    """Raised when a piped upstream command already has its output bound elsewhere."""


class LaunchError(ShellBakeError):
    """Raised when the process could not be spawned at all."""

    def __init__(self, program: str, cause: OSError):
        self.program = program
        self.cause = cause
        super().__init__(f"Failed to launch {program!r}: {cause}")


class FailureExitCode(ShellBakeError):
    """Raised when a command exits with a code outside its accepted set."""

    def __init__(self, program: str, code: int, ok_exit: tuple[int, ...] = (0,)):
        self.program = program
        self.code = code
        self.ok_exit = ok_exit
        # Captured text, filled in by output()/combined_output()
        self.output: Optional[str] = None
        super().__init__(
            f"Command {program!r} exited with code {code} "
            f"(accepted: {', '.join(map(str, ok_exit)) or 'none'})"
        )


class TimeoutExpired(ShellBakeError):
    """Raised when waiting on a command takes longer than the given timeout."""

    def __init__(self, program: str, timeout: Optional[float]):
        self.program = program
        self.timeout = timeout
        super().__init__(f"Command {program!r} timed out after {timeout}s")
