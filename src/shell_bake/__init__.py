"""
Immutable, bakeable commands for running external processes.

Usage:
    from shell_bake import sh, Env, Opts

    # Every call with modifiers returns a new command; nothing is mutated
    git = sh("git", Env(GIT_PAGER="cat"), Opts(cwd="/src/project"))
    log = git("log", "--oneline")

    # An empty call runs the command and raises FailureExitCode on a bad exit
    git("fetch")()

    # Capture output
    print(log.output())

    # Piping with | operator
    count = (sh("printf", "a\\nb\\n") | sh("wc", "-l")).output()

    # Accept other exit codes
    sh("grep", "-q", "needle", "haystack.txt", Opts(ok_exit=[0, 1])).run()

    # Background execution
    proc = sh("sleep", "5").start()
    proc.wait()
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Optional, Union

from shell_bake import streams
from shell_bake.errors import (
    FailureExitCode,
    LaunchError,
    PipingNotImplemented,
    ShellBakeError,
    TimeoutExpired,
    UnrecognizedModifier,
    UnsupportedStreamBinding,
)
from shell_bake.streams import chunks, lines

__version__ = "0.1.0"

__all__ = [
    "Cmd",
    "cmd",
    "sh",
    "Template",
    "Opts",
    "Env",
    "ClearEnv",
    "CLEAR_ENV",
    "DEFAULT_ENV",
    "DEFAULT_IO",
    "RunningCommand",
    "ShellBakeError",
    "UnrecognizedModifier",
    "UnsupportedStreamBinding",
    "PipingNotImplemented",
    "LaunchError",
    "FailureExitCode",
    "TimeoutExpired",
    "chunks",
    "lines",
    "run",
    "output",
    "__version__",
]

logger = logging.getLogger(__name__)

#: Environment of the host process, captured once at import.
DEFAULT_ENV: Mapping[str, str] = MappingProxyType(dict(os.environ))

#: Seconds run() waits for a killed command to be reaped after a timeout.
REAP_TIMEOUT = 1.0


class Env(dict):
    """Environment overlay. A value of "" removes the variable instead of setting it."""


class ClearEnv:
    """Modifier that empties the environment. Pass the class or ``CLEAR_ENV``."""

    def __repr__(self) -> str:
        return "CLEAR_ENV"


CLEAR_ENV = ClearEnv()


def _ok_exit_tuple(codes: Union[int, Iterable[int]]) -> tuple[int, ...]:
    if isinstance(codes, int):
        codes = [codes]
    ordered: list[int] = []
    for code in codes:
        if code not in ordered:
            ordered.append(int(code))
    return tuple(ordered)


@dataclass(frozen=True)
class Opts:
    """
    Execution options, baked field by field.

    Only fields that are set (a non-empty cwd, a non-None stream or ok_exit)
    override the command's current options when baked; unset fields leave
    them alone. A baked cwd therefore cannot be reset to "inherit" later.

    Attributes:
        cwd: Working directory. Empty means inherit.
        stdin: Input binding (see ``shell_bake.streams``), or another Cmd
               whose output is piped in.
        stdout: Output binding.
        stderr: Error binding. If it is the same object as stdout, both
                streams share one pipe and keep their write order.
        ok_exit: Exit codes treated as success. Defaults to (0,) when never
                 set; an empty sequence means no code is accepted.
    """
    cwd: Union[str, "os.PathLike[str]"] = ""
    stdin: Any = None
    stdout: Any = None
    stderr: Any = None
    ok_exit: Optional[tuple[int, ...]] = None

    # Bindings such as bytearray are unhashable
    __hash__ = None  # type: ignore[assignment]

    def __post_init__(self):
        object.__setattr__(self, "cwd", os.fspath(self.cwd) if self.cwd else "")
        if self.ok_exit is not None:
            object.__setattr__(self, "ok_exit", _ok_exit_tuple(self.ok_exit))

    def overlay(self, other: "Opts") -> "Opts":
        """Return a copy with the set fields of ``other`` applied."""
        changes: dict[str, Any] = {}
        if other.cwd:
            changes["cwd"] = other.cwd
        for name in ("stdin", "stdout", "stderr", "ok_exit"):
            value = getattr(other, name)
            if value is not None:
                changes[name] = value
        return replace(self, **changes)


#: Binds a command to this process's own standard streams.
DEFAULT_IO = Opts(stdin=sys.stdin, stdout=sys.stdout, stderr=sys.stderr)

Modifier = Union[str, "os.PathLike[str]", Mapping[str, str], ClearEnv, type, Opts]


@dataclass(frozen=True)
class Template:
    """Everything needed to launch one process. Baking returns a new Template."""
    program: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    opts: Opts = field(default_factory=lambda: Opts(ok_exit=(0,)))

    __hash__ = None  # type: ignore[assignment]

    def __post_init__(self):
        # Each template gets its own read-only copy of the environment
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def ok_exit(self) -> tuple[int, ...]:
        return (0,) if self.opts.ok_exit is None else self.opts.ok_exit

    def bake(self, modifier: Modifier) -> "Template":
        """Apply a single modifier to a copy of this template."""
        if isinstance(modifier, os.PathLike):
            modifier = os.fspath(modifier)
        if isinstance(modifier, str):
            return replace(self, args=self.args + (modifier,))
        if isinstance(modifier, Opts):
            return replace(self, opts=self.opts.overlay(modifier))
        if modifier is ClearEnv or isinstance(modifier, ClearEnv):
            return replace(self, env={})
        if isinstance(modifier, Mapping):
            items = list(modifier.items())
            for key, value in items:
                if not isinstance(key, str) or not isinstance(value, str):
                    raise UnrecognizedModifier(modifier)
            env = dict(self.env)
            for key, value in items:
                if value == "":
                    env.pop(key, None)
                else:
                    env[key] = value
            return replace(self, env=env)
        raise UnrecognizedModifier(modifier)


class Cmd:
    """
    A command that can be baked further, started, or run.

    Calling a Cmd with modifiers returns a new Cmd:
        str             appended to the arguments
        Env / Mapping   merged into the environment ("" deletes a key)
        CLEAR_ENV       empties the environment
        Opts            overlays the execution options

    Calling it with no arguments runs it (same as ``run()``) and returns None.

    Examples:
        sh("echo")("hello")()
        sh("ls", "-la", Opts(cwd="/tmp")).output()
        (sh("cat", "file.txt") | sh("grep", "pattern")).output()
    """

    def __init__(
        self,
        program: Union[str, "os.PathLike[str]"],
        *modifiers: Modifier,
        env: Optional[Mapping[str, str]] = None,
    ):
        """
        Create a command.

        Args:
            program: Executable name or path.
            *modifiers: Modifiers baked in right away.
            env: Environment snapshot to start from. Defaults to DEFAULT_ENV.
        """
        template = Template(
            program=os.fspath(program),
            env=DEFAULT_ENV if env is None else env,
        )
        for modifier in modifiers:
            template = template.bake(modifier)
        self._template = template

    @classmethod
    def from_template(cls, template: Template) -> "Cmd":
        result = cls.__new__(cls)
        result._template = template
        return result

    @property
    def template(self) -> Template:
        return self._template

    @property
    def program(self) -> str:
        return self._template.program

    @property
    def args(self) -> tuple[str, ...]:
        return self._template.args

    @property
    def env(self) -> Mapping[str, str]:
        return self._template.env

    @property
    def opts(self) -> Opts:
        return self._template.opts

    def __call__(self, *modifiers: Modifier) -> Optional["Cmd"]:
        if not modifiers:
            self.run()
            return None
        return self.bake(*modifiers)

    def bake(self, *modifiers: Modifier) -> "Cmd":
        """Return a new Cmd with the modifiers applied in order."""
        template = self._template
        for modifier in modifiers:
            template = template.bake(modifier)
        return Cmd.from_template(template)

    def bake_args(self, *args: str) -> "Cmd":
        for arg in args:
            if not isinstance(arg, (str, os.PathLike)):
                raise UnrecognizedModifier(arg)
        return self.bake(*args)

    def bake_env(self, env: Optional[Mapping[str, str]] = None, **variables: str) -> "Cmd":
        return self.bake(Env(env or {}, **variables))

    def clear_env(self) -> "Cmd":
        return self.bake(CLEAR_ENV)

    def bake_opts(self, *opts: Opts) -> "Cmd":
        for opt in opts:
            if not isinstance(opt, Opts):
                raise UnrecognizedModifier(opt)
        return self.bake(*opts)

    def __or__(self, other: "Cmd") -> "Cmd":
        """
        Pipe this command's stdout into another command's stdin.

        Usage: sh("ls") | sh("grep", "foo")
        """
        if not isinstance(other, Cmd):
            return NotImplemented
        return other.bake_opts(Opts(stdin=self))

    def start(self) -> "RunningCommand":
        """
        Start the command without waiting for it.

        Raises:
            UnsupportedStreamBinding: An endpoint could not be resolved.
            PipingNotImplemented: A piped upstream already has its stdout bound.
            LaunchError: The process could not be spawned.
        """
        return _spawn(self)

    def run(self, timeout: Optional[float] = None) -> None:
        """
        Start the command and wait for it to finish.

        Every stage of a pipeline is checked against its own ok_exit, upstream
        stages first. On timeout the whole pipeline is killed.

        Raises:
            FailureExitCode: A stage exited with a code outside its ok_exit.
            TimeoutExpired: The command ran longer than ``timeout`` seconds.
        """
        running = self.start()
        try:
            running.wait(timeout)
        except TimeoutExpired:
            running.kill()
            try:
                running.wait(REAP_TIMEOUT)
            except TimeoutExpired:
                # A grandchild still holds the pipe; leave its pump behind
                logger.debug("%s: output still open after kill", self.program)
            raise

        for stage in running.stages():
            template = stage.command.template
            if stage.exit_code not in template.ok_exit:
                logger.debug(
                    "%s exited with %s, accepted %s",
                    template.program, stage.exit_code, template.ok_exit,
                )
                raise FailureExitCode(template.program, stage.exit_code, template.ok_exit)

    def output(self, timeout: Optional[float] = None) -> str:
        """
        Run the command and return what it wrote to stdout.

        Overrides any previously bound stdout; stderr is left as configured.
        """
        buf = bytearray()
        return self._capture(Opts(stdout=buf), buf, timeout)

    def combined_output(self, timeout: Optional[float] = None) -> str:
        """Same as output(), but stderr is captured into the same buffer."""
        buf = bytearray()
        return self._capture(Opts(stdout=buf, stderr=buf), buf, timeout)

    def _capture(self, opts: Opts, buf: bytearray, timeout: Optional[float]) -> str:
        try:
            self.bake_opts(opts).run(timeout)
        except FailureExitCode as exc:
            exc.output = buf.decode(streams.ENCODING, errors="replace")
            raise
        return buf.decode(streams.ENCODING, errors="replace")

    async def run_async(self, timeout: Optional[float] = None) -> None:
        """Run in a worker thread so the event loop keeps going."""
        await asyncio.to_thread(self.run, timeout)

    async def output_async(self, timeout: Optional[float] = None) -> str:
        return await asyncio.to_thread(self.output, timeout)

    async def combined_output_async(self, timeout: Optional[float] = None) -> str:
        return await asyncio.to_thread(self.combined_output, timeout)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Cmd):
            return NotImplemented
        return self._template == other._template

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        if isinstance(self.opts.stdin, Cmd):
            return f"{self.opts.stdin!r} | Cmd({self._template.argv!r})"
        return f"Cmd({self._template.argv!r})"


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class RunningCommand:
    """
    Handle on a started command.

    Owns the process, the threads servicing its pipes, and, when its stdin
    is piped from another command, that upstream handle as well.
    """

    def __init__(
        self,
        command: Cmd,
        process: subprocess.Popen,
        pumps: list[streams.Pump],
        upstream: Optional["RunningCommand"] = None,
    ):
        self.command = command
        self.process = process
        self.upstream = upstream
        self.start_time = time.time()
        self.exit_code: Optional[int] = None
        self._pumps = pumps

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def program(self) -> str:
        return self.command.program

    @property
    def done(self) -> bool:
        """True once wait() has observed the exit."""
        return self.exit_code is not None

    def poll(self) -> Optional[int]:
        """Return the exit code if the process has exited, without blocking."""
        return self.process.poll()

    def stages(self) -> Iterator["RunningCommand"]:
        """Yield every handle of the pipeline, upstream first."""
        if self.upstream is not None:
            yield from self.upstream.stages()
        yield self

    @property
    def exit_codes(self) -> list[Optional[int]]:
        return [stage.exit_code for stage in self.stages()]

    def wait(self, timeout: Optional[float] = None) -> int:
        """
        Block until the process and any upstream stages have exited.

        Output pumps are drained before the exit code is recorded, so bound
        buffers are complete once this returns.

        Returns:
            This stage's exit code.

        Raises:
            TimeoutExpired: Still running after ``timeout`` seconds. The
                            process is left running.
        """
        if self.exit_code is not None:
            return self.exit_code

        deadline = None if timeout is None else time.monotonic() + timeout
        if self.upstream is not None:
            self.upstream.wait(_remaining(deadline))

        try:
            self.process.wait(timeout=_remaining(deadline))
        except subprocess.TimeoutExpired:
            raise TimeoutExpired(self.program, timeout) from None

        for pump in self._pumps:
            # Input pumps may block on a source that never ends; don't wait on them
            if pump.is_input:
                continue
            pump.join(_remaining(deadline))
            if pump.is_alive():
                raise TimeoutExpired(self.program, timeout)
        for pump in self._pumps:
            if not pump.is_alive():
                pump.check()

        self.exit_code = self.process.returncode
        logger.debug(
            "%s (pid %s) exited with %s after %.3fs",
            self.program, self.pid, self.exit_code, time.time() - self.start_time,
        )
        return self.exit_code

    async def wait_async(self, timeout: Optional[float] = None) -> int:
        return await asyncio.to_thread(self.wait, timeout)

    def kill(self) -> None:
        """Send SIGKILL to every stage."""
        for stage in self.stages():
            try:
                stage.process.kill()
            except OSError:
                pass  # Already dead

    def terminate(self) -> None:
        """Send SIGTERM to every stage."""
        for stage in self.stages():
            try:
                stage.process.terminate()
            except OSError:
                pass  # Already dead

    def __repr__(self) -> str:
        state = "running" if self.exit_code is None else f"exited({self.exit_code})"
        return f"RunningCommand({self.command.template.argv!r}, pid={self.pid}, {state})"


def _spawn(command: Cmd, pipe_stdout: bool = False) -> RunningCommand:
    """Resolve a command's endpoints and start it, along with any piped upstream."""
    template = command.template
    opts = template.opts

    upstream: Optional[RunningCommand] = None
    if isinstance(opts.stdin, Cmd):
        if opts.stdin.opts.stdout is not None:
            raise PipingNotImplemented(
                f"Cannot pipe {opts.stdin.program!r} into {template.program!r}: "
                f"its stdout is already bound to {opts.stdin.opts.stdout!r}"
            )
        upstream = _spawn(opts.stdin, pipe_stdout=True)
        stdin = streams.Endpoint(upstream.process.stdout)
    else:
        stdin = streams.resolve_input(opts.stdin)

    try:
        if pipe_stdout:
            stdout = streams.Endpoint(subprocess.PIPE)
        else:
            stdout = streams.resolve_output(opts.stdout, "stdout")
        if opts.stderr is not None and opts.stderr is opts.stdout:
            stderr = streams.Endpoint(subprocess.STDOUT)
        else:
            stderr = streams.resolve_output(opts.stderr, "stderr")

        try:
            process = subprocess.Popen(
                template.argv,
                stdin=stdin.target,
                stdout=stdout.target,
                stderr=stderr.target,
                env=dict(template.env),
                cwd=opts.cwd or None,
            )
        except OSError as exc:
            raise LaunchError(template.program, exc) from exc
    except BaseException:
        if upstream is not None:
            upstream.kill()
            upstream.wait()
        raise

    logger.debug(
        "started %s (pid %s, cwd %s)", template.argv, process.pid, opts.cwd or "."
    )
    if upstream is not None:
        # Only the child should hold the read end now
        upstream.process.stdout.close()
        logger.debug("piping %s into %s", upstream.program, template.program)

    pumps = []
    for name, endpoint, pipe in (
        ("stdin", stdin, process.stdin),
        ("stdout", stdout, process.stdout),
        ("stderr", stderr, process.stderr),
    ):
        pump = endpoint.start(f"{template.program}-{name}", pipe)
        if pump is not None:
            pumps.append(pump)

    return RunningCommand(command, process, pumps, upstream)


# Convenient aliases
cmd = Cmd
sh = Cmd


def run(program: str, *modifiers: Modifier, **kwargs: Any) -> None:
    """
    Convenience function to build and run a command in one go.

    Usage:
        run("make", "all")
        run("grep", "-q", "x", "f", Opts(ok_exit=[0, 1]), timeout=5)
    """
    Cmd(program, *modifiers).run(**kwargs)


def output(program: str, *modifiers: Modifier, **kwargs: Any) -> str:
    """
    Convenience function to run a command and return its stdout.

    Usage:
        version = output("git", "--version")
    """
    return Cmd(program, *modifiers).output(**kwargs)
