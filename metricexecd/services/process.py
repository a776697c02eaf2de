"""Coprocess spawning and termination helpers."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import functools
import logging
import os
import subprocess
from asyncio.subprocess import Process
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import cast

import psutil

from ..config.logging import CoprocessLogAdapter
from ..const import PROCESS_KILL_WAIT_TIMEOUT
from .base import ProcessorStartError

logger = logging.getLogger("metricexecd.process")


class CoprocessInput(asyncio.Protocol):
    """Write end of the coprocess stdin pipe.

    Payloads go to the descriptor with ``os.write``; only the tail of a short
    write is handed to the transport buffer. Once the child stops reading
    (EPIPE, or the transport reporting the pipe closed) every later
    ``write`` and ``drain`` raises ``BrokenPipeError``.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._loop = asyncio.get_running_loop()
        self._transport: asyncio.WriteTransport | None = None
        self._paused = False
        self._drain_waiter: asyncio.Future[None] | None = None
        self._closed: asyncio.Future[None] = self._loop.create_future()
        self._close_requested = False
        self._error: OSError | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = cast(asyncio.WriteTransport, transport)

    def connection_lost(self, exc: Exception | None) -> None:
        if self._error is None and not self._close_requested:
            if isinstance(exc, OSError):
                self._error = exc
            else:
                self._error = BrokenPipeError(errno.EPIPE, "coprocess closed its input")
        self._wake(self._error)
        if not self._closed.done():
            self._closed.set_result(None)

    def pause_writing(self) -> None:
        self._paused = True

    def resume_writing(self) -> None:
        self._paused = False
        self._wake(None)

    def is_closing(self) -> bool:
        return self._transport is None or self._transport.is_closing()

    def write(self, data: bytes) -> None:
        transport = self._usable_transport()
        if transport.get_write_buffer_size() == 0:
            try:
                written = os.write(self._fd, data)
            except BlockingIOError:
                written = 0
            except OSError as exc:
                self._error = exc
                transport.abort()
                raise
            data = data[written:]
        if data:
            transport.write(data)

    async def drain(self) -> None:
        self._usable_transport()
        if not self._paused:
            return
        if self._drain_waiter is None:
            self._drain_waiter = self._loop.create_future()
        await self._drain_waiter

    def close(self) -> None:
        self._close_requested = True
        if self._transport is not None and not self._transport.is_closing():
            self._transport.close()

    def abort(self) -> None:
        self._close_requested = True
        if self._transport is not None and not self._transport.is_closing():
            self._transport.abort()

    async def wait_closed(self) -> None:
        await asyncio.shield(self._closed)

    def _usable_transport(self) -> asyncio.WriteTransport:
        if self._error is not None:
            raise BrokenPipeError(errno.EPIPE, f"coprocess input is broken: {self._error}")
        if self._transport is None or self._transport.is_closing():
            raise BrokenPipeError(errno.EPIPE, "coprocess input is closed")
        return self._transport

    def _wake(self, exc: Exception | None) -> None:
        waiter = self._drain_waiter
        self._drain_waiter = None
        if waiter is None or waiter.done():
            return
        if exc is None:
            waiter.set_result(None)
        else:
            waiter.set_exception(exc)


async def open_coprocess_input(fd: int) -> CoprocessInput:
    """Attach a CoprocessInput to the write end *fd* of a pipe; takes ownership of *fd*."""
    loop = asyncio.get_running_loop()
    pipe = os.fdopen(fd, "wb", buffering=0)
    try:
        _, protocol = await loop.connect_write_pipe(functools.partial(CoprocessInput, fd), pipe)
    except BaseException:
        pipe.close()
        raise
    return protocol


@dataclass(eq=False)
class CoprocessHandle:
    """One spawned child, its input pipe and the tasks bound to its streams."""

    generation: int
    process: Process
    command: tuple[str, ...]
    stdin: CoprocessInput | None = None
    tasks: dict[str, asyncio.Task[None]] = field(default_factory=dict)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def program(self) -> str:
        return os.path.basename(self.command[0]) if self.command else "coprocess"

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def __str__(self) -> str:
        return f"{self.program}[{self.pid}]"

    def bind_logger(self, base: logging.Logger) -> CoprocessLogAdapter:
        """Return *base* stamped with this child's generation, pid and program."""
        return CoprocessLogAdapter(base, {"generation": self.generation, "pid": self.pid, "program": self.program})


def build_environment(overrides: Sequence[str], base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Merge ``KEY=VALUE`` assignments over the inherited environment."""
    env = dict(os.environ if base is None else base)
    for assignment in overrides:
        key, sep, value = assignment.partition("=")
        if not sep or not key:
            raise ValueError(f"invalid environment assignment {assignment!r}")
        env[key] = value
    return env


async def spawn_coprocess(
    command: Sequence[str],
    environment: Mapping[str, str],
    *,
    generation: int,
    limit: int,
) -> CoprocessHandle:
    """Start *command* with its stdin on a pipe owned by the returned handle."""
    if not command:
        raise ProcessorStartError("no command configured")
    read_fd, write_fd = os.pipe()
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=read_fd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=dict(environment),
            limit=limit,
        )
    except OSError as exc:
        os.close(write_fd)
        raise ProcessorStartError(f"failed to start {command[0]!r}: {exc}") from exc
    finally:
        os.close(read_fd)

    try:
        stdin = await open_coprocess_input(write_fd)
    except OSError as exc:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise ProcessorStartError(f"failed to attach input of {command[0]!r}: {exc}") from exc
    handle = CoprocessHandle(generation=generation, process=proc, command=tuple(command), stdin=stdin)
    handle.bind_logger(logger).info("Started coprocess %s (generation %d)", handle, generation)
    return handle


async def terminate_process_tree(proc: Process, *, timeout: float = PROCESS_KILL_WAIT_TIMEOUT) -> None:
    """Terminate *proc* and its descendants, escalating to SIGKILL after *timeout*.

    The direct child is signalled and awaited through asyncio so that the
    event loop stays the only code reaping it.
    """
    if proc.returncode is not None:
        return
    descendants = await asyncio.to_thread(_collect_descendants, proc.pid)
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    if descendants:
        await asyncio.to_thread(_terminate_processes, descendants, timeout)
    try:
        async with asyncio.timeout(timeout):
            await proc.wait()
    except TimeoutError:
        logger.warning("Process %d ignored SIGTERM; killing", proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


def _collect_descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def _terminate_processes(targets: list[psutil.Process], timeout: float) -> None:
    for target in targets:
        try:
            target.terminate()
        except psutil.Error:
            continue

    try:
        _, alive = psutil.wait_procs(targets, timeout=max(0.1, timeout))
    except psutil.Error:
        alive = targets
    if not alive:
        return

    for target in alive:
        try:
            target.kill()
        except psutil.Error:
            continue

    try:
        psutil.wait_procs(alive, timeout=max(0.1, timeout))
    except psutil.Error:
        return


__all__ = [
    "CoprocessHandle",
    "CoprocessInput",
    "build_environment",
    "open_coprocess_input",
    "spawn_coprocess",
    "terminate_process_tree",
]
