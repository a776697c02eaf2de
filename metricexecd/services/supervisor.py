"""Coprocess lifecycle supervision.

The supervisor owns exactly one CoprocessHandle at a time. For each handle it
runs three I/O tasks (feeder, output drain, diagnostic drain) and watches the
process from its own task. When the child exits without a stop request the
handle is torn down as a unit and, after ``restart_delay``, replaced by a
freshly spawned one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import tenacity
from transitions import Machine

from ..const import DEFAULT_STREAM_LIMIT_BYTES, DRAIN_JOIN_TIMEOUT
from ..state.queues import MetricQueue
from ..state.stats import ProcessorStats
from ..state.tracking import DeliveryTracker
from .base import CoprocessWriteError, ProcessorStartError, ProcessorStateError
from .drain import DiagnosticDrain, OutputDrain
from .feeder import InputFeeder
from .process import CoprocessHandle, spawn_coprocess, terminate_process_tree

logger = logging.getLogger("metricexecd.supervisor")


class _RestartAborted(Exception):
    """Shutdown was requested while waiting to respawn."""


class ProcessSupervisor:
    """Spawns, watches and restarts the coprocess."""

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        fsm_state: str
        begin: Callable[[], bool]
        crash: Callable[[], bool]
        recover: Callable[[], bool]
        shutdown: Callable[[], bool]
        halt: Callable[[], bool]

    # FSM States
    STATE_STOPPED = "stopped"
    STATE_RUNNING = "running"
    STATE_RESTARTING = "restarting"
    STATE_STOPPING = "stopping"

    def __init__(
        self,
        *,
        command: Sequence[str],
        environment: Mapping[str, str],
        restart_delay: float,
        stop_grace_period: float,
        queue: MetricQueue,
        feeder: InputFeeder,
        drain: OutputDrain,
        diagnostics: DiagnosticDrain,
        tracker: DeliveryTracker,
        stats: ProcessorStats,
        stream_limit: int = DEFAULT_STREAM_LIMIT_BYTES,
    ) -> None:
        self._command = tuple(command)
        self._environment = dict(environment)
        self._restart_delay = restart_delay
        self._stop_grace_period = stop_grace_period
        self._stream_limit = stream_limit
        self._queue = queue
        self._feeder = feeder
        self._drain = drain
        self._diagnostics = diagnostics
        self._tracker = tracker
        self._stats = stats

        self._handle: CoprocessHandle | None = None
        self._generation = 0
        self._stop_requested = asyncio.Event()
        self._stop_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_STOPPED,
                self.STATE_RUNNING,
                self.STATE_RESTARTING,
                self.STATE_STOPPING,
            ],
            initial=self.STATE_STOPPED,
            model_attribute="fsm_state",
            auto_transitions=False,
            ignore_invalid_triggers=True,
            after_state_change=self._publish_state,
        )
        self.state_machine.add_transition("begin", self.STATE_STOPPED, self.STATE_RUNNING)
        self.state_machine.add_transition("crash", self.STATE_RUNNING, self.STATE_RESTARTING)
        self.state_machine.add_transition("recover", self.STATE_RESTARTING, self.STATE_RUNNING)
        self.state_machine.add_transition(
            "shutdown", [self.STATE_RUNNING, self.STATE_RESTARTING], self.STATE_STOPPING
        )
        self.state_machine.add_transition("halt", self.STATE_STOPPING, self.STATE_STOPPED)

    @property
    def lifecycle(self) -> str:
        return self.fsm_state

    @property
    def handle(self) -> CoprocessHandle | None:
        return self._handle

    @property
    def restart_delay(self) -> float:
        return self._restart_delay

    async def start(self) -> None:
        if self.fsm_state != self.STATE_STOPPED:
            raise ProcessorStateError(f"cannot start while {self.fsm_state}")
        self._stop_requested = asyncio.Event()
        handle = await self._spawn()
        self.begin()
        self._attach(handle)
        self._task = asyncio.create_task(self._supervise(), name="execd-supervisor")

    async def stop(self) -> None:
        async with self._stop_lock:
            if self.fsm_state == self.STATE_STOPPED:
                return
            logger.info("Stopping coprocess supervisor (state=%s)", self.fsm_state)
            self._stop_requested.set()
            self.shutdown()
            await self._queue.close()

            task = self._task
            if task is not None:
                try:
                    async with asyncio.timeout(self._stop_grace_period):
                        await asyncio.shield(task)
                except TimeoutError:
                    handle = self._handle
                    if handle is not None and handle.returncode is None:
                        handle.bind_logger(logger).warning(
                            "Coprocess %s did not exit within %.1fs; terminating",
                            handle,
                            self._stop_grace_period,
                        )
                        self._stats.incr("forced_kills")
                        await terminate_process_tree(handle.process)
                    await task
            self._task = None
            self.halt()
            logger.info("Coprocess supervisor stopped")

    async def _spawn(self) -> CoprocessHandle:
        self._generation += 1
        try:
            return await spawn_coprocess(
                self._command,
                self._environment,
                generation=self._generation,
                limit=self._stream_limit,
            )
        except ProcessorStartError:
            self._stats.incr("spawn_failures")
            raise

    def _attach(self, handle: CoprocessHandle) -> None:
        self._handle = handle
        self._stats.generation = handle.generation
        self._stats.pid = handle.pid
        suffix = f"{handle.generation}"
        handle.tasks["feeder"] = asyncio.create_task(self._feeder.run(handle), name=f"execd-feeder-{suffix}")
        handle.tasks["drain"] = asyncio.create_task(self._drain.run(handle), name=f"execd-drain-{suffix}")
        handle.tasks["diagnostics"] = asyncio.create_task(
            self._diagnostics.run(handle), name=f"execd-stderr-{suffix}"
        )

    async def _supervise(self) -> None:
        handle = self._handle
        try:
            while handle is not None:
                await self._watch(handle)
                await self._teardown(handle)
                if self._stop_requested.is_set():
                    break
                self._stats.incr("restarts")
                self.crash()
                handle = await self._restart()
        finally:
            self._handle = None
            self._stats.pid = None

    async def _watch(self, handle: CoprocessHandle) -> None:
        log = handle.bind_logger(logger)
        exit_task = asyncio.create_task(handle.process.wait(), name=f"execd-wait-{handle.generation}")
        watched: set[asyncio.Task[Any]] = {exit_task, handle.tasks["feeder"], handle.tasks["drain"]}
        try:
            while not exit_task.done():
                done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
                for task in done - {exit_task}:
                    watched.discard(task)
                    exc = None if task.cancelled() else task.exception()
                    if exc is not None:
                        log.error("%s of %s failed (%s); terminating", task.get_name(), handle, exc)
                        await terminate_process_tree(handle.process)
            returncode = exit_task.result()
        finally:
            if not exit_task.done():
                exit_task.cancel()

        if self._stop_requested.is_set():
            log.info("Coprocess %s exited with code %s", handle, returncode)
        else:
            log.error("Coprocess %s exited unexpectedly with code %s", handle, returncode)

    async def _teardown(self, handle: CoprocessHandle) -> None:
        log = handle.bind_logger(logger)
        feeder = handle.tasks["feeder"]
        if not feeder.done():
            feeder.cancel()

        readers = [handle.tasks["drain"], handle.tasks["diagnostics"]]
        _, pending = await asyncio.wait(readers, timeout=DRAIN_JOIN_TIMEOUT)
        for task in pending:
            log.warning("Task %s of %s still running after exit; cancelling", task.get_name(), handle)
            task.cancel()

        results = await asyncio.gather(*handle.tasks.values(), return_exceptions=True)
        if handle.stdin is not None:
            handle.stdin.abort()
        for name, result in zip(handle.tasks, results):
            if isinstance(result, asyncio.CancelledError):
                continue
            if isinstance(result, CoprocessWriteError):
                log.debug("%s task of %s: %s", name, handle, result)
            elif isinstance(result, BaseException):
                log.error("%s task of %s failed: %s", name, handle, result, exc_info=result)

        abandoned = self._tracker.fail_generation(handle.generation)
        if abandoned:
            log.warning("%d tracked metrics written to %s were not delivered", abandoned, handle)

    async def _restart(self) -> CoprocessHandle | None:
        logger.info("Restarting coprocess in %.1fs", self._restart_delay)
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_fixed(self._restart_delay),
            retry=tenacity.retry_if_exception_type(ProcessorStartError),
            sleep=self._sleep_unless_stopped,
            before_sleep=self._before_respawn_retry,
            reraise=True,
        )
        try:
            await self._sleep_unless_stopped(self._restart_delay)
            handle = await retryer(self._spawn)
        except _RestartAborted:
            logger.info("Restart cancelled by shutdown")
            return None

        if self._stop_requested.is_set():
            await terminate_process_tree(handle.process)
            await handle.process.wait()
            return None

        self.recover()
        self._attach(handle)
        return handle

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        try:
            async with asyncio.timeout(seconds):
                await self._stop_requested.wait()
        except TimeoutError:
            return
        raise _RestartAborted()

    def _before_respawn_retry(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.error("Respawn failed (%s); retrying in %.1fs", exc, delay)

    def _publish_state(self, *_: Any, **__: Any) -> None:
        self._stats.lifecycle = self.fsm_state


__all__ = ["ProcessSupervisor"]
