"""Serve instance registry: port allocation, process supervision and teardown."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Iterable, NoReturn

from serveman.contracts import (
    DEFAULT_COMMAND,
    DEFAULT_HOSTNAME,
    EXIT_POLICIES,
    EXIT_POLICY_VERIFY,
    HEALTH_PATH,
    PORT_MAX,
    PORT_MIN,
    PROBE_HOST,
    READY_POLL_INTERVAL_SECONDS,
    READY_TIMEOUT_SECONDS,
    SERVE_SUBCOMMAND,
)
from serveman.errors import (
    ProcessExitedUnexpectedlyError,
    ServeStructuredError,
    SpawnFailureError,
)

from .models import InstanceInfo
from .port_allocator import PortAllocator
from .readiness import probe_health, wait_for_ready
from .serve_config import validate_config
from .state import ServeInstance, build_instance_key

logger = logging.getLogger("serveman.supervisor.serve_manager")

SHUTDOWN_GRACE_SECONDS = 5.0
EXIT_POLL_SECONDS = 0.2
DRAIN_GRACE_SECONDS = 1.0
WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


class ServeManager:
    """Registry of supervised serve processes keyed by project path and model."""

    def __init__(
        self,
        *,
        port_min: int = PORT_MIN,
        port_max: int = PORT_MAX,
        command: Iterable[str] = DEFAULT_COMMAND,
        hostname: str = DEFAULT_HOSTNAME,
        health_path: str = HEALTH_PATH,
        exit_policy: str = EXIT_POLICY_VERIFY,
        ready_timeout_seconds: float = READY_TIMEOUT_SECONDS,
        allocator: PortAllocator | None = None,
    ) -> None:
        if exit_policy not in EXIT_POLICIES:
            raise ValueError(f"unsupported exit_policy: {exit_policy}")
        self.command = list(command)
        if not self.command:
            raise ValueError("command must be non-empty")
        self.hostname = hostname
        self.probe_host = PROBE_HOST if hostname in WILDCARD_HOSTS else hostname
        self.health_path = health_path
        self.exit_policy = exit_policy
        self.ready_timeout_seconds = ready_timeout_seconds
        self.allocator = allocator or PortAllocator(port_min, port_max, host=hostname)
        self._instances: dict[str, ServeInstance] = {}
        self._pending: dict[str, asyncio.Task] = {}
        self._supervised: dict[asyncio.Task, ServeInstance] = {}
        self._last_errors: dict[str, ServeStructuredError] = {}
        self._allocation_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "ServeManager":
        """Build a manager from a (possibly partial) config dict."""
        validated = validate_config(config)
        return cls(
            port_min=validated["port_min"],
            port_max=validated["port_max"],
            command=validated["command"],
            hostname=validated["hostname"],
            health_path=validated["health_path"],
            exit_policy=validated["exit_policy"],
            ready_timeout_seconds=validated["ready_timeout_seconds"],
        )

    def build_command(self, port: int, model: str | None = None) -> list[str]:
        """Return the argv used to spawn a serve process on `port`."""
        args = [
            *self.command,
            SERVE_SUBCOMMAND,
            "--port",
            str(port),
            "--hostname",
            self.hostname,
        ]
        if model:
            args.extend(["--model", model])
        return args

    async def launch(self, project_path: str, model: str | None = None) -> int:
        """
        Return the port of the instance for this project/model, spawning one
        if none is registered. Concurrent launches for the same key share a
        single allocation and a single child process.
        """
        key = build_instance_key(project_path, model)
        existing = self._instances.get(key)
        if existing is not None:
            return existing.port

        pending = self._pending.get(key)
        if pending is None:
            # Reserve the key before the first suspension point.
            pending = asyncio.create_task(self._register_instance(key, str(project_path), model))
            self._pending[key] = pending
            pending.add_done_callback(lambda task: self._forget_pending(key, task))
        else:
            logger.debug("Joining in-flight launch for %s", key)
        return await asyncio.shield(pending)

    def _forget_pending(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def _claimed_ports(self) -> set[int]:
        return {instance.port for instance in self._instances.values()}

    async def _register_instance(self, key: str, project_path: str, model: str | None) -> int:
        async with self._allocation_lock:
            port = await self.allocator.allocate(self._claimed_ports())
            instance = ServeInstance(key=key, port=port, project_path=project_path, model=model)
            self._instances[key] = instance
            self._last_errors.pop(key, None)

        task = asyncio.create_task(self._supervise(instance))
        instance.supervisor_task = task
        self._supervised[task] = instance
        task.add_done_callback(lambda done: self._supervised.pop(done, None))
        logger.info("Registered serve instance %s on port %s", key, port)
        return port

    async def _supervise(self, instance: ServeInstance) -> None:
        """Spawn the child and drive its Running -> Exited | Errored transition."""
        command = self.build_command(instance.port, instance.model)
        logger.info("Running command: %s (cwd=%s)", " ".join(command), instance.project_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=instance.project_path,
                env=dict(os.environ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            instance.mark_errored()
            error = SpawnFailureError(instance.key, command, str(exc))
            logger.error("%s [%s]", error, error.error_code)
            self._deregister(instance, error)
            return

        instance.mark_running(process)
        logger.info(
            "Spawned serve process for %s (pid=%s port=%s)",
            instance.key,
            process.pid,
            instance.port,
        )
        if instance.stop_requested:
            self._terminate(instance)

        drains = [
            asyncio.create_task(self._drain_stream(instance.key, "stdout", process.stdout)),
            asyncio.create_task(self._drain_stream(instance.key, "stderr", process.stderr)),
        ]
        returncode = await self._wait_for_exit(process)
        instance.mark_exited(returncode)
        await self._finish_drains(instance.key, drains)

        if instance.stop_requested:
            logger.info("Serve process for %s exited after stop (code=%s)", instance.key, returncode)
            return

        error = ProcessExitedUnexpectedlyError(instance.key, instance.port, returncode)
        logger.warning("%s", error)
        if self.exit_policy == EXIT_POLICY_VERIFY and await probe_health(
            instance.port,
            host=self.probe_host,
            path=self.health_path,
        ):
            logger.warning(
                "Port %s still healthy after %s exited; keeping registration",
                instance.port,
                instance.key,
            )
            return
        self._deregister(instance, error)

    async def _wait_for_exit(self, process: asyncio.subprocess.Process) -> int:
        """
        Return the exit code as soon as the OS reports the child gone.

        Process.wait() can stay pending while a grandchild keeps the inherited
        stdout/stderr pipes open, so the returncode is checked as well.
        """
        waiter = asyncio.ensure_future(process.wait())
        while True:
            done, _ = await asyncio.wait({waiter}, timeout=EXIT_POLL_SECONDS)
            if done:
                return waiter.result()
            if process.returncode is not None:
                waiter.cancel()
                return process.returncode

    async def _finish_drains(self, key: str, drains: list[asyncio.Task]) -> None:
        _, pending = await asyncio.wait(drains, timeout=DRAIN_GRACE_SECONDS)
        if pending:
            logger.debug("Output pipes of %s still held open; detaching", key)
            for task in pending:
                task.cancel()

    async def _drain_stream(
        self,
        key: str,
        stream_name: str,
        stream: asyncio.StreamReader | None,
    ) -> None:
        """Forward child output to the debug log line by line."""
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.debug("[%s %s] overlong line dropped", key, stream_name)
                continue
            if not line:
                return
            logger.debug("[%s %s] %s", key, stream_name, line.decode("utf-8", errors="replace").rstrip())

    def _deregister(self, instance: ServeInstance, error: ServeStructuredError | None = None) -> None:
        # Never drop a newer instance that replaced this one under the same key.
        if self._instances.get(instance.key) is instance:
            del self._instances[instance.key]
            if error is not None:
                self._last_errors[instance.key] = error
            logger.info("Deregistered serve instance %s (status=%s)", instance.key, instance.status.value)

    def _terminate(self, instance: ServeInstance) -> None:
        if not instance.is_alive():
            return
        try:
            instance.process.terminate()
        except ProcessLookupError:
            logger.debug("Process for %s already gone", instance.key)

    def get_port(self, project_path: str, model: str | None = None) -> int | None:
        instance = self._instances.get(build_instance_key(project_path, model))
        return instance.port if instance is not None else None

    def get_instance(self, project_path: str, model: str | None = None) -> ServeInstance | None:
        return self._instances.get(build_instance_key(project_path, model))

    def stop(self, project_path: str, model: str | None = None) -> bool:
        """Terminate and deregister an instance; False when none was registered."""
        key = build_instance_key(project_path, model)
        instance = self._instances.pop(key, None)
        if instance is None:
            logger.info("No serve instance registered for %s", key)
            return False
        instance.mark_stopped()
        self._terminate(instance)
        logger.info("Stopped serve instance %s (port=%s)", key, instance.port)
        return True

    def stop_all(self) -> int:
        """Terminate and deregister every instance. Returns how many were stopped."""
        instances = list(self._instances.values())
        logger.info("Stopping %d serve instance(s)", len(instances))
        self._instances.clear()
        for instance in instances:
            instance.mark_stopped()
            self._terminate(instance)
        return len(instances)

    def list_instances(self) -> list[dict[str, Any]]:
        return [{"key": key, "port": instance.port} for key, instance in self._instances.items()]

    def describe_instances(self) -> list[InstanceInfo]:
        return [instance.to_info() for instance in self._instances.values()]

    async def wait_for_ready(self, port: int, timeout_seconds: float | None = None) -> None:
        """Block until the service on `port` answers its health endpoint."""
        await wait_for_ready(
            port,
            timeout_seconds if timeout_seconds is not None else self.ready_timeout_seconds,
            host=self.probe_host,
            path=self.health_path,
        )

    async def wait_until_ready(
        self,
        project_path: str,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> int:
        """
        Wait for a launched instance to answer its health endpoint and return
        its port. Fails fast with the recorded SpawnFailureError or
        ProcessExitedUnexpectedlyError when the instance is deregistered
        while waiting.
        """
        key = build_instance_key(project_path, model)
        instance = self.get_instance(project_path, model)
        if instance is None:
            self._raise_missing(key)

        ready = asyncio.create_task(self.wait_for_ready(instance.port, timeout_seconds))
        try:
            while not ready.done():
                await asyncio.wait({ready}, timeout=READY_POLL_INTERVAL_SECONDS)
                if not ready.done() and self._instances.get(key) is not instance:
                    self._raise_missing(key)
        finally:
            ready.cancel()
        ready.result()
        return instance.port

    def _raise_missing(self, key: str) -> NoReturn:
        error = self._last_errors.get(key)
        if error is not None:
            raise error
        raise LookupError(f"No serve instance registered for {key}")

    async def shutdown(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop every instance and reap the children, killing stragglers."""
        for task in list(self._pending.values()):
            task.cancel()
        self.stop_all()

        supervised = dict(self._supervised)
        if not supervised:
            return
        _, still_running = await asyncio.wait(list(supervised), timeout=grace_seconds)
        if not still_running:
            return

        for task in still_running:
            instance = supervised[task]
            if instance.is_alive():
                logger.warning("Killing serve process for %s after %.1fs grace", instance.key, grace_seconds)
                instance.process.kill()
        await asyncio.wait(still_running, timeout=grace_seconds)
