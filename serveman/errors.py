"""Serve manager exception hierarchy with stable error taxonomy fields."""

from __future__ import annotations

from serveman.contracts import ERROR_SCHEMA_V1


class ServeError(Exception):
    """Base error type for all serve lifecycle failures."""


class ServeStructuredError(ServeError):
    """Serve error carrying stable taxonomy class/code fields."""

    def __init__(self, message: str, *, error_class: str, error_code: str):
        super().__init__(message)
        self.error_class = error_class
        self.error_code = error_code

    def to_payload(self) -> dict[str, str]:
        return {
            "error_schema_version": ERROR_SCHEMA_V1,
            "error_class": self.error_class,
            "error_code": self.error_code,
            "message": str(self),
        }


class NoPortAvailableError(ServeStructuredError):
    """Raised when every port in the configured range is claimed or bound."""

    def __init__(self, port_min: int, port_max: int):
        super().__init__(
            f"No available ports in range {port_min}-{port_max}",
            error_class="port_allocation",
            error_code="PORT_RANGE_EXHAUSTED",
        )
        self.port_min = port_min
        self.port_max = port_max


class SpawnFailureError(ServeStructuredError):
    """Raised when the OS could not create the serve process."""

    def __init__(self, key: str, command: list[str], reason: str):
        super().__init__(
            f"Failed to spawn {command[0] if command else '<empty>'} for {key}: {reason}",
            error_class="process",
            error_code="SPAWN_FAILED",
        )
        self.key = key
        self.command = list(command)


class ReadinessTimeoutError(ServeStructuredError):
    """Raised when a service never answered its health endpoint in time."""

    def __init__(self, port: int, timeout_seconds: float):
        super().__init__(
            f"Service at port {port} failed to become ready within {timeout_seconds:g}s",
            error_class="readiness",
            error_code="READINESS_TIMEOUT",
        )
        self.port = port
        self.timeout_seconds = timeout_seconds


class ProcessExitedUnexpectedlyError(ServeStructuredError):
    """Describes a serve process that exited without being stopped."""

    def __init__(self, key: str, port: int, returncode: int | None):
        super().__init__(
            f"Serve process for {key} on port {port} exited with code {returncode}",
            error_class="process",
            error_code="PROCESS_EXITED",
        )
        self.key = key
        self.port = port
        self.returncode = returncode
