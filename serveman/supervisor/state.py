# Runtime state for supervised serve instances.
# Nothing here is persisted; records live only as long as the owning manager.

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from .models import InstanceInfo, InstanceStatus


def build_instance_key(project_path: str, model: str | None = None) -> str:
    """Return registry key for a project path, suffixed by model when given."""
    return f"{project_path}:{model}" if model else project_path


@dataclass
class ServeInstance:
    """
    One supervised child process bound to one allocated port.
    Only the owning ServeManager signals or waits on `process`.
    """

    key: str
    port: int
    project_path: str
    model: str | None = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    status: InstanceStatus = InstanceStatus.STARTING
    process: asyncio.subprocess.Process | None = None
    returncode: int | None = None
    stop_requested: bool = False
    supervisor_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def mark_running(self, process: asyncio.subprocess.Process) -> None:
        self.process = process
        if not self.stop_requested:
            self.status = InstanceStatus.RUNNING

    def mark_errored(self) -> None:
        self.status = InstanceStatus.ERRORED

    def mark_exited(self, returncode: int | None) -> None:
        self.returncode = returncode
        if self.status != InstanceStatus.STOPPED:
            self.status = InstanceStatus.EXITED

    def mark_stopped(self) -> None:
        self.stop_requested = True
        self.status = InstanceStatus.STOPPED

    def is_alive(self) -> bool:
        """Return True while the process is spawned and has not been reaped."""
        return self.process is not None and self.process.returncode is None

    def to_info(self) -> InstanceInfo:
        return InstanceInfo(
            key=self.key,
            port=self.port,
            status=self.status,
            project_path=self.project_path,
            model=self.model,
            pid=self.pid,
            returncode=self.returncode,
            started_at=self.started_at,
        )
