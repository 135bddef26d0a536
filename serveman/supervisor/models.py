from pydantic import BaseModel
from typing import Optional
from enum import Enum
from datetime import datetime

class InstanceStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    ERRORED = "errored"
    STOPPED = "stopped"

class InstanceInfo(BaseModel):
    key: str
    port: int
    status: InstanceStatus
    project_path: str
    model: Optional[str] = None
    pid: Optional[int] = None
    returncode: Optional[int] = None
    started_at: datetime
