import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ProgressStatus = Literal["starting", "running", "completed", "error"]
TERMINAL_STATUSES = ("completed", "error")


class PortMapping(BaseModel):
    container: str
    published: str
    protocol: str = "tcp"


class VolumeMapping(BaseModel):
    container: str
    source: str


class EnvVar(BaseModel):
    key: str
    value: str = ""


class InstallConfig(BaseModel):
    ports: List[PortMapping] = Field(default_factory=list)
    volumes: List[VolumeMapping] = Field(default_factory=list)
    environment: List[EnvVar] = Field(default_factory=list)
    webUIPort: Optional[str] = None
    networkMode: Optional[str] = None


class AppMetaOverride(BaseModel):
    name: Optional[str] = None
    icon: Optional[str] = None


class DeployRequest(BaseModel):
    """One deploy attempt: store install, custom deploy or edit/redeploy."""

    model_config = ConfigDict(frozen=True)

    appId: str
    # raw compose YAML (custom deploy, edit/redeploy)
    composeContent: Optional[str] = None
    # existing compose file (store install)
    composePath: Optional[str] = None
    config: Optional[InstallConfig] = None
    meta: Optional[AppMetaOverride] = None
    # store slug or "custom"; preserved from the existing record on redeploy
    source: Optional[str] = None
    containerMeta: Optional[Dict[str, Any]] = None


class DeployResult(BaseModel):
    success: bool
    error: Optional[str] = None


class InstallProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["install-progress"] = "install-progress"
    appId: str
    containerName: str
    name: str
    icon: str
    progress: float = Field(ge=0.0, le=1.0)
    status: ProgressStatus = "running"
    message: str = ""
    timestamp: float = Field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ConvertRunRequest(BaseModel):
    command: str = ""


class ConvertRunResult(BaseModel):
    success: bool
    yaml: Optional[str] = None
    error: Optional[str] = None
