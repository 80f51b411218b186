from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from vm_gateway.db import Base


class VMStatus(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    STOPPED = "stopped"


class ScriptStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


METRIC_TYPES = {"cpu", "memory", "storage", "network"}


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class VMRecord:
    id: str
    name: str
    status: str = VMStatus.INITIALIZING.value
    created_at: datetime = field(default_factory=now_utc)
    container_id: str | None = None
    desktop_url: str | None = None
    agent_url: str | None = None
    origin_desktop_url: str | None = None
    origin_agent_url: str | None = None
    public_address: str | None = None
    chrome_version: str | None = None
    runtime_version: str | None = None
    instance_type: str | None = None
    memory: str | None = None
    cpu: str | None = None
    storage: str | None = None
    server_id: str | None = None
    server_name: str | None = None
    region: str | None = None
    created_via: str | None = None
    last_activity: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def upstream_agent_url(self) -> str | None:
        """Origin agent URL, or None when it only points back at this gateway."""
        origin = self.origin_agent_url
        if not origin:
            return None
        if self.agent_url and origin.rstrip("/") == self.agent_url.rstrip("/"):
            return None
        return origin

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "containerId": self.container_id,
            "novncUrl": self.desktop_url,
            "agentUrl": self.agent_url,
            "originNoVncUrl": self.origin_desktop_url,
            "originAgentUrl": self.origin_agent_url,
            "publicIp": self.public_address,
            "chromeVersion": self.chrome_version,
            "nodeVersion": self.runtime_version,
            "instanceType": self.instance_type,
            "memory": self.memory,
            "cpu": self.cpu,
            "storage": self.storage,
            "serverId": self.server_id,
            "serverName": self.server_name,
            "region": self.region,
            "createdVia": self.created_via,
            "createdAt": _iso(self.created_at),
            "lastActivity": _iso(self.last_activity),
            "metadata": self.metadata,
            "error": self.error,
        }


class VMRow(Base):
    __tablename__ = "vms"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=VMStatus.INITIALIZING.value, nullable=False, index=True
    )
    container_id: Mapped[str | None] = mapped_column(String(256))
    novnc_url: Mapped[str | None] = mapped_column(Text)
    agent_url: Mapped[str | None] = mapped_column(Text)
    origin_novnc_url: Mapped[str | None] = mapped_column(Text)
    origin_agent_url: Mapped[str | None] = mapped_column(Text)
    public_ip: Mapped[str | None] = mapped_column(String(256))
    chrome_version: Mapped[str | None] = mapped_column(String(64))
    node_version: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False, index=True
    )
    last_activity: Mapped[datetime | None] = mapped_column(DateTime)
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text)
    instance_type: Mapped[str | None] = mapped_column(String(64))
    memory: Mapped[str | None] = mapped_column(String(32))
    cpu: Mapped[str | None] = mapped_column(String(32))
    storage: Mapped[str | None] = mapped_column(String(32))
    server_id: Mapped[str | None] = mapped_column(String(128), index=True)
    server_name: Mapped[str | None] = mapped_column(String(128))
    region: Mapped[str | None] = mapped_column(String(64))
    created_via: Mapped[str | None] = mapped_column(String(64))
    error: Mapped[str | None] = mapped_column(Text)


class ScriptRun(Base):
    __tablename__ = "vm_scripts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    vm_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("vms.id", ondelete="CASCADE"), index=True
    )
    script_name: Mapped[str] = mapped_column(String(256), nullable=False)
    script_content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=ScriptStatus.PENDING.value, nullable=False
    )
    result: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False
    )
    executed_at: Mapped[datetime | None] = mapped_column(DateTime)

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vmId": self.vm_id,
            "scriptName": self.script_name,
            "scriptContent": self.script_content,
            "status": self.status,
            "result": self.result,
            "createdAt": _iso(self.created_at),
            "executedAt": _iso(self.executed_at),
        }


class MetricSample(Base):
    __tablename__ = "vm_metrics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    vm_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("vms.id", ondelete="CASCADE"), index=True
    )
    metric_type: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False, index=True
    )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vmId": self.vm_id,
            "metricType": self.metric_type,
            "value": self.value,
            "unit": self.unit,
            "timestamp": _iso(self.timestamp),
        }


class VMEvent(Base):
    __tablename__ = "vm_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vm_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("vms.id", ondelete="CASCADE"), index=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[str | None] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=now_utc, nullable=False, index=True
    )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vmId": self.vm_id,
            "eventType": self.event_type,
            "eventData": self.event_data,
            "timestamp": _iso(self.timestamp),
        }
