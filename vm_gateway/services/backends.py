import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from vm_gateway.clients.http import RequestFailure
from vm_gateway.clients.provisioner import ProvisionerClient
from vm_gateway.config import Settings
from vm_gateway.metrics import metrics
from vm_gateway.models import VMRecord
from vm_gateway.repositories import now_utc
from vm_gateway.strategy import Strategy


logger = logging.getLogger(__name__)

MAX_SIMULATED_LATENCY_SEC = 5.0
AGENT_PORT = 3000
DESKTOP_PORT = 6080


@dataclass
class ProvisionResult:
    container_id: str
    desktop_url: str
    agent_url: str
    public_address: str
    chrome_version: str
    runtime_version: str
    memory: str
    cpu: str
    storage: str
    origin_desktop_url: str | None = None
    origin_agent_url: str | None = None
    region: str | None = None
    created_via: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class OutcomeKind(str, Enum):
    REAL = "real"
    SIMULATED = "simulated"
    FAILED = "failed"


@dataclass
class ProvisionOutcome:
    kind: OutcomeKind
    result: ProvisionResult | None = None
    reason: str | None = None
    strategy: Strategy | None = None

    @classmethod
    def real(cls, result: ProvisionResult, strategy: Strategy) -> "ProvisionOutcome":
        return cls(OutcomeKind.REAL, result=result, strategy=strategy)

    @classmethod
    def simulated(
        cls, result: ProvisionResult, strategy: Strategy, reason: str | None = None
    ) -> "ProvisionOutcome":
        return cls(OutcomeKind.SIMULATED, result=result, reason=reason, strategy=strategy)

    @classmethod
    def failed(cls, reason: str, strategy: Strategy | None = None) -> "ProvisionOutcome":
        return cls(OutcomeKind.FAILED, reason=reason, strategy=strategy)


class Backend(Protocol):
    strategy: Strategy

    def provision(self, record: VMRecord) -> ProvisionOutcome: ...


def public_urls(settings: Settings, vm_id: str) -> tuple[str, str]:
    base = settings.public_base_url.rstrip("/")
    return f"{base}/vms/{vm_id}/novnc", f"{base}/vms/{vm_id}/agent"


def _bounded(delay: float) -> float:
    return max(0.0, min(delay, MAX_SIMULATED_LATENCY_SEC))


class EdgeBackend:
    strategy = Strategy.EDGE

    def __init__(self, settings: Settings, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.sleep = sleep

    def describe(self, record: VMRecord) -> ProvisionResult:
        desktop_url, agent_url = public_urls(self.settings, record.id)
        return ProvisionResult(
            container_id=f"edge-container-{record.id}",
            desktop_url=desktop_url,
            agent_url=agent_url,
            public_address="edge-ip",
            chrome_version=self.settings.chrome_version,
            runtime_version=self.settings.runtime_version,
            memory="512MB",
            cpu="0.5 vCPU",
            storage="1GB",
            region="global",
            created_via="edge",
        )

    def provision(self, record: VMRecord) -> ProvisionOutcome:
        self.sleep(_bounded(self.settings.edge_latency_sec))
        return ProvisionOutcome.simulated(self.describe(record), self.strategy)


def cloud_resources(instance_type: str | None) -> tuple[str, str]:
    if instance_type and "e2-medium" in instance_type:
        return "2GB", "1 vCPU"
    return "4GB", "2 vCPU"


class CloudManagedBackend:
    strategy = Strategy.CLOUD_MANAGED

    def __init__(
        self,
        settings: Settings,
        edge: EdgeBackend,
        provisioner: ProvisionerClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.edge = edge
        self.provisioner = provisioner
        self.sleep = sleep

    def container_request(self, record: VMRecord) -> dict:
        memory, cpu = cloud_resources(record.instance_type)
        return {
            "name": f"chrome-vm-{record.id}",
            "image": self.settings.container_image,
            "ports": {str(DESKTOP_PORT): DESKTOP_PORT, str(AGENT_PORT): AGENT_PORT},
            "environment": {
                "VM_ID": record.id,
                "VM_NAME": record.name,
                "CHROME_VERSION": self.settings.chrome_version,
                "NODE_VERSION": self.settings.runtime_version,
            },
            "resources": {"memory": memory, "cpu": cpu.split(" ", 1)[0]},
        }

    def provision(self, record: VMRecord) -> ProvisionOutcome:
        if not self.settings.cloud_credentials_configured:
            logger.info("cloud credentials missing, using edge vm_id=%s", record.id)
            return self.edge.provision(record)

        reason = "provisioning endpoint not configured"
        if self.provisioner is not None:
            try:
                data = self.provisioner.create_container(self.container_request(record))
                if not data.get("id"):
                    raise ValueError("provisioning endpoint returned no container id")
                return ProvisionOutcome.real(self._real_result(record, data), self.strategy)
            except (RequestFailure, ValueError) as exc:
                reason = str(exc)
                logger.warning(
                    "container provisioning failed, simulating vm_id=%s error=%s",
                    record.id,
                    exc,
                )

        self.sleep(_bounded(self.settings.cloud_latency_sec))
        return ProvisionOutcome.simulated(
            self._simulated_result(record), self.strategy, reason=reason
        )

    def close(self) -> None:
        if self.provisioner is not None:
            self.provisioner.close()

    def _real_result(self, record: VMRecord, data: dict) -> ProvisionResult:
        desktop_url, agent_url = public_urls(self.settings, record.id)
        memory, cpu = cloud_resources(record.instance_type)
        return ProvisionResult(
            container_id=str(data["id"]),
            desktop_url=desktop_url,
            agent_url=agent_url,
            origin_desktop_url=data.get("novncUrl"),
            origin_agent_url=data.get("agentUrl"),
            public_address=data.get("publicIp") or "google-cloud-ip",
            chrome_version=self.settings.chrome_version,
            runtime_version=self.settings.runtime_version,
            memory=memory,
            cpu=cpu,
            storage="20GB",
            region=self.settings.google_cloud_zone,
            created_via="google-cloud-real",
            extra={"isRealVM": True},
        )

    def _simulated_result(self, record: VMRecord) -> ProvisionResult:
        desktop_url, agent_url = public_urls(self.settings, record.id)
        memory, cpu = cloud_resources(record.instance_type)
        project_id = self.settings.google_cloud_project_id
        zone = self.settings.google_cloud_zone
        instance_name = f"chrome-vm-{record.id}"
        return ProvisionResult(
            container_id=f"gcp-vm-{record.id}",
            desktop_url=desktop_url,
            agent_url=agent_url,
            public_address=f"{instance_name}.{zone}.c.{project_id}.internal",
            chrome_version=self.settings.chrome_version,
            runtime_version=self.settings.runtime_version,
            memory=memory,
            cpu=cpu,
            storage="20GB",
            region=zone,
            created_via="google-cloud-simulated",
            extra={
                "isRealVM": False,
                "projectId": project_id,
                "zone": zone,
                "instanceName": instance_name,
                "machineType": record.instance_type or "e2-medium",
                "selfLink": (
                    "https://compute.googleapis.com/compute/v1/projects/"
                    f"{project_id}/zones/{zone}/instances/{instance_name}"
                ),
                "creationTimestamp": now_utc().isoformat(),
                "tags": ["chrome-vm", "automation"],
                "labels": {
                    "chrome-vm-id": record.id,
                    "created-by": "vm-gateway",
                },
            },
        )


class Provisioner:
    """Runs the selected backend and degrades any failure to the edge result."""

    def __init__(self, backends: dict[Strategy, Backend], edge: EdgeBackend):
        self.backends = backends
        self.edge = edge

    def provision(self, record: VMRecord, strategy: Strategy) -> ProvisionOutcome:
        backend = self.backends.get(strategy, self.edge)
        try:
            outcome = backend.provision(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "backend %s raised, falling back to edge vm_id=%s error=%s",
                strategy.value,
                record.id,
                exc,
            )
            outcome = ProvisionOutcome.failed(str(exc) or exc.__class__.__name__, strategy)

        if outcome.kind is not OutcomeKind.FAILED:
            metrics.inc(f"provision_{outcome.kind.value}_total")
            return outcome

        if backend is self.edge:
            metrics.inc("provision_failed_total")
            return outcome
        metrics.inc("provision_fallback_total")
        try:
            fallback = self.edge.provision(record)
        except Exception as exc:  # noqa: BLE001
            metrics.inc("provision_failed_total")
            return ProvisionOutcome.failed(
                str(exc) or exc.__class__.__name__, Strategy.EDGE
            )
        fallback.reason = outcome.reason
        metrics.inc(f"provision_{fallback.kind.value}_total")
        return fallback

    def close(self) -> None:
        for backend in self.backends.values():
            close = getattr(backend, "close", None)
            if close is not None:
                close()


def build_provisioner(
    settings: Settings,
    provisioner_client: ProvisionerClient | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Provisioner:
    if provisioner_client is None and settings.provisioner_url:
        provisioner_client = ProvisionerClient(
            settings.provisioner_url, settings.upstream_timeout_sec
        )
    edge = EdgeBackend(settings, sleep=sleep)
    cloud = CloudManagedBackend(settings, edge, provisioner_client, sleep=sleep)
    return Provisioner({Strategy.EDGE: edge, Strategy.CLOUD_MANAGED: cloud}, edge)
