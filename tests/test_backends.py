import json

import httpx
import pytest

from vm_gateway.clients.provisioner import ProvisionerClient
from vm_gateway.config import Settings
from vm_gateway.models import VMRecord
from vm_gateway.services.backends import (
    CloudManagedBackend,
    EdgeBackend,
    OutcomeKind,
    ProvisionOutcome,
    Provisioner,
    build_provisioner,
)
from vm_gateway.strategy import Strategy


def _settings(**overrides) -> Settings:
    values = {
        "edge_latency_sec": 0,
        "cloud_latency_sec": 0,
        "public_base_url": "https://gw.example",
    }
    values.update(overrides)
    return Settings(**values)


def _cloud_settings(**overrides) -> Settings:
    return _settings(
        google_cloud_project_id="proj-1",
        google_cloud_access_token="token",
        **overrides,
    )


def _record(instance_type: str = "e2-standard-4") -> VMRecord:
    return VMRecord(id="vm-1", name="box", instance_type=instance_type)


def _no_sleep(_seconds: float) -> None:
    return None


def _provisioner_client(handler) -> ProvisionerClient:
    return ProvisionerClient(
        "http://prov.test",
        timeout=1.0,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


class RaisingBackend:
    strategy = Strategy.CLOUD_MANAGED

    def provision(self, record):
        raise RuntimeError("cloud exploded")


class RaisingEdge(EdgeBackend):
    def provision(self, record):
        raise RuntimeError("edge exploded")


def test_edge_backend_is_deterministic_and_bounded():
    delays = []
    backend = EdgeBackend(_settings(edge_latency_sec=0.25), sleep=delays.append)
    first = backend.provision(_record())
    second = backend.provision(_record())
    assert first.kind is OutcomeKind.SIMULATED
    assert first.result == second.result
    assert first.result.container_id == "edge-container-vm-1"
    assert first.result.desktop_url == "https://gw.example/vms/vm-1/novnc"
    assert first.result.agent_url == "https://gw.example/vms/vm-1/agent"
    assert first.result.origin_agent_url is None
    assert delays == [0.25, 0.25]


def test_edge_latency_is_capped():
    delays = []
    backend = EdgeBackend(_settings(edge_latency_sec=30), sleep=delays.append)
    backend.provision(_record())
    assert delays == [5.0]


def test_cloud_without_credentials_delegates_to_edge():
    settings = _settings()
    edge = EdgeBackend(settings, sleep=_no_sleep)
    cloud = CloudManagedBackend(
        settings, edge, _provisioner_client(lambda r: pytest.fail("no call"))
    )
    outcome = cloud.provision(_record())
    assert outcome.kind is OutcomeKind.SIMULATED
    assert outcome.strategy is Strategy.EDGE
    assert outcome.result.container_id == "edge-container-vm-1"


def test_cloud_uses_provisioning_endpoint():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), json.loads(request.content)))
        return httpx.Response(
            200,
            json={
                "id": "container-42",
                "agentUrl": "http://10.0.0.5:3000",
                "novncUrl": "http://10.0.0.5:6080",
                "publicIp": "10.0.0.5",
            },
        )

    settings = _cloud_settings()
    cloud = CloudManagedBackend(
        settings, EdgeBackend(settings, sleep=_no_sleep), _provisioner_client(handler)
    )
    outcome = cloud.provision(_record("e2-medium"))

    assert outcome.kind is OutcomeKind.REAL
    assert outcome.result.container_id == "container-42"
    assert outcome.result.origin_agent_url == "http://10.0.0.5:3000"
    assert outcome.result.origin_desktop_url == "http://10.0.0.5:6080"
    assert outcome.result.desktop_url == "https://gw.example/vms/vm-1/novnc"
    assert outcome.result.memory == "2GB"
    assert outcome.result.extra["isRealVM"] is True

    method, url, payload = seen[0]
    assert (method, url) == ("POST", "http://prov.test/containers")
    assert payload["name"] == "chrome-vm-vm-1"
    assert payload["ports"] == {"6080": 6080, "3000": 3000}
    assert payload["environment"]["VM_ID"] == "vm-1"
    assert payload["resources"] == {"memory": "2GB", "cpu": "1"}


def test_cloud_endpoint_failure_falls_back_to_simulated():
    settings = _cloud_settings()
    cloud = CloudManagedBackend(
        settings,
        EdgeBackend(settings, sleep=_no_sleep),
        _provisioner_client(lambda r: httpx.Response(503, json={"error": "down"})),
        sleep=_no_sleep,
    )
    outcome = cloud.provision(_record())

    assert outcome.kind is OutcomeKind.SIMULATED
    assert "HTTP 503" in outcome.reason
    result = outcome.result
    assert result.container_id == "gcp-vm-vm-1"
    assert result.memory == "4GB"
    assert result.public_address == "chrome-vm-vm-1.us-central1-a.c.proj-1.internal"
    assert result.extra["isRealVM"] is False
    assert result.extra["selfLink"].endswith(
        "/projects/proj-1/zones/us-central1-a/instances/chrome-vm-vm-1"
    )


def test_cloud_without_endpoint_is_simulated():
    settings = _cloud_settings()
    cloud = CloudManagedBackend(settings, EdgeBackend(settings, sleep=_no_sleep), None)
    outcome = cloud.provision(_record())
    assert outcome.kind is OutcomeKind.SIMULATED
    assert outcome.reason == "provisioning endpoint not configured"


def test_provisioner_degrades_backend_errors_to_edge():
    settings = _settings()
    edge = EdgeBackend(settings, sleep=_no_sleep)
    provisioner = Provisioner(
        {Strategy.EDGE: edge, Strategy.CLOUD_MANAGED: RaisingBackend()}, edge
    )
    outcome = provisioner.provision(_record(), Strategy.CLOUD_MANAGED)
    assert outcome.kind is OutcomeKind.SIMULATED
    assert outcome.strategy is Strategy.EDGE
    assert outcome.reason == "cloud exploded"


def test_provisioner_reports_failure_when_edge_raises():
    settings = _settings()
    edge = RaisingEdge(settings, sleep=_no_sleep)
    provisioner = Provisioner(
        {Strategy.EDGE: edge, Strategy.CLOUD_MANAGED: RaisingBackend()}, edge
    )
    outcome = provisioner.provision(_record(), Strategy.CLOUD_MANAGED)
    assert outcome.kind is OutcomeKind.FAILED
    assert outcome.reason == "edge exploded"
    assert outcome.result is None


def test_provisioner_degrades_failed_outcome():
    class FailingBackend:
        strategy = Strategy.CLOUD_MANAGED

        def provision(self, record):
            return ProvisionOutcome.failed("quota exceeded", self.strategy)

    settings = _settings()
    edge = EdgeBackend(settings, sleep=_no_sleep)
    provisioner = Provisioner(
        {Strategy.EDGE: edge, Strategy.CLOUD_MANAGED: FailingBackend()}, edge
    )
    outcome = provisioner.provision(_record(), Strategy.CLOUD_MANAGED)
    assert outcome.kind is OutcomeKind.SIMULATED
    assert outcome.reason == "quota exceeded"


def test_build_provisioner_wires_both_strategies():
    provisioner = build_provisioner(_settings(), sleep=_no_sleep)
    assert set(provisioner.backends) == {Strategy.EDGE, Strategy.CLOUD_MANAGED}
    assert provisioner.backends[Strategy.EDGE] is provisioner.edge


def test_provisioner_close_releases_endpoint_client():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    client = ProvisionerClient(
        "http://prov.test", 1.0, client=httpx.Client(transport=transport)
    )
    provisioner = build_provisioner(_settings(), provisioner_client=client)
    provisioner.close()
    assert client.client.is_closed
