import json
import threading

import httpx
import pytest

from vm_gateway.clients.agent import AgentClient
from vm_gateway.config import Settings
from vm_gateway.errors import (
    InvalidTransitionError,
    VMAlreadyExistsError,
    VMNotFoundError,
    VMValidationError,
)
from vm_gateway.models import ScriptStatus, VMRecord, VMStatus, now_utc
from vm_gateway.repositories import InMemoryVMStore, alias_key
from vm_gateway.services.backends import EdgeBackend, Provisioner, build_provisioner
from vm_gateway.services.lifecycle import VMLifecycleManager, generate_vm_id
from vm_gateway.services.locks import KeyedLock
from vm_gateway.strategy import Strategy


SETTINGS = Settings(edge_latency_sec=0, cloud_latency_sec=0)


class RecordingAgent:
    """httpx transport double that records every upstream request."""

    def __init__(self, status_code: int = 200, payload: dict | None = None):
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.payload = payload if payload is not None else {"ok": True}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    def client(self) -> AgentClient:
        return AgentClient(timeout=1.0, client=httpx.Client(transport=httpx.MockTransport(self)))


class RaisingBackend:
    def __init__(self, strategy: Strategy, message: str):
        self.strategy = strategy
        self.message = message

    def provision(self, record):
        raise RuntimeError(self.message)


def _manager(agent: RecordingAgent | None = None, provisioner=None) -> VMLifecycleManager:
    return VMLifecycleManager(
        InMemoryVMStore(),
        provisioner or build_provisioner(SETTINGS, sleep=lambda _: None),
        agent=(agent or RecordingAgent()).client(),
    )


def test_generate_vm_id_shape():
    vm_id = generate_vm_id()
    prefix, random_part, stamp = vm_id.split("-")
    assert prefix == "vm"
    assert len(random_part) == 9
    assert stamp.isalnum()
    assert generate_vm_id() != vm_id


def test_create_settles_ready_with_origin_defaults():
    manager = _manager()
    record = manager.create("box", instance_type="t3.medium")
    stored = manager.get(record.id)
    assert stored.status == VMStatus.READY.value
    assert stored.error is None
    assert stored.origin_agent_url == stored.agent_url
    assert stored.origin_desktop_url == stored.desktop_url
    assert stored.metadata["strategy"] == "edge"
    assert stored.metadata["provisioning"] == "simulated"
    assert stored.last_activity is not None
    assert [e.event_type for e in manager.list_events(record.id)] == ["created"]


@pytest.mark.parametrize("name", [None, "", "   "])
def test_create_requires_name(name):
    manager = _manager()
    with pytest.raises(VMValidationError):
        manager.create(name)
    assert manager.list() == []


def test_create_defaults_instance_type_and_server_name():
    record = _manager().create("box", server_id="default-google-cloud-server")
    assert record.instance_type == "t3.medium"
    assert record.server_name == "Google Cloud Platform"


def test_create_with_requested_id_and_alias_lookup():
    manager = _manager()
    record = manager.create("box", requested_id="custom-1")
    assert record.id == "custom-1"
    assert manager.get(alias_key("custom-1")) is record


def test_create_rejects_duplicate_live_id():
    manager = _manager()
    manager.create("box", requested_id="dup")
    with pytest.raises(VMAlreadyExistsError):
        manager.create("box", requested_id="dup")


def test_failing_cloud_backend_falls_back_to_ready():
    edge = EdgeBackend(SETTINGS, sleep=lambda _: None)
    provisioner = Provisioner(
        {
            Strategy.EDGE: edge,
            Strategy.CLOUD_MANAGED: RaisingBackend(Strategy.CLOUD_MANAGED, "gcp down"),
        },
        edge,
    )
    manager = _manager(provisioner=provisioner)
    record = manager.create("box", instance_type="e2-standard-4")
    assert record.status == VMStatus.READY.value
    assert record.container_id == "edge-container-" + record.id
    assert record.metadata["fallbackReason"] == "gcp down"


def test_failing_edge_lands_in_error_with_message():
    edge = EdgeBackend(SETTINGS, sleep=lambda _: None)
    raising = RaisingBackend(Strategy.EDGE, "edge down")
    provisioner = Provisioner(
        {
            Strategy.EDGE: raising,
            Strategy.CLOUD_MANAGED: RaisingBackend(Strategy.CLOUD_MANAGED, "gcp down"),
        },
        edge,
    )
    provisioner.edge = raising
    manager = _manager(provisioner=provisioner)

    record = manager.create("box", instance_type="e2-standard-4")
    stored = manager.get(record.id)
    assert stored.status == VMStatus.ERROR.value
    assert stored.error == "edge down"
    assert [e.event_type for e in manager.list_events(record.id)] == ["error"]


def test_error_record_can_be_recreated_under_same_id():
    edge = EdgeBackend(SETTINGS, sleep=lambda _: None)
    raising = RaisingBackend(Strategy.EDGE, "edge down")
    provisioner = Provisioner({Strategy.EDGE: raising}, raising)
    manager = _manager(provisioner=provisioner)
    failed = manager.create("box", requested_id="retry-me")
    assert failed.status == VMStatus.ERROR.value

    provisioner.backends = {Strategy.EDGE: edge}
    provisioner.edge = edge
    retried = manager.create("box", requested_id="retry-me")
    assert retried.status == VMStatus.READY.value
    assert manager.get("retry-me").error is None


def test_start_notifies_upstream_and_sets_ready():
    agent = RecordingAgent()
    manager = _manager(agent)
    record = manager.create("box")
    record.origin_agent_url = "http://upstream:3000/"

    manager.stop(record.id)
    started = manager.start(record.id)

    assert started.status == VMStatus.READY.value
    assert [str(r.url) for r in agent.requests] == ["http://upstream:3000/browser/restart"]
    assert agent.requests[0].method == "POST"


def test_restart_ignores_upstream_failure():
    agent = RecordingAgent(status_code=500)
    manager = _manager(agent)
    record = manager.create("box")
    record.origin_agent_url = "http://upstream:3000"
    before = record.last_activity

    restarted = manager.restart(alias_key(record.id))

    assert restarted.status == VMStatus.INITIALIZING.value
    assert len(agent.requests) == 1
    assert restarted.last_activity >= before
    events = manager.list_events(record.id)
    assert events[-1].event_type == "restarted"
    assert json.loads(events[-1].event_data) == {"upstreamNotified": False}


def test_restart_without_origin_skips_notify():
    agent = RecordingAgent()
    manager = _manager(agent)
    record = manager.create("box")
    record.origin_agent_url = None
    manager.restart(record.id)
    assert agent.requests == []


def test_start_on_error_vm_is_rejected():
    manager = _manager()
    record = manager.create("box")
    record.status = VMStatus.ERROR.value
    with pytest.raises(InvalidTransitionError):
        manager.start(record.id)


def test_stop_appends_event():
    manager = _manager()
    record = manager.create("box")
    stopped = manager.stop(record.id)
    assert stopped.status == VMStatus.STOPPED.value
    assert manager.list_events(record.id)[-1].event_type == "stopped"


@pytest.mark.parametrize("operation", ["start", "restart", "stop", "delete", "get"])
def test_unknown_vm_is_not_found(operation):
    manager = _manager()
    with pytest.raises(VMNotFoundError):
        getattr(manager, operation)("nope")


def test_delete_removes_primary_and_alias():
    manager = _manager()
    record = manager.create("box")
    deleted = manager.delete(record.id)
    assert deleted.status == VMStatus.STOPPED.value
    assert manager.find(record.id) is None
    assert manager.find(alias_key(record.id)) is None
    with pytest.raises(VMNotFoundError):
        manager.delete(record.id)


def test_placeholder_is_not_persisted():
    manager = _manager()
    placeholder = manager.placeholder("ghost")
    assert placeholder.status == VMStatus.READY.value
    assert placeholder.metadata["placeholder"] is True
    assert manager.find("ghost") is None


def test_run_script_forwards_to_upstream():
    agent = RecordingAgent(payload={"output": 2})
    manager = _manager(agent)
    record = manager.create("box")
    record.origin_agent_url = "http://upstream:3000"

    script = manager.run_script(record.id, "sum", "1 + 1")

    assert script.status == ScriptStatus.COMPLETED.value
    assert json.loads(script.result) == {"output": 2}
    assert str(agent.requests[0].url).endswith("/run")
    assert json.loads(agent.requests[0].content) == {"name": "sum", "script": "1 + 1"}
    assert [s.id for s in manager.list_scripts(record.id)] == [script.id]
    assert manager.list_events(record.id)[-1].event_type == "script_executed"


def test_run_script_records_upstream_failure():
    manager = _manager(RecordingAgent(status_code=502))
    record = manager.create("box")
    record.origin_agent_url = "http://upstream:3000"
    script = manager.run_script(record.id, "sum", "1 + 1")
    assert script.status == ScriptStatus.FAILED.value
    assert "HTTP 502" in script.result


def test_run_script_requires_content():
    manager = _manager()
    record = manager.create("box")
    with pytest.raises(VMValidationError):
        manager.run_script(record.id, "sum", "")


def test_record_metric_validates_type():
    manager = _manager()
    record = manager.create("box")
    sample = manager.record_metric(record.id, "cpu", 42, "percent")
    assert sample.value == 42.0
    assert manager.list_metrics(record.id) == [sample]
    with pytest.raises(VMValidationError):
        manager.record_metric(record.id, "gpu", 1, "percent")


def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    order = []
    entered = threading.Event()
    release = threading.Event()

    def first():
        with locks.hold("vm-1"):
            order.append("first-in")
            entered.set()
            release.wait(2)
            order.append("first-out")

    def second():
        entered.wait(2)
        with locks.hold("vm-1"):
            order.append("second-in")

    t1 = threading.Thread(target=first)
    t2 = threading.Thread(target=second)
    t1.start()
    t2.start()
    entered.wait(2)
    with locks.hold("vm-2"):
        order.append("other-key")
    release.set()
    t1.join(2)
    t2.join(2)

    assert order.index("first-out") < order.index("second-in")
    assert order.index("other-key") < order.index("first-out")
    assert locks.active_keys() == set()


def test_concurrent_restarts_do_not_lose_updates():
    manager = _manager()
    record = manager.create("box")
    threads = [threading.Thread(target=manager.restart, args=(record.id,)) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(2)
    events = [e.event_type for e in manager.list_events(record.id)]
    assert events.count("restarted") == 8


def test_simulated_vm_never_calls_its_own_agent_route():
    agent = RecordingAgent()
    manager = _manager(agent)
    record = manager.create("box")
    assert record.origin_agent_url == record.agent_url
    assert record.upstream_agent_url is None

    manager.restart(record.id)
    script = manager.run_script(record.id, "sum", "1 + 1")

    assert agent.requests == []
    assert script.status == ScriptStatus.PENDING.value
    events = manager.list_events(record.id)
    assert json.loads(events[1].event_data) == {"upstreamNotified": False}


def test_created_at_defaults_to_naive_utc():
    before = now_utc()
    record = VMRecord(id="vm-1", name="box")
    assert record.created_at.tzinfo is None
    assert before <= record.created_at <= now_utc()
