from __future__ import annotations

import json
import logging
import secrets
import string
import time

import httpx

from vm_gateway.clients.agent import AgentClient
from vm_gateway.clients.http import RequestFailure
from vm_gateway.errors import (
    InvalidTransitionError,
    ProvisioningFailedError,
    VMAlreadyExistsError,
    VMNotFoundError,
    VMValidationError,
)
from vm_gateway.metrics import metrics
from vm_gateway.models import (
    METRIC_TYPES,
    MetricSample,
    ScriptRun,
    ScriptStatus,
    VMEvent,
    VMRecord,
    VMStatus,
)
from vm_gateway.repositories import VMStore, canonical_id, new_log_id, now_utc
from vm_gateway.services.backends import OutcomeKind, ProvisionOutcome, Provisioner
from vm_gateway.services.locks import KeyedLock
from vm_gateway.state_machine import can_transition
from vm_gateway.strategy import DEFAULT_INSTANCE_TYPE, select_strategy, server_name


logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits

# Upstream notifications are fire-and-forget: these failures are logged and
# dropped, anything else propagates.
BEST_EFFORT_IGNORED = (RequestFailure, httpx.InvalidURL)


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ID_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def generate_vm_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"vm-{suffix}-{_base36(int(time.time() * 1000))}"


def apply_outcome(record: VMRecord, outcome: ProvisionOutcome) -> None:
    result = outcome.result
    if result is None:
        raise ValueError("provisioning outcome carries no result")
    record.container_id = result.container_id
    record.desktop_url = result.desktop_url
    record.agent_url = result.agent_url
    # The origin pair falls back to the public URLs; VMRecord.upstream_agent_url
    # treats that self-reference as no upstream.
    record.origin_desktop_url = result.origin_desktop_url or result.desktop_url
    record.origin_agent_url = result.origin_agent_url or result.agent_url
    record.public_address = result.public_address
    record.chrome_version = result.chrome_version
    record.runtime_version = result.runtime_version
    record.memory = result.memory
    record.cpu = result.cpu
    record.storage = result.storage
    if result.region:
        record.region = result.region
    if result.created_via:
        record.created_via = result.created_via
    record.metadata = {
        **record.metadata,
        **result.extra,
        "provisioning": outcome.kind.value,
        "strategy": outcome.strategy.value if outcome.strategy else None,
    }
    if outcome.reason:
        record.metadata["fallbackReason"] = outcome.reason


class VMLifecycleManager:
    def __init__(
        self,
        store: VMStore,
        provisioner: Provisioner,
        agent: AgentClient | None = None,
        id_factory=generate_vm_id,
    ):
        self.store = store
        self.provisioner = provisioner
        self.agent = agent
        self.id_factory = id_factory
        self.locks = KeyedLock()

    def get(self, vm_id: str) -> VMRecord:
        record = self.store.get(vm_id)
        if record is None:
            raise VMNotFoundError(vm_id)
        return record

    def find(self, vm_id: str) -> VMRecord | None:
        return self.store.get(vm_id)

    def list(self) -> list[VMRecord]:
        return self.store.list()

    def placeholder(self, vm_id: str) -> VMRecord:
        """Display-only record for ids the store does not know; never persisted."""
        record = VMRecord(
            id=vm_id,
            name=f"VM {vm_id}",
            status=VMStatus.READY.value,
            instance_type=DEFAULT_INSTANCE_TYPE,
            server_id="default-cloud-server",
            server_name=server_name("default-cloud-server"),
            last_activity=now_utc(),
        )
        result = self.provisioner.edge.describe(record)
        apply_outcome(record, ProvisionOutcome.simulated(result, self.provisioner.edge.strategy))
        record.metadata["placeholder"] = True
        return record

    def create(
        self,
        name: str | None,
        instance_type: str | None = None,
        server_id: str | None = None,
        requested_id: str | None = None,
    ) -> VMRecord:
        name = (name or "").strip()
        if not name:
            raise VMValidationError("VM name is required")
        vm_id = canonical_id(requested_id.strip()) if requested_id else self.id_factory()
        if not vm_id:
            raise VMValidationError("VM id must not be empty")
        instance_type = instance_type or DEFAULT_INSTANCE_TYPE

        with self.locks.hold(vm_id):
            existing = self.store.get(vm_id)
            if existing is not None and existing.status != VMStatus.ERROR.value:
                raise VMAlreadyExistsError(vm_id)

            record = VMRecord(
                id=vm_id,
                name=name,
                status=VMStatus.INITIALIZING.value,
                created_at=now_utc(),
                instance_type=instance_type,
                server_id=server_id,
                server_name=server_name(server_id),
                region="global",
            )
            self.store.put(record)
            metrics.inc("vm_create_requests_total")

            try:
                strategy = select_strategy(instance_type, server_id)
                logger.info(
                    "provisioning vm_id=%s strategy=%s instance_type=%s",
                    vm_id,
                    strategy.value,
                    instance_type,
                )
                outcome = self.provisioner.provision(record, strategy)
                if outcome.kind is OutcomeKind.FAILED:
                    raise ProvisioningFailedError(
                        vm_id, outcome.reason or "provisioning failed"
                    )
                apply_outcome(record, outcome)
                self._transition(record, VMStatus.READY)
                record.last_activity = now_utc()
                record.error = None
                self.store.put(record)
                self.store.append_event(
                    vm_id,
                    "created",
                    {
                        "strategy": strategy.value,
                        "provisioning": outcome.kind.value,
                        "containerId": record.container_id,
                    },
                )
                metrics.inc("vm_ready_total")
                logger.info(
                    "vm ready vm_id=%s provisioning=%s", vm_id, outcome.kind.value
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("vm creation failed vm_id=%s", vm_id)
                record.status = VMStatus.ERROR.value
                record.error = str(exc) or exc.__class__.__name__
                self.store.put(record)
                self.store.append_event(vm_id, "error", {"error": record.error})
                metrics.inc("vm_error_total")
        return record

    def start(self, vm_id: str) -> VMRecord:
        return self._reactivate(vm_id, VMStatus.READY, "started")

    def restart(self, vm_id: str) -> VMRecord:
        return self._reactivate(vm_id, VMStatus.INITIALIZING, "restarted")

    def stop(self, vm_id: str) -> VMRecord:
        with self.locks.hold(canonical_id(vm_id)):
            record = self.get(vm_id)
            self._transition(record, VMStatus.STOPPED)
            record.last_activity = now_utc()
            self.store.put(record)
            self.store.append_event(record.id, "stopped", {})
            logger.info("vm stopped vm_id=%s", record.id)
            return record

    def delete(self, vm_id: str) -> VMRecord:
        with self.locks.hold(canonical_id(vm_id)):
            record = self.get(vm_id)
            record.status = VMStatus.STOPPED.value
            record.last_activity = now_utc()
            self.store.delete(record.id)
            metrics.inc("vm_deleted_total")
            logger.info("vm deleted vm_id=%s", record.id)
            return record

    def notify_restart_best_effort(self, record: VMRecord) -> bool:
        """Ask the upstream agent to restart its browser; failures are ignored."""
        upstream = record.upstream_agent_url
        if not upstream or self.agent is None:
            return False
        try:
            self.agent.restart_browser(upstream)
            return True
        except BEST_EFFORT_IGNORED as exc:
            metrics.inc("agent_notify_failed_total")
            logger.info(
                "ignoring upstream restart failure vm_id=%s error=%s", record.id, exc
            )
            return False

    def run_script(self, vm_id: str, script_name: str | None, content: str | None) -> ScriptRun:
        if not script_name or not content:
            raise VMValidationError("script name and content are required")
        with self.locks.hold(canonical_id(vm_id)):
            record = self.get(vm_id)
            script = ScriptRun(
                id=new_log_id(),
                vm_id=record.id,
                script_name=script_name,
                script_content=content,
                status=ScriptStatus.PENDING.value,
                created_at=now_utc(),
            )
            self.store.save_script(script)
            upstream = record.upstream_agent_url
            if upstream and self.agent is not None:
                script.status = ScriptStatus.RUNNING.value
                try:
                    result = self.agent.run(
                        upstream, {"name": script_name, "script": content}
                    )
                    script.status = ScriptStatus.COMPLETED.value
                    script.result = json.dumps(result, sort_keys=True)
                except RequestFailure as exc:
                    script.status = ScriptStatus.FAILED.value
                    script.result = str(exc)
                script.executed_at = now_utc()
                script = self.store.save_script(script)
            self.store.append_event(
                record.id,
                "script_executed",
                {"scriptId": script.id, "status": script.status},
            )
            record.last_activity = now_utc()
            self.store.put(record)
            return script

    def record_metric(
        self, vm_id: str, metric_type: str | None, value: float | None, unit: str | None
    ) -> MetricSample:
        if metric_type not in METRIC_TYPES:
            raise VMValidationError(
                f"metric type must be one of {sorted(METRIC_TYPES)}"
            )
        if value is None or not unit:
            raise VMValidationError("metric value and unit are required")
        record = self.get(vm_id)
        return self.store.add_metric(
            MetricSample(
                id=new_log_id(),
                vm_id=record.id,
                metric_type=metric_type,
                value=float(value),
                unit=unit,
                timestamp=now_utc(),
            )
        )

    def list_events(self, vm_id: str) -> list[VMEvent]:
        return self.store.list_events(self.get(vm_id).id)

    def list_scripts(self, vm_id: str) -> list[ScriptRun]:
        return self.store.list_scripts(self.get(vm_id).id)

    def list_metrics(self, vm_id: str) -> list[MetricSample]:
        return self.store.list_metrics(self.get(vm_id).id)

    def _reactivate(self, vm_id: str, target: VMStatus, event_type: str) -> VMRecord:
        with self.locks.hold(canonical_id(vm_id)):
            record = self.get(vm_id)
            if not can_transition(record.status, target.value):
                raise InvalidTransitionError(record.id, record.status, target.value)
            notified = self.notify_restart_best_effort(record)
            record.status = target.value
            record.last_activity = now_utc()
            self.store.put(record)
            self.store.append_event(record.id, event_type, {"upstreamNotified": notified})
            logger.info("vm %s vm_id=%s", event_type, record.id)
            return record

    def _transition(self, record: VMRecord, target: VMStatus) -> None:
        if not can_transition(record.status, target.value):
            raise InvalidTransitionError(record.id, record.status, target.value)
        record.status = target.value
