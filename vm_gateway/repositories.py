from __future__ import annotations

import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import fields
from itertools import count
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from vm_gateway.db import session_scope
from vm_gateway.models import (
    MetricSample,
    ScriptRun,
    VMEvent,
    VMRecord,
    VMRow,
    now_utc,
)


ALIAS_PREFIX = "working-vm-"


def alias_key(vm_id: str) -> str:
    return f"{ALIAS_PREFIX}{vm_id}"


def canonical_id(key: str) -> str:
    if key.startswith(ALIAS_PREFIX) and len(key) > len(ALIAS_PREFIX):
        return key[len(ALIAS_PREFIX) :]
    return key


def _lookup_keys(key: str) -> list[str]:
    canonical = canonical_id(key)
    return [key] if canonical == key else [key, canonical]


class VMStore(ABC):
    """Authoritative VM records keyed by canonical id.

    A record is reachable by its id and by ``working-vm-<id>``; the alias is
    resolved on lookup and never stored as a separate entry.
    """

    @abstractmethod
    def put(self, record: VMRecord) -> VMRecord: ...

    @abstractmethod
    def get(self, key: str) -> VMRecord | None: ...

    @abstractmethod
    def list(self) -> list[VMRecord]: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def append_event(
        self, vm_id: str, event_type: str, data: dict | None = None
    ) -> VMEvent: ...

    @abstractmethod
    def list_events(self, vm_id: str) -> list[VMEvent]: ...

    @abstractmethod
    def save_script(self, script: ScriptRun) -> ScriptRun: ...

    @abstractmethod
    def list_scripts(self, vm_id: str) -> list[ScriptRun]: ...

    @abstractmethod
    def add_metric(self, sample: MetricSample) -> MetricSample: ...

    @abstractmethod
    def list_metrics(self, vm_id: str) -> list[MetricSample]: ...


def new_log_id() -> str:
    return uuid.uuid4().hex


class InMemoryVMStore(VMStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, VMRecord] = {}
        self._events: dict[str, list[VMEvent]] = {}
        self._scripts: dict[str, list[ScriptRun]] = {}
        self._metrics: dict[str, list[MetricSample]] = {}
        self._event_ids = count(1)

    def _resolve(self, key: str) -> VMRecord | None:
        for candidate in _lookup_keys(key):
            record = self._records.get(candidate)
            if record is not None:
                return record
        return None

    def put(self, record: VMRecord) -> VMRecord:
        with self._lock:
            self._records[record.id] = record
        return record

    def get(self, key: str) -> VMRecord | None:
        with self._lock:
            return self._resolve(key)

    def list(self) -> list[VMRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def delete(self, key: str) -> bool:
        with self._lock:
            record = self._resolve(key)
            if record is None:
                return False
            del self._records[record.id]
            self._events.pop(record.id, None)
            self._scripts.pop(record.id, None)
            self._metrics.pop(record.id, None)
            return True

    def append_event(
        self, vm_id: str, event_type: str, data: dict | None = None
    ) -> VMEvent:
        event = VMEvent(
            id=next(self._event_ids),
            vm_id=vm_id,
            event_type=event_type,
            event_data=json.dumps(data or {}, sort_keys=True),
            timestamp=now_utc(),
        )
        with self._lock:
            self._events.setdefault(vm_id, []).append(event)
        return event

    def list_events(self, vm_id: str) -> list[VMEvent]:
        with self._lock:
            return list(self._events.get(canonical_id(vm_id), []))

    def save_script(self, script: ScriptRun) -> ScriptRun:
        with self._lock:
            runs = self._scripts.setdefault(script.vm_id, [])
            if all(existing is not script for existing in runs):
                runs.append(script)
        return script

    def list_scripts(self, vm_id: str) -> list[ScriptRun]:
        with self._lock:
            return list(self._scripts.get(canonical_id(vm_id), []))

    def add_metric(self, sample: MetricSample) -> MetricSample:
        with self._lock:
            self._metrics.setdefault(sample.vm_id, []).append(sample)
        return sample

    def list_metrics(self, vm_id: str) -> list[MetricSample]:
        with self._lock:
            return list(self._metrics.get(canonical_id(vm_id), []))


_ROW_COLUMNS = {
    "desktop_url": "novnc_url",
    "origin_desktop_url": "origin_novnc_url",
    "public_address": "public_ip",
    "runtime_version": "node_version",
}


def record_to_row_values(record: VMRecord) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for item in fields(VMRecord):
        value = getattr(record, item.name)
        if item.name == "metadata":
            values["metadata_json"] = json.dumps(value or {}, sort_keys=True)
            continue
        values[_ROW_COLUMNS.get(item.name, item.name)] = value
    return values


def row_to_record(row: VMRow) -> VMRecord:
    kwargs: dict[str, Any] = {}
    for item in fields(VMRecord):
        if item.name == "metadata":
            kwargs["metadata"] = json.loads(row.metadata_json or "{}")
            continue
        kwargs[item.name] = getattr(row, _ROW_COLUMNS.get(item.name, item.name))
    return VMRecord(**kwargs)


class SqlVMStore(VMStore):
    """Relational store; every call runs in its own short session."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _row(self, session, key: str) -> VMRow | None:
        for candidate in _lookup_keys(key):
            row = session.get(VMRow, candidate)
            if row is not None:
                return row
        return None

    def put(self, record: VMRecord) -> VMRecord:
        with session_scope(self.session_factory) as session:
            session.merge(VMRow(**record_to_row_values(record)))
        return record

    def get(self, key: str) -> VMRecord | None:
        with session_scope(self.session_factory) as session:
            row = self._row(session, key)
            return row_to_record(row) if row is not None else None

    def list(self) -> list[VMRecord]:
        with session_scope(self.session_factory) as session:
            rows = session.scalars(select(VMRow).order_by(VMRow.created_at.desc()))
            return [row_to_record(row) for row in rows]

    def delete(self, key: str) -> bool:
        with session_scope(self.session_factory) as session:
            row = self._row(session, key)
            if row is None:
                return False
            for model in (VMEvent, ScriptRun, MetricSample):
                session.execute(delete(model).where(model.vm_id == row.id))
            session.delete(row)
            return True

    def append_event(
        self, vm_id: str, event_type: str, data: dict | None = None
    ) -> VMEvent:
        with session_scope(self.session_factory) as session:
            event = VMEvent(
                vm_id=vm_id,
                event_type=event_type,
                event_data=json.dumps(data or {}, sort_keys=True),
                timestamp=now_utc(),
            )
            session.add(event)
            session.flush()
            return event

    def list_events(self, vm_id: str) -> list[VMEvent]:
        with session_scope(self.session_factory) as session:
            query = (
                select(VMEvent)
                .where(VMEvent.vm_id == canonical_id(vm_id))
                .order_by(VMEvent.id.asc())
            )
            return list(session.scalars(query))

    def save_script(self, script: ScriptRun) -> ScriptRun:
        with session_scope(self.session_factory) as session:
            return session.merge(script)

    def list_scripts(self, vm_id: str) -> list[ScriptRun]:
        with session_scope(self.session_factory) as session:
            query = (
                select(ScriptRun)
                .where(ScriptRun.vm_id == canonical_id(vm_id))
                .order_by(ScriptRun.created_at.asc())
            )
            return list(session.scalars(query))

    def add_metric(self, sample: MetricSample) -> MetricSample:
        with session_scope(self.session_factory) as session:
            session.add(sample)
            return sample

    def list_metrics(self, vm_id: str) -> list[MetricSample]:
        with session_scope(self.session_factory) as session:
            query = (
                select(MetricSample)
                .where(MetricSample.vm_id == canonical_id(vm_id))
                .order_by(MetricSample.timestamp.asc())
            )
            return list(session.scalars(query))
