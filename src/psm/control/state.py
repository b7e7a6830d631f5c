import asyncio
import json
import os
import tempfile
from dataclasses import dataclass, asdict, fields, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from psm.config import DEFAULT_STATE_DIR
from psm.errors import PersistenceError, SlotNotFound, StatusMismatch


class SlotStatus(str, Enum):
    STOPPED = "Stopped"
    CREATING = "Creating"
    RUNNING = "Running"
    STOPPING = "Stopping"

    def __str__(self) -> str:
        return self.value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class InstanceRef:
    region: str
    instance_id: str


@dataclass
class SlotRecord:
    name: str
    instance_class: str
    status: SlotStatus = SlotStatus.STOPPED
    save_name: str | None = None
    endpoint: str | None = None
    region: str | None = None
    instance_id: str | None = None
    updated_at: str = ""

    def __post_init__(self):
        self.status = SlotStatus(self.status)
        if not self.updated_at:
            self.updated_at = _now()

    @property
    def instance(self) -> InstanceRef | None:
        if self.region and self.instance_id:
            return InstanceRef(region=self.region, instance_id=self.instance_id)
        return None

    def check_invariants(self) -> None:
        """Raise ValueError if the resource fields disagree with the status."""
        has_endpoint = bool(self.endpoint)
        has_region = bool(self.region)
        has_instance = bool(self.instance_id)
        if has_region != has_instance:
            raise ValueError(f"{self.name}: region and instance_id must be set together")
        if self.status == SlotStatus.STOPPED:
            ok = not (has_endpoint or has_instance)
        elif self.status == SlotStatus.CREATING:
            ok = not has_endpoint
        else:
            ok = has_endpoint and has_instance
        if not ok:
            raise ValueError(
                f"{self.name}: inconsistent fields for {self.status} "
                f"(endpoint={self.endpoint}, region={self.region}, instance_id={self.instance_id})"
            )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SlotRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def __str__(self) -> str:
        line = f"{self.name} {self.status} {self.endpoint or 'None'}"
        extras = []
        if self.region:
            extras.append(f"region={self.region}")
        if self.instance_id:
            extras.append(f"instance={self.instance_id}")
        if self.save_name:
            extras.append(f"save={self.save_name}")
        if extras:
            line += " (" + ", ".join(extras) + ")"
        return line


class SlotState:
    """Durable record of every configured server slot.

    Every read goes back to the file, and every transition checks the current
    status, mutates, and rewrites the whole file under one store-wide lock.
    """

    def __init__(self, state_dir: Path = DEFAULT_STATE_DIR, slots=()):
        self.state_dir = state_dir
        self.state_file = state_dir / "slots.json"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        if slots:
            self.seed(slots)

    def _load(self) -> dict[str, dict]:
        if not self.state_file.exists():
            return {}
        try:
            data = json.loads(self.state_file.read_text())
        except (OSError, ValueError) as e:
            raise PersistenceError(self.state_file, f"read failed: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(self.state_file, "expected a JSON object of slots")
        return data

    def _record(self, name: str, raw) -> SlotRecord:
        try:
            return SlotRecord.from_dict(raw)
        except (AttributeError, TypeError, ValueError) as e:
            raise PersistenceError(self.state_file, f"bad record {name!r}: {e}") from e

    def _save_all(self, data: dict[str, dict]) -> None:
        payload = json.dumps(data, indent=2)
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.state_dir, prefix=".slots-", suffix=".tmp",
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.state_file)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(self.state_file, f"write failed: {e}") from e

    def seed(self, slots) -> None:
        """Add configured slots that are missing and refresh their instance class."""
        data = self._load()
        changed = False
        for slot in slots:
            current = data.get(slot.name)
            if current is None:
                data[slot.name] = SlotRecord(
                    name=slot.name, instance_class=slot.instance_class,
                ).to_dict()
                changed = True
            elif current.get("instance_class") != slot.instance_class:
                current["instance_class"] = slot.instance_class
                changed = True
        if changed:
            self._save_all(data)

    def get(self, name: str) -> SlotRecord:
        data = self._load()
        if name not in data:
            raise SlotNotFound(name)
        return self._record(name, data[name])

    def list_all(self) -> list[SlotRecord]:
        data = self._load()
        return [self._record(k, v) for k, v in data.items()]

    def render(self, name: str | None = None) -> str:
        if name is not None:
            return f"{self.get(name)}\n"
        return "".join(f"{record}\n" for record in self.list_all())

    async def _transition(
        self, name: str, expected: SlotStatus, **changes,
    ) -> tuple[SlotRecord, SlotRecord]:
        async with self._lock:
            data = self._load()
            if name not in data:
                raise SlotNotFound(name)
            before = self._record(name, data[name])
            if before.status != expected:
                raise StatusMismatch(name, expected.value, before.status.value)
            after = replace(before, updated_at=_now(), **changes)
            after.check_invariants()
            data[name] = after.to_dict()
            self._save_all(data)
            return before, after

    async def begin_create(self, name: str) -> SlotRecord:
        _, after = await self._transition(name, SlotStatus.STOPPED, status=SlotStatus.CREATING)
        return after

    async def attach_instance(self, name: str, region: str, instance_id: str) -> SlotRecord:
        """Record the cloud resource as soon as it exists, so a rollback can find it."""
        _, after = await self._transition(
            name, SlotStatus.CREATING, region=region, instance_id=instance_id,
        )
        return after

    async def finish_create(
        self, name: str, endpoint: str, region: str, instance_id: str,
    ) -> SlotRecord:
        _, after = await self._transition(
            name, SlotStatus.CREATING, status=SlotStatus.RUNNING,
            endpoint=endpoint, region=region, instance_id=instance_id,
        )
        return after

    async def rollback_create(self, name: str) -> InstanceRef | None:
        before, _ = await self._transition(
            name, SlotStatus.CREATING, status=SlotStatus.STOPPED,
            endpoint=None, region=None, instance_id=None,
        )
        return before.instance

    async def begin_stop(self, name: str) -> InstanceRef:
        before, _ = await self._transition(name, SlotStatus.RUNNING, status=SlotStatus.STOPPING)
        return before.instance

    async def finish_stop(self, name: str) -> SlotRecord:
        _, after = await self._transition(
            name, SlotStatus.STOPPING, status=SlotStatus.STOPPED,
            endpoint=None, region=None, instance_id=None,
        )
        return after

    async def rollback_stop(self, name: str) -> SlotRecord:
        _, after = await self._transition(name, SlotStatus.STOPPING, status=SlotStatus.RUNNING)
        return after

    async def set_save_name(self, name: str, save_name: str) -> SlotRecord:
        _, after = await self._transition(name, SlotStatus.RUNNING, save_name=save_name)
        return after
