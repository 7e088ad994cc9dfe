from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

_LOGGER = logging.getLogger("mcp.datalayer.instance")


@dataclass(frozen=True, slots=True)
class InstanceIdentity:
    instance_id: str
    pid: int
    started_at: int  # epoch ms

    @classmethod
    def create(cls) -> InstanceIdentity:
        return cls(instance_id=uuid.uuid4().hex, pid=os.getpid(), started_at=int(time.time() * 1000))

    def to_json(self) -> dict[str, Any]:
        return {"instanceId": self.instance_id, "pid": self.pid, "startedAt": self.started_at}

    @classmethod
    def from_json(cls, data: Any) -> InstanceIdentity | None:
        if not isinstance(data, dict):
            return None
        instance_id = data.get("instanceId")
        if not isinstance(instance_id, str) or not instance_id:
            return None
        try:
            pid = int(data.get("pid") or 0)
            started_at = int(data.get("startedAt") or 0)
        except (TypeError, ValueError):
            pid, started_at = 0, 0
        return cls(instance_id=instance_id, pid=pid, started_at=started_at)


def read_lock_file(path: Path) -> InstanceIdentity | None:
    try:
        raw = path.read_text(encoding="utf-8")
        return InstanceIdentity.from_json(json.loads(raw))
    except (OSError, ValueError):
        return None


class _LockChangeHandler(FileSystemEventHandler):
    def __init__(self, registry: InstanceRegistry) -> None:
        super().__init__()
        self._registry = registry

    def on_any_event(self, event: FileSystemEvent) -> None:
        target = self._registry.path
        for raw in (getattr(event, "src_path", None), getattr(event, "dest_path", None)):
            if not raw:
                continue
            if isinstance(raw, bytes):
                raw = os.fsdecode(raw)
            if Path(raw) == target:
                self._registry._on_lock_changed()
                return


@dataclass
class InstanceRegistry:
    """Last-writer-wins leadership marker shared by every server process on the machine.

    `claim()` overwrites the lock with this process's identity. A process is active
    while the lock still names it. The watch only lowers the in-memory flag early;
    `is_active()` always confirms against disk because watch events can be missed.
    """

    path: Path
    identity: InstanceIdentity = field(default_factory=InstanceIdentity.create)
    watch: bool = True
    _active: bool = False
    _observer: Any | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self) -> None:
        self.path = Path(self.path).expanduser().resolve()

    @property
    def instance_id(self) -> str:
        return self.identity.instance_id

    def claim(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(f".{self.path.name}.{self.identity.pid}.{self.instance_id[:8]}.tmp")
            tmp.write_text(json.dumps(self.identity.to_json(), indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            # Non-fatal: the next is_active() check reports us as not leading.
            _LOGGER.warning("instance lock write failed path=%s error=%s", self.path, exc)
        with self._lock:
            self._active = True
        if self.watch:
            self._start_watch()
        _LOGGER.info("claimed instance lock instanceId=%s path=%s", self.instance_id, self.path)

    def is_active(self) -> bool:
        with self._lock:
            if not self._active:
                return False
        current = read_lock_file(self.path)
        return current is not None and current.instance_id == self.instance_id

    def info(self) -> dict[str, Any]:
        return {**self.identity.to_json(), "lockPath": str(self.path)}

    def close(self) -> None:
        observer = self._observer
        self._observer = None
        if observer is None:
            return
        with contextlib.suppress(Exception):
            observer.stop()
            observer.join(timeout=1.0)

    def _start_watch(self) -> None:
        if self._observer is not None:
            return
        try:
            observer = Observer()
            observer.daemon = True
            observer.schedule(_LockChangeHandler(self), str(self.path.parent), recursive=False)
            observer.start()
        except Exception as exc:  # noqa: BLE001
            # The watch is an optimization; is_active() stays correct without it.
            _LOGGER.info("instance lock watch unavailable: %s", exc)
            return
        self._observer = observer

    def _on_lock_changed(self) -> None:
        current = read_lock_file(self.path)
        if current is None or current.instance_id == self.instance_id:
            return
        with self._lock:
            was_active = self._active
            self._active = False
        if was_active:
            _LOGGER.warning(
                "instance superseded instanceId=%s newInstanceId=%s newPid=%s",
                self.instance_id,
                current.instance_id,
                current.pid,
            )


__all__ = ["InstanceIdentity", "InstanceRegistry", "read_lock_file"]
