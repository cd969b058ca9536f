"""
talos_provisioner/reconciler/store.py

In-memory store of resource records and published connection artifacts.

 - Records are keyed by (kind, name). `apply` creates or updates the desired
   state and bumps `metadata.generation` when the spec changes; `write_status`
   only replaces status and conditions and never bumps the generation.
 - Desired-state changes (creation, spec change, deletion request) are pushed
   to every subscriber queue as ChangeEvents. Status writes are not.
 - Readers always get deep copies, so a reconciliation pass works on its own
   copy until it writes status back.
 - With a state directory, records and artifacts are mirrored to YAML files
   (mode 0600) and reloaded by `load`.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict, List, Optional, Set, Tuple

import aiofiles
import yaml
from pydantic import BaseModel

from talos_provisioner.models.manifest import (
    KIND_ORDER,
    parse_resource,
    resource_to_yaml,
)
from talos_provisioner.models.resource import ManagedResource, utc_now
from talos_provisioner.models.validator import validate_type

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, str]


class ChangeEvent(BaseModel):
    kind: str
    name: str


def record_key(resource: ManagedResource) -> RecordKey:
    return (getattr(resource, "kind"), resource.name)


class ResourceStore:
    def __init__(self, state_dir: Optional[str] = None) -> None:
        self._records: Dict[RecordKey, ManagedResource] = {}
        self._artifacts: Dict[str, Dict[str, str]] = {}
        self._subscribers: Set[asyncio.Queue[ChangeEvent]] = set()
        self._state_dir = state_dir
        self._persist_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, kind: str, name: str) -> Optional[ManagedResource]:
        record = self._records.get((kind, name))
        return record.model_copy(deep=True) if record is not None else None

    def list(self, kind: Optional[str] = None) -> List[ManagedResource]:
        return [
            record.model_copy(deep=True)
            for (k, _), record in sorted(self._records.items())
            if kind is None or k == kind
        ]

    async def apply(self, resource: ManagedResource) -> ManagedResource:
        """
        Create a record or update its desired state.

        Status, conditions and creation time of an existing record are kept.
        The generation is bumped only when the spec actually changes.

        Returns:
            ManagedResource: A copy of the stored record.
        """
        key = record_key(resource)
        current = self._records.get(key)
        incoming = resource.model_copy(deep=True)

        if current is None:
            incoming.metadata.generation = 1
            incoming.metadata.creation_time = utc_now()
            incoming.metadata.deletion_requested = False
            self._records[key] = incoming
            logger.info("Created %s/%s", *key)
        else:
            spec_changed = getattr(current, "spec") != getattr(incoming, "spec")
            updated = current.model_copy(
                deep=True,
                update={
                    "spec": getattr(incoming, "spec"),
                    "write_connection_secret_to": incoming.write_connection_secret_to,
                },
            )
            if not spec_changed and (
                updated.write_connection_secret_to
                == current.write_connection_secret_to
            ):
                return current.model_copy(deep=True)
            if spec_changed:
                updated.metadata.generation += 1
            self._records[key] = updated
            logger.info(
                "Updated %s/%s to generation %d", *key, updated.metadata.generation
            )

        await self._persist_record(key)
        self._notify(key)
        return self._records[key].model_copy(deep=True)

    async def request_deletion(self, kind: str, name: str) -> bool:
        """Mark a record for deletion; its control loop performs the delete."""
        record = self._records.get((kind, name))
        if record is None:
            return False
        if not record.metadata.deletion_requested:
            record.metadata.deletion_requested = True
            await self._persist_record((kind, name))
            self._notify((kind, name))
        return True

    async def write_status(self, resource: ManagedResource) -> bool:
        """
        Store the status and conditions of `resource`. Desired state in the
        store is left untouched. Returns False if the record no longer exists.
        """
        key = record_key(resource)
        current = self._records.get(key)
        if current is None:
            return False
        self._records[key] = current.model_copy(
            update={
                "status": getattr(resource, "status").model_copy(deep=True),
                "conditions": [c.model_copy() for c in resource.conditions],
            }
        )
        await self._persist_record(key)
        return True

    async def remove(self, kind: str, name: str) -> None:
        if self._records.pop((kind, name), None) is None:
            return
        logger.info("Removed %s/%s", kind, name)
        if self._state_dir:
            async with self._persist_lock:
                _unlink(self._record_path((kind, name)))

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def get_artifact(self, name: str) -> Optional[Dict[str, str]]:
        details = self._artifacts.get(name)
        return dict(details) if details is not None else None

    async def publish_artifact(self, name: str, details: Dict[str, str]) -> None:
        if self._artifacts.get(name) == details:
            return
        self._artifacts[name] = dict(details)
        if self._state_dir:
            async with self._persist_lock:
                await _write_private(
                    self._artifact_path(name),
                    yaml.safe_dump(details, sort_keys=True),
                )

    async def delete_artifact(self, name: str) -> None:
        if self._artifacts.pop(name, None) is None:
            return
        if self._state_dir:
            async with self._persist_lock:
                _unlink(self._artifact_path(name))

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        self._subscribers.discard(queue)

    def _notify(self, key: RecordKey) -> None:
        event = ChangeEvent(kind=key[0], name=key[1])
        for queue in self._subscribers:
            queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _record_path(self, key: RecordKey) -> str:
        assert self._state_dir is not None
        return os.path.join(self._state_dir, "records", key[0], f"{key[1]}.yaml")

    def _artifact_path(self, name: str) -> str:
        assert self._state_dir is not None
        return os.path.join(self._state_dir, "artifacts", f"{name}.yaml")

    async def _persist_record(self, key: RecordKey) -> None:
        if not self._state_dir:
            return
        record = self._records.get(key)
        if record is None:
            return
        async with self._persist_lock:
            await _write_private(self._record_path(key), resource_to_yaml(record))

    async def load(self) -> int:
        """
        Load records and artifacts from the state directory. Loaded records keep
        their stored generation and status. Returns the number of records read.
        """
        if not self._state_dir:
            return 0

        count = 0
        for kind in KIND_ORDER:
            kind_dir = os.path.join(self._state_dir, "records", kind)
            if not os.path.isdir(kind_dir):
                continue
            for filename in sorted(os.listdir(kind_dir)):
                if not filename.endswith(".yaml"):
                    continue
                path = os.path.join(kind_dir, filename)
                async with aiofiles.open(path, "r") as handle:
                    text = await handle.read()
                resource = parse_resource(yaml.safe_load(text), source=path)
                self._records[record_key(resource)] = resource
                count += 1

        artifact_dir = os.path.join(self._state_dir, "artifacts")
        if os.path.isdir(artifact_dir):
            for filename in sorted(os.listdir(artifact_dir)):
                if not filename.endswith(".yaml"):
                    continue
                path = os.path.join(artifact_dir, filename)
                async with aiofiles.open(path, "r") as handle:
                    text = await handle.read()
                self._artifacts[filename[: -len(".yaml")]] = validate_type(
                    yaml.safe_load(text), Dict[str, str], what=path
                )

        logger.info("Loaded %d records from %s", count, self._state_dir)
        return count


async def _write_private(path: str, text: str) -> None:
    """Write `text` to `path` with mode 0600, replacing it atomically."""
    os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
    tmp_path = f"{path}.tmp"
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.close(fd)
    async with aiofiles.open(tmp_path, "w") as handle:
        await handle.write(text)
    os.replace(tmp_path, path)


def _unlink(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
