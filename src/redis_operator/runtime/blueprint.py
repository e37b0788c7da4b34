from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from redis_operator.core.naming import leader_name, node_sort_key, parse_node_name, replica_name
from redis_operator.core.topology import BlueprintEntry, NodeHealth, NodeRole, TopologySnapshot
from redis_operator.providers.protocols import KeyValueBackend
from redis_operator.utils.diagnostics import ConflictError

logger = logging.getLogger(__name__)


def generate_blueprint(leader_count: int, replicas_per_leader: int) -> List[BlueprintEntry]:
    """Deterministically derive the intended nodes for a declared cluster shape."""
    if leader_count < 1:
        raise ValueError("leader_count must be >= 1")
    if replicas_per_leader < 0:
        raise ValueError("replicas_per_leader must be >= 0")

    entries: List[BlueprintEntry] = []
    for leader_index in range(leader_count):
        entries.extend(group_entries(leader_index, replicas_per_leader))
    return entries


def group_entries(leader_index: int, replicas_per_leader: int) -> List[BlueprintEntry]:
    """Entries for one leader and its replicas."""
    leader = leader_name(leader_index)
    entries = [BlueprintEntry(name=leader, role=NodeRole.LEADER)]
    for replica_index in range(replicas_per_leader):
        entries.append(
            BlueprintEntry(
                name=replica_name(leader_index, replica_index),
                role=NodeRole.REPLICA,
                parent=leader,
            )
        )
    return entries


class BlueprintStore:
    """
    Durable record of the intended topology of one cluster instance.

    Reads are served from a local cache that every successful write updates, so a
    read that follows a write in the same process observes it. Writes use the
    backend's optimistic versioning; a conflicting write re-reads the record and
    re-applies the mutation a bounded number of times.
    """

    def __init__(self, backend: KeyValueBackend, instance: str, conflict_retries: int = 3) -> None:
        self.backend = backend
        self.instance = instance
        self.namespace = f"{instance}/blueprint"
        self.conflict_retries = conflict_retries
        self._cache: Dict[str, Tuple[BlueprintEntry, int]] = {}
        self._loaded = False

    def create(self, leader_count: int, replicas_per_leader: int) -> List[BlueprintEntry]:
        """Replace all content with a freshly generated blueprint in one transaction."""
        entries = generate_blueprint(leader_count, replicas_per_leader)
        self.backend.replace_all(self.namespace, {entry.name: entry.model_dump_json() for entry in entries})
        self._cache = {entry.name: (entry, 1) for entry in entries}
        self._loaded = True
        logger.info(
            "Created blueprint for %s: %d leaders, %d replicas each",
            self.instance,
            leader_count,
            replicas_per_leader,
        )
        return entries

    def refresh(self) -> None:
        """Drop the local cache and reload every entry from the backend."""
        records = self.backend.list(self.namespace)
        self._cache = {
            key: (BlueprintEntry.model_validate_json(value), version) for key, (value, version) in records.items()
        }
        self._loaded = True

    def all(self) -> List[BlueprintEntry]:
        self._ensure_loaded()
        return [self._cache[name][0] for name in sorted(self._cache, key=node_sort_key)]

    def names(self) -> List[str]:
        return [entry.name for entry in self.all()]

    def is_empty(self) -> bool:
        self._ensure_loaded()
        return not self._cache

    def get(self, name: str) -> Optional[BlueprintEntry]:
        self._ensure_loaded()
        cached = self._cache.get(name)
        return None if cached is None else cached[0]

    def leaders(self) -> List[BlueprintEntry]:
        return [entry for entry in self.all() if entry.role == NodeRole.LEADER]

    def replicas_of(self, leader: str) -> List[BlueprintEntry]:
        return [entry for entry in self.all() if entry.role == NodeRole.REPLICA and entry.parent == leader]

    def next_leader_index(self) -> int:
        indexes = [parse_node_name(entry.name)[0] for entry in self.leaders()]
        return max(indexes) + 1 if indexes else 0

    def set(self, entry: BlueprintEntry) -> BlueprintEntry:
        return self.update(entry.name, lambda _current: entry)

    def update(
        self,
        name: str,
        mutate: Callable[[Optional[BlueprintEntry]], Optional[BlueprintEntry]],
    ) -> Optional[BlueprintEntry]:
        """Apply `mutate` to the current entry and persist the result, retrying on conflict."""
        self._ensure_loaded()
        retrying = Retrying(
            stop=stop_after_attempt(self.conflict_retries),
            retry=retry_if_exception_type(ConflictError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._write(name, mutate)
        return None

    def delete(self, name: str) -> None:
        self.backend.delete(self.namespace, name)
        self._cache.pop(name, None)

    def record_observations(self, snapshot: TopologySnapshot) -> List[BlueprintEntry]:
        """Fold one tick's probe results into health markers and missed-probe counters."""
        updated: List[BlueprintEntry] = []
        for entry in self.all():
            observed_ok = snapshot.is_ok(entry.name)
            health = NodeHealth.OK if observed_ok else NodeHealth.UNREACHABLE
            missed = 0 if observed_ok else entry.missed_probes + 1
            if entry.health == health and entry.missed_probes == missed:
                continue

            def observe(current: Optional[BlueprintEntry], ok: bool = observed_ok) -> Optional[BlueprintEntry]:
                if current is None:
                    return None
                return current.model_copy(
                    update={
                        "health": NodeHealth.OK if ok else NodeHealth.UNREACHABLE,
                        "missed_probes": 0 if ok else current.missed_probes + 1,
                    }
                )

            result = self.update(entry.name, observe)
            if result is not None:
                updated.append(result)
        return updated

    def mark_replaced(self, name: str) -> None:
        """A replacement process now backs `name`; restart its loss debounce."""
        self.update(
            name,
            lambda current: None
            if current is None
            else current.model_copy(update={"health": NodeHealth.UNKNOWN, "missed_probes": 0}),
        )

    def replace_parent(self, name: str, parent: str) -> None:
        self.update(name, lambda current: None if current is None else current.model_copy(update={"parent": parent}))

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.refresh()

    def _write(
        self,
        name: str,
        mutate: Callable[[Optional[BlueprintEntry]], Optional[BlueprintEntry]],
    ) -> Optional[BlueprintEntry]:
        cached = self._cache.get(name)
        current, version = (None, None) if cached is None else cached
        next_entry = mutate(current)
        if next_entry is None:
            return None
        if next_entry.name != name:
            raise ValueError(f"Entry name '{next_entry.name}' does not match key '{name}'")

        try:
            new_version = self.backend.put(self.namespace, name, next_entry.model_dump_json(), version)
        except ConflictError:
            logger.info("Conflicting write to blueprint entry %s/%s, re-reading", self.instance, name)
            self._reload_key(name)
            raise

        self._cache[name] = (next_entry, new_version)
        return next_entry

    def _reload_key(self, name: str) -> None:
        record = self.backend.get(self.namespace, name)
        if record is None:
            self._cache.pop(name, None)
            return
        value, version = record
        self._cache[name] = (BlueprintEntry.model_validate_json(value), version)
