from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, Iterable, Optional

from redis_operator.core.topology import NodeHealth, TopologyNode, TopologySnapshot
from redis_operator.providers.protocols import ClusterAdmin, MemberHandle, MemberProvider
from redis_operator.utils.diagnostics import OperatorError

logger = logging.getLogger(__name__)


class SnapshotBuilder:
    """Probes every expected member concurrently and assembles a TopologySnapshot."""

    def __init__(
        self,
        members: MemberProvider,
        admin: ClusterAdmin,
        probe_timeout: float = 2.0,
        workers: int = 8,
    ) -> None:
        self.members = members
        self.admin = admin
        self.probe_timeout = probe_timeout
        self.workers = workers

    def build(self, expected_names: Iterable[str]) -> TopologySnapshot:
        """
        Build a fresh snapshot for `expected_names`.

        Listing members is the only step whose failure aborts the build; every
        per-node failure is recorded as Unreachable instead of being omitted.
        """
        expected = list(dict.fromkeys(expected_names))
        handles: Dict[str, MemberHandle] = {handle.name: handle for handle in self.members.list_members()}

        nodes: Dict[str, TopologyNode] = {}
        if expected:
            executor = ThreadPoolExecutor(max_workers=min(self.workers, len(expected)))
            try:
                futures: Dict[str, Future] = {
                    name: executor.submit(self._probe, name, handles.get(name)) for name in expected
                }
                # Per-call timeouts bound each probe, so joining the executor below cannot hang;
                # this deadline covers health + topology query.
                wait(futures.values(), timeout=self.probe_timeout * 2)
                for name, future in futures.items():
                    nodes[name] = self._collect(name, future, handles.get(name))
            finally:
                executor.shutdown(wait=True, cancel_futures=True)

        unexpected = sorted(name for name in handles if name not in nodes)
        if unexpected:
            logger.warning("Members without a blueprint entry: %s", ", ".join(unexpected))

        return TopologySnapshot(nodes=nodes, unexpected=unexpected)

    def _collect(self, name: str, future: Future, handle: Optional[MemberHandle]) -> TopologyNode:
        address = handle.address if handle else None
        if not future.done():
            future.cancel()
            return TopologyNode(name=name, health=NodeHealth.UNREACHABLE, address=address, error="probe timed out")

        try:
            return future.result()
        except Exception as exc:
            logger.warning("Probe of %s failed unexpectedly: %s", name, exc)
            return TopologyNode(name=name, health=NodeHealth.UNREACHABLE, address=address, error=str(exc))

    def _probe(self, name: str, handle: Optional[MemberHandle]) -> TopologyNode:
        if handle is None:
            return TopologyNode(name=name, health=NodeHealth.UNREACHABLE, error="no backing member")

        if handle.address is None:
            return TopologyNode(
                name=name,
                health=NodeHealth.UNREACHABLE,
                config=handle.config,
                error="member has no address yet",
            )

        try:
            health = self.members.probe_health(handle)
        except OperatorError as exc:
            health = NodeHealth.UNREACHABLE
            logger.debug("Health probe of %s failed: %s", name, exc)

        if health != NodeHealth.OK:
            return TopologyNode(
                name=name,
                health=health,
                address=handle.address,
                config=handle.config,
                error="health probe failed",
            )

        try:
            topology = self.admin.query_topology(handle.address)
        except OperatorError as exc:
            return TopologyNode(
                name=name,
                health=NodeHealth.UNREACHABLE,
                address=handle.address,
                config=handle.config,
                error=exc.message,
            )

        return TopologyNode(
            name=name,
            health=NodeHealth.OK,
            address=handle.address,
            node_id=topology.node_id,
            role=topology.role,
            leader_id=topology.myself.leader_id,
            slots=list(topology.myself.slots),
            peers=[peer.node_id for peer in topology.peers],
            config=handle.config,
        )
