from __future__ import annotations

import logging
import subprocess
from contextlib import contextmanager
from typing import Iterator, List, Optional

import redis
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from redis_operator.core.models import AdminCommandResult
from redis_operator.core.naming import split_address
from redis_operator.core.topology import ClusterNodeView, NodeRole, NodeTopology, SlotRange
from redis_operator.utils.diagnostics import TopologyInconsistencyError, TransientError

logger = logging.getLogger(__name__)


def parse_slot_token(token: str) -> Optional[SlotRange]:
    """Parse one slot field of CLUSTER NODES; importing/migrating markers yield None."""
    if token.startswith("["):
        return None
    start, _, end = token.partition("-")
    return int(start), int(end or start)


def parse_cluster_nodes(text: str) -> NodeTopology:
    """Parse CLUSTER NODES output into the node's own row and its peers."""
    myself: Optional[ClusterNodeView] = None
    peers: List[ClusterNodeView] = []
    for line in text.strip().splitlines():
        parts = line.split()
        if len(parts) < 8:
            continue
        flags = set(parts[2].split(","))
        slots = [slot for slot in (parse_slot_token(token) for token in parts[8:]) if slot is not None]
        view = ClusterNodeView(
            node_id=parts[0],
            address=parts[1].split("@", 1)[0],
            role=NodeRole.LEADER if "master" in flags else NodeRole.REPLICA,
            leader_id=None if parts[3] == "-" else parts[3],
            slots=slots,
            failed=bool(flags & {"fail", "noaddr"}),
            myself="myself" in flags,
        )
        if view.myself:
            myself = view
        else:
            peers.append(view)

    if myself is None:
        raise TopologyInconsistencyError("CLUSTER NODES output has no 'myself' row")
    return NodeTopology(myself=myself, peers=peers)


def ping(address: str, timeout: float) -> bool:
    host, port = split_address(address)
    client = redis.Redis(host=host, port=port, socket_timeout=timeout, socket_connect_timeout=timeout)
    try:
        return bool(client.ping())
    except redis.exceptions.RedisError:
        return False
    finally:
        client.close()


class RedisClusterAdmin:
    """
    Cluster administration over the Redis protocol.

    Single-node commands go through redis-py; slot migration commands (rebalance,
    fix, reshard) shell out to `redis-cli --cluster`, which implements the key
    migration protocol.
    """

    def __init__(
        self,
        command_timeout: float = 10.0,
        password: Optional[str] = None,
        redis_cli: str = "redis-cli",
    ) -> None:
        self.command_timeout = command_timeout
        self.password = password
        self.redis_cli = redis_cli

    def join(self, target_addr: str, existing_member_addr: str) -> None:
        host, port = split_address(existing_member_addr)
        with self._client(target_addr) as client:
            client.execute_command("CLUSTER MEET", host, port)
        logger.debug("%s met %s", target_addr, existing_member_addr)

    def forget(self, target_addr: str, node_id: str) -> None:
        with self._client(target_addr) as client:
            client.execute_command("CLUSTER FORGET", node_id)

    def assign_replica_of(self, target_addr: str, leader_addr: str) -> None:
        with self._client(leader_addr) as client:
            leader_id = client.execute_command("CLUSTER MYID")

        # The target learns about the leader through gossip after a MEET.
        retrying = Retrying(
            stop=stop_after_delay(self.command_timeout),
            wait=wait_fixed(0.5),
            retry=retry_if_exception_type(TopologyInconsistencyError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                with self._client(target_addr) as client:
                    client.execute_command("CLUSTER REPLICATE", leader_id)

    def query_topology(self, target_addr: str) -> NodeTopology:
        with self._client(target_addr) as client:
            return parse_cluster_nodes(client.execute_command("CLUSTER NODES"))

    def add_slots(self, target_addr: str, ranges: List[SlotRange]) -> None:
        arguments: List[int] = []
        for start, end in ranges:
            arguments.extend((start, end))
        with self._client(target_addr) as client:
            client.execute_command("CLUSTER ADDSLOTSRANGE", *arguments)

    def failover(self, replica_addr: str) -> None:
        with self._client(replica_addr) as client:
            client.execute_command("CLUSTER FAILOVER")

        retrying = Retrying(
            stop=stop_after_delay(self.command_timeout),
            wait=wait_fixed(0.5),
            retry=retry_if_result(lambda role: role != NodeRole.LEADER),
        )
        try:
            retrying(lambda: self.query_topology(replica_addr).role)
        except RetryError as exc:
            raise TransientError("failover did not complete in time", node=replica_addr) from exc

    def rebalance_slots(self, any_healthy_addr: str) -> AdminCommandResult:
        return self._cluster_command("rebalance", any_healthy_addr, "--cluster-use-empty-masters")

    def fix_cluster(self, any_healthy_addr: str) -> AdminCommandResult:
        return self._cluster_command("fix", any_healthy_addr)

    def reshard(self, any_healthy_addr: str, from_node_id: str, to_node_id: str, count: int) -> AdminCommandResult:
        return self._cluster_command(
            "reshard",
            any_healthy_addr,
            "--cluster-from",
            from_node_id,
            "--cluster-to",
            to_node_id,
            "--cluster-slots",
            str(count),
        )

    @contextmanager
    def _client(self, address: str) -> Iterator[redis.Redis]:
        host, port = split_address(address)
        client = redis.Redis(
            host=host,
            port=port,
            password=self.password,
            socket_timeout=self.command_timeout,
            socket_connect_timeout=self.command_timeout,
            decode_responses=True,
        )
        try:
            yield client
        except redis.exceptions.ResponseError as exc:
            raise TopologyInconsistencyError(str(exc), node=address) from exc
        except redis.exceptions.RedisError as exc:
            raise TransientError(str(exc), node=address) from exc
        finally:
            client.close()

    def _cluster_command(self, command: str, address: str, *arguments: str) -> AdminCommandResult:
        argv = [self.redis_cli, "--cluster", command, address, *arguments, "--cluster-yes"]
        if self.password:
            argv.extend(["-a", self.password, "--no-auth-warning"])
        logger.info("Running redis-cli --cluster %s against %s", command, address)
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientError(f"redis-cli --cluster {command} timed out", node=address) from exc
        except OSError as exc:
            raise TransientError(f"could not run redis-cli: {exc}", node=address) from exc

        output = (completed.stdout + completed.stderr).strip()
        if completed.returncode != 0:
            logger.warning("redis-cli --cluster %s exited with %d", command, completed.returncode)
        return AdminCommandResult(ok=completed.returncode == 0, output=output)
