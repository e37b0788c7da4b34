import re
from typing import Optional, Tuple

LEADER_PREFIX = "leader"
REPLICA_INFIX = "replica"

_NODE_NAME_PATTERN = re.compile(r"^leader-(\d+)(?:-replica-(\d+))?$")


def leader_name(index: int) -> str:
    """Return the stable logical name of the leader with the given ordinal."""
    return f"{LEADER_PREFIX}-{index}"


def replica_name(leader_index: int, replica_index: int) -> str:
    """Return the stable logical name of replica `replica_index` of leader `leader_index`."""
    return f"{LEADER_PREFIX}-{leader_index}-{REPLICA_INFIX}-{replica_index}"


def parse_node_name(name: str) -> Tuple[int, Optional[int]]:
    """Split a logical node name into (leader ordinal, replica ordinal or None)."""
    match = _NODE_NAME_PATTERN.fullmatch(name)
    if match is None:
        raise ValueError(f"Not a logical node name: '{name}'")
    replica = match.group(2)
    return int(match.group(1)), None if replica is None else int(replica)


def is_node_name(name: str) -> bool:
    return _NODE_NAME_PATTERN.fullmatch(name) is not None


def node_sort_key(name: str) -> Tuple[int, int]:
    """Order leaders by ordinal, each followed by its replicas."""
    leader, replica = parse_node_name(name)
    return leader, -1 if replica is None else replica


def format_address(host: str, port: int) -> str:
    return f"{host}:{port}"


def split_address(address: str) -> Tuple[str, int]:
    """Split `host:port` into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Address must be host:port, got '{address}'")
    return host, int(port)
