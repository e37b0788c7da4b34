import pytest
import sys
import time
from pathlib import Path

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from redis_operator.core.models import ClusterDeclaration, OperatorSettings, StoreSettings
from redis_operator.infrastructure.database import SqlKeyValueBackend, initialize_store_engine
from redis_operator.providers.memory import SimulatedDeclarationSource, SimulatedPlatform
from redis_operator.runtime.lifecycle import LifecycleState
from redis_operator.runtime.reconciler import ClusterReconciler


def make_settings(**overrides) -> OperatorSettings:
    values = dict(
        requeue_seconds=5.0,
        probe_timeout_seconds=1.0,
        command_timeout_seconds=1.0,
        ready_timeout_seconds=1.0,
        lost_node_threshold=2,
    )
    values.update(overrides)
    return OperatorSettings(**values)


def run_until(reconciler, instance: str, state: LifecycleState, max_ticks: int = 10):
    """Tick `instance` until it reports `state`; fails the test otherwise."""
    result = None
    for _ in range(max_ticks):
        result = reconciler.reconcile(instance)
        if result.state == state:
            return result
    pytest.fail(f"{instance} did not reach {state.value}; last result: {result}")


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def backend(tmp_path):
    """
    Returns a blueprint store backend on a throwaway SQLite file.
    """
    engine = initialize_store_engine(StoreSettings(url=f"sqlite:///{tmp_path / 'store.db'}"))
    return SqlKeyValueBackend(engine)


@pytest.fixture
def platform():
    return SimulatedPlatform()


@pytest.fixture
def source():
    return SimulatedDeclarationSource()


@pytest.fixture
def reconciler(source, platform, backend, settings):
    return ClusterReconciler(source, platform.members, platform, backend, settings)


@pytest.fixture
def ready_cluster(source, reconciler):
    """A 'demo' cluster of three leaders with one replica each, reconciled to Ready."""
    source.declare("demo", ClusterDeclaration(leader_count=3, replicas_per_leader=1))
    run_until(reconciler, "demo", LifecycleState.READY)
    result = reconciler.reconcile("demo")
    assert result.state == LifecycleState.READY
    return "demo"
