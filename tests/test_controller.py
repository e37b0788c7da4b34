import threading

from conftest import make_settings, wait_for

from redis_operator.core.models import ClusterDeclaration
from redis_operator.runtime.controller import OperatorController
from redis_operator.runtime.lifecycle import LifecycleState
from redis_operator.runtime.reconciler import ClusterReconciler


def test_reconcile_once_reports_results(source, reconciler):
    source.declare("demo", ClusterDeclaration(leader_count=1))
    seen = []
    controller = OperatorController(reconciler, on_result=seen.append)

    result = controller.reconcile_once("demo")

    assert result.state == LifecycleState.READY
    assert seen == [result]


def test_ticks_for_one_instance_never_overlap(source, reconciler):
    source.declare("demo", ClusterDeclaration(leader_count=1))
    controller = OperatorController(reconciler)
    active = []
    overlaps = []
    original = reconciler.reconcile

    def tracked(instance):
        if active:
            overlaps.append(instance)
        active.append(instance)
        try:
            return original(instance)
        finally:
            active.remove(instance)

    reconciler.reconcile = tracked
    threads = [threading.Thread(target=controller.reconcile_once, args=("demo",)) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert overlaps == []
    assert source.history["demo"][0] == "Ready"


def test_loops_run_until_declaration_is_removed(source, platform, backend):
    settings = make_settings(
        requeue_seconds=0.2,
        probe_timeout_seconds=0.1,
        command_timeout_seconds=0.1,
        ready_timeout_seconds=0.1,
    )
    reconciler = ClusterReconciler(source, platform.members, platform, backend, settings)
    source.declare("a", ClusterDeclaration(leader_count=1, replicas_per_leader=1))
    source.declare("b", ClusterDeclaration(leader_count=2))
    controller = OperatorController(reconciler)

    try:
        assert controller.start() == ["a", "b"]
        assert controller.start() == []
        assert wait_for(lambda: source.history.get("a", []).count("Ready") >= 2)
        assert wait_for(lambda: source.history.get("b", []).count("Ready") >= 2)

        source.remove("a")
        assert wait_for(lambda: controller.running_instances() == ["b"])
    finally:
        controller.stop()

    assert controller.running_instances() == []


def test_force_reset_wakes_the_loop(source, platform, backend):
    settings = make_settings(requeue_seconds=30.0)
    reconciler = ClusterReconciler(source, platform.members, platform, backend, settings)
    source.declare("demo", ClusterDeclaration(leader_count=1))
    controller = OperatorController(reconciler)

    try:
        controller.start(["demo"])
        assert wait_for(lambda: source.history.get("demo") == ["Ready"])

        controller.force_reset("demo")

        # Without the wakeup the next tick would be 30 seconds away
        assert wait_for(lambda: source.history["demo"][-2:] == ["Reset", "Ready"])
    finally:
        controller.stop()
