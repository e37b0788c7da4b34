import threading
import typer
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from redis_operator.config.loader import load_config
from redis_operator.core.context import OperatorContext
from redis_operator.core.models import ClusterDeclaration, StoreSettings
from redis_operator.cli.formatter import OutputFormatter, configure_logging
from redis_operator.infrastructure.database import SqlKeyValueBackend, initialize_store_engine
from redis_operator.providers.memory import SimulatedDeclarationSource, SimulatedPlatform
from redis_operator.runtime.admin_rpc import AdminRPCServer, send_admin_command
from redis_operator.runtime.controller import OperatorController
from redis_operator.runtime.reconciler import ClusterReconciler, ReconcileResult
from redis_operator.utils.diagnostics import OperatorError

app = typer.Typer(name="redis-operator", help="Redis cluster operator", rich_markup_mode=None)

DEFAULT_CONFIG = Path("operator.yaml")


def _load_context(config_path: Path) -> OperatorContext:
    try:
        return OperatorContext(config_dict=load_config(config_path))
    except (ValueError, ValidationError) as exc:
        OutputFormatter.log(f"Invalid configuration: {exc}", severity="error")
        raise typer.Exit(code=1)


def _report_result(result: ReconcileResult) -> None:
    if result.state is None:
        OutputFormatter.log(f"{result.instance}: reconciliation stopped {result.report}".rstrip(), severity="warning")
        return
    severity = "success" if result.state.value == "Ready" else "info"
    OutputFormatter.log(f"{result.instance}: {result.report}", severity=severity)


def _admin_call(command: str, instance: str, config_path: Path, host: Optional[str], port: Optional[int]) -> None:
    context = _load_context(config_path)
    effective_host = host if host is not None else context.admin.host
    effective_port = port if port is not None else context.admin.port
    try:
        response = send_admin_command(effective_host, effective_port, command, instance)
    except OSError as exc:
        OutputFormatter.log(f"Operator admin API at {effective_host}:{effective_port} is unreachable: {exc}", severity="error")
        raise typer.Exit(code=1)

    if response.output:
        typer.echo(response.output)
    if response.data is not None:
        OutputFormatter.print_data(response.data)
    if not response.ok:
        OutputFormatter.log(response.error or f"{command} failed.", severity="error")
        raise typer.Exit(code=1)


@app.command()
def run(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to operator.yaml."),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n", help="Namespace to watch."),
    admin: Optional[bool] = typer.Option(None, "--admin/--no-admin", help="Serve the admin RPC API."),
):
    """
    Reconcile every RedisCluster resource in a namespace until interrupted.
    """
    from kubernetes import client

    from redis_operator.providers.kubernetes import (
        KubernetesDeclarationSource,
        KubernetesMemberProvider,
        load_kubernetes_config,
    )
    from redis_operator.providers.redis_admin import RedisClusterAdmin

    context = _load_context(config)
    configure_logging(context.settings.log_level)
    settings = context.settings
    effective_namespace = namespace or settings.namespace

    try:
        load_kubernetes_config(context.kubernetes.in_cluster)
    except Exception as exc:
        OutputFormatter.log(f"Unable to load Kubernetes credentials: {exc}", severity="error")
        raise typer.Exit(code=1)

    core_api = client.CoreV1Api()
    source = KubernetesDeclarationSource(client.CustomObjectsApi(), effective_namespace, context.kubernetes)
    backend = SqlKeyValueBackend(initialize_store_engine(context.store, base_dir=config.parent))
    reconciler = ClusterReconciler(
        source=source,
        members_for=lambda instance: KubernetesMemberProvider(
            core_api,
            instance,
            effective_namespace,
            context.kubernetes,
            redis_port=settings.redis_port,
            probe_timeout=settings.probe_timeout_seconds,
        ),
        admin=RedisClusterAdmin(command_timeout=settings.command_timeout_seconds),
        backend=backend,
        settings=settings,
    )
    controller = OperatorController(reconciler)

    admin_enabled = admin if admin is not None else context.admin.enabled
    admin_server: Optional[AdminRPCServer] = None
    if admin_enabled:
        admin_server = AdminRPCServer(context.admin.host, context.admin.port, controller)
        threading.Thread(target=admin_server.serve_forever, name="admin-rpc", daemon=True).start()
        OutputFormatter.log(f"Admin API listening on {context.admin.host}:{admin_server.port}", severity="info")

    try:
        started = controller.start()
    except OperatorError as exc:
        OutputFormatter.log(f"Unable to list clusters: {exc}", severity="error")
        started = []
    OutputFormatter.log(
        f"Watching namespace '{effective_namespace}' ({len(started)} clusters).",
        severity="success",
    )

    try:
        controller.wait(settings.requeue_seconds)
    except KeyboardInterrupt:
        OutputFormatter.log("Interrupted. Shutting down.", severity="info")
    finally:
        controller.stop()
        if admin_server is not None:
            admin_server.shutdown()


@app.command()
def simulate(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to operator.yaml."),
    instance: str = typer.Option("demo", "--instance", "-i", help="Instance name when none is configured."),
    leaders: int = typer.Option(3, "--leaders", min=1, help="Leader count when no instance is configured."),
    replicas: int = typer.Option(1, "--replicas", min=0, help="Replicas per leader when no instance is configured."),
    ticks: int = typer.Option(6, "--ticks", min=1, help="Reconcile ticks to run per instance."),
    kill: List[str] = typer.Option([], "--kill", help="Node to crash once the event tick is reached (repeatable)."),
    scale_to: Optional[int] = typer.Option(None, "--scale-to", min=1, help="Leader count to declare at the event tick."),
    event_tick: int = typer.Option(2, "--event-tick", min=1, help="Tick after which events are applied."),
    store: str = typer.Option("sqlite://", "--store", help="SQLAlchemy URL of the blueprint store."),
):
    """
    Reconcile in-memory clusters for a number of ticks and print the outcome.
    """
    context = _load_context(config)
    configure_logging(context.settings.log_level)

    declarations = dict(context.instances) or {
        instance: ClusterDeclaration(leader_count=leaders, replicas_per_leader=replicas)
    }
    platform = SimulatedPlatform(port=context.settings.redis_port)
    source = SimulatedDeclarationSource()
    for name, declaration in declarations.items():
        source.declare(name, declaration)

    backend = SqlKeyValueBackend(initialize_store_engine(StoreSettings(url=store)))
    reconciler = ClusterReconciler(source, platform.members, platform, backend, context.settings)
    controller = OperatorController(reconciler, on_result=_report_result)

    summary = {}
    for name in sorted(declarations):
        for tick in range(1, ticks + 1):
            result = controller.reconcile_once(name)
            if result.stopped:
                break
            if tick == event_tick:
                for node in kill:
                    try:
                        platform.kill(name, node)
                        OutputFormatter.log(f"{name}: crashed {node}", severity="warning")
                    except KeyError:
                        OutputFormatter.log(f"{name}: no node named {node}", severity="error")
                if scale_to is not None:
                    declared = declarations[name].model_copy(update={"leader_count": scale_to})
                    source.declare(name, declared)
                    OutputFormatter.log(f"{name}: declared {scale_to} leaders", severity="warning")

        dump = controller.dump(name)
        OutputFormatter.print_blueprint(name, dump["state"], dump["blueprint"], dump["snapshot"])
        summary[name] = {"state": dump["state"], "history": source.history.get(name, [])}

    OutputFormatter.print_data(summary)


@app.command()
def reconcile(
    instance: str = typer.Argument(..., help="Cluster instance name."),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", min=1, max=65535),
):
    """
    Trigger an immediate reconcile tick on a running operator.
    """
    _admin_call("reconcile", instance, config, host, port)


@app.command()
def reset(
    instance: str = typer.Argument(..., help="Cluster instance name."),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", min=1, max=65535),
):
    """
    Force the cluster back to Reset; the next tick rebuilds it from scratch.
    """
    _admin_call("reset", instance, config, host, port)


@app.command()
def rebalance(
    instance: str = typer.Argument(..., help="Cluster instance name."),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", min=1, max=65535),
):
    """
    Rebalance slots across leaders, run against a healthy leader.
    """
    _admin_call("rebalance", instance, config, host, port)


@app.command()
def fix(
    instance: str = typer.Argument(..., help="Cluster instance name."),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", min=1, max=65535),
):
    """
    Repair slot coverage, run against a healthy leader.
    """
    _admin_call("fix", instance, config, host, port)


@app.command()
def dump(
    instance: str = typer.Argument(..., help="Cluster instance name."),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", min=1, max=65535),
):
    """
    Print the blueprint and a fresh snapshot of a cluster as JSON.
    """
    _admin_call("dump", instance, config, host, port)


if __name__ == "__main__":
    app()
