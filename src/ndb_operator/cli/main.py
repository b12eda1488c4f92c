"""ndb-operator CLI — run the operator and its admission webhook.

Commands:
    run        Start informers, the event router and the sync workers
    webhook    Serve the admission webhook endpoints over HTTPS
    validate   Run the admission checks against a manifest offline
"""

from __future__ import annotations

import dataclasses
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

import click
import yaml

from ndb_operator import __version__
from ndb_operator.admission import NdbAdmissionController, apply_patch
from ndb_operator.config import ConfigError, OperatorConfig, load_config
from ndb_operator.controller.controller import ControllerError, new_controller
from ndb_operator.kube.client import KubeAPIError
from ndb_operator.models import AdmissionDecision

logger = logging.getLogger(__name__)


def _load(config_path: str | None) -> OperatorConfig:
    try:
        return load_config(config_path)
    except (ConfigError, FileNotFoundError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_manifest(path: str) -> dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} does not contain a YAML mapping")
    return data


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path", default=None,
    help="Path to ndb-operator.yaml (auto-discovered when omitted)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """NDB Operator: run MySQL Cluster on Kubernetes."""
    ctx.obj = config_path


# --- run command ---


@cli.command()
@click.option("--namespace", "-n", default=None, help="Watch a single namespace")
@click.option("--workers", type=int, default=None, help="Number of sync workers")
@click.option("--kubeconfig", default=None, help="Path to kubeconfig")
@click.option("--in-cluster", is_flag=True, help="Use the pod service account")
@click.pass_obj
def run(
    config_path: str | None,
    namespace: str | None,
    workers: int | None,
    kubeconfig: str | None,
    in_cluster: bool,
) -> None:
    """Start the operator and block until SIGINT/SIGTERM."""
    cfg = _load(config_path)
    _setup_logging(cfg.log_level)

    overrides: dict[str, Any] = {
        "namespace": namespace,
        "workers": workers,
        "kubeconfig": kubeconfig,
        "in_cluster": in_cluster or None,
    }
    cfg = dataclasses.replace(cfg, **{k: v for k, v in overrides.items() if v is not None})

    stop_event = threading.Event()

    def _stop(signum: int, _frame: Any) -> None:
        logger.info("Received signal %d, stopping", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    try:
        controller, informers, router = new_controller(cfg)
        scope = cfg.namespace or "all namespaces"
        logger.info("NDB Operator %s watching %s with %d workers", __version__, scope, cfg.workers)
        controller.run(cfg.workers, stop_event, informers=informers, router=router)
    except (ControllerError, KubeAPIError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


# --- webhook command ---


@cli.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", type=int, default=None, help="Port number")
@click.option("--certfile", default=None, help="TLS certificate file")
@click.option("--keyfile", default=None, help="TLS private key file")
@click.pass_obj
def webhook(
    config_path: str | None,
    host: str | None,
    port: int | None,
    certfile: str | None,
    keyfile: str | None,
) -> None:
    """Serve the validating and mutating admission endpoints."""
    import uvicorn

    from ndb_operator.admission.server import create_app

    cfg = _load(config_path)
    _setup_logging(cfg.log_level)

    host = host or cfg.webhook_host
    port = port or cfg.webhook_port
    certfile = certfile or cfg.webhook_certfile
    keyfile = keyfile or cfg.webhook_keyfile
    if bool(certfile) != bool(keyfile):
        click.echo("Error: --certfile and --keyfile must be given together", err=True)
        sys.exit(1)

    scheme = "https" if certfile else "http"
    click.echo(f"NDB Operator webhook — {scheme}://{host}:{port}")
    uvicorn.run(
        create_app(),
        host=host,
        port=port,
        ssl_certfile=certfile,
        ssl_keyfile=keyfile,
        log_level=cfg.log_level.lower(),
    )


# --- validate command ---


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--old", "old_manifest", default=None, type=click.Path(exists=True, dir_okay=False),
    help="Current version of the resource; validates as an update",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
def validate(manifest: str, old_manifest: str | None, json_output: bool) -> None:
    """Check MANIFEST against the admission rules without a cluster."""
    controller = NdbAdmissionController()
    try:
        raw = _read_manifest(manifest)
        old = controller.decode(_read_manifest(old_manifest)) if old_manifest else None
        patch = controller.mutate(controller.decode(raw))
        # Validation sees the object as the API server would store it.
        new = controller.decode(apply_patch(raw, patch))
    except (ValueError, yaml.YAMLError) as e:
        click.echo(click.style("ERROR", fg="red") + f"  {e}", err=True)
        sys.exit(1)

    if old is None:
        decision = controller.validate_create(new)
    else:
        decision = controller.validate_update(old, new)
    if decision.allowed:
        decision = AdmissionDecision.allow(patch)

    if json_output:
        click.echo(json.dumps(decision.model_dump(mode="json"), indent=2))
    elif decision.allowed:
        click.echo(click.style("ALLOW", fg="green", bold=True) + f" — {new.key}")
        for op in decision.patch:
            click.echo(f"  patch: {op.op} {op.path} = {json.dumps(op.value)}")
    else:
        color = "yellow" if decision.retryable else "red"
        click.echo(click.style("DENY", fg=color, bold=True) + f" — {decision.reason} ({decision.code})")
        click.echo(f"  {decision.message}")

    if not decision.allowed:
        sys.exit(1)
