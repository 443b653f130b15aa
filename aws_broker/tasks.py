"""Operator tasks run outside the request path."""
from __future__ import annotations

import json
import logging
from typing import Optional

import click

from .config import get_settings
from .main import build_audit_publisher, build_record_store, build_sweeper
from .orchestration.adapters import AdapterFactory
from .services.catalog import load_catalog

LOGGER = logging.getLogger(__name__)


@click.group()
@click.option("--log-level", default=None, help="Override the configured log level")
def cli(log_level: Optional[str]) -> None:
    """AWS broker maintenance tasks."""

    settings = get_settings()
    logging.basicConfig(
        level=log_level or settings.logging.level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@cli.command()
@click.option("--mark-stale-failed", is_flag=True, help="Set stale records to provisioning-failed")
@click.option("--remove-abandoned", is_flag=True, help="Remove records whose resource and owner are gone")
def reconcile(mark_stale_failed: bool, remove_abandoned: bool) -> None:
    """Compare instance records with provider resources and platform ownership."""

    settings = get_settings()
    if mark_stale_failed or remove_abandoned:
        policy = settings.reconcile.model_copy(
            update={
                "mark_stale_records_failed": mark_stale_failed or settings.reconcile.mark_stale_records_failed,
                "remove_abandoned_records": remove_abandoned or settings.reconcile.remove_abandoned_records,
            }
        )
        settings = settings.model_copy(update={"reconcile": policy})

    catalog = load_catalog(settings.catalog_file)
    record_store, redis_client = build_record_store(settings)
    adapter_factory = AdapterFactory(settings)
    sweeper = build_sweeper(settings, catalog, record_store, adapter_factory, build_audit_publisher(settings))
    try:
        report = sweeper.sweep()
    finally:
        adapter_factory.dispose()
        if redis_client is not None:
            redis_client.close()

    click.echo(json.dumps(report.to_dict(), indent=2))
    if report.errors:
        raise SystemExit(1)


__all__ = ["cli", "reconcile"]
