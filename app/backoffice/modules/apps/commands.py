from __future__ import annotations

import logging
from datetime import datetime

import click
from flask import current_app
from flask.cli import AppGroup
from flask_babel import gettext
from sqlalchemy.orm import Session

from app.backoffice.audit import record_event
from app.backoffice.db import session_scope
from app.backoffice.models import Company
from app.backoffice.modules.apps.models import Module, ModuleHistory
from app.backoffice.modules.apps.service import AppsError, ModulePaths, module_dir, paths_from_config, read_manifest

logger = logging.getLogger(__name__)

apps_cli = AppGroup("apps", help="Manage installed apps.")


def run_install_command(s: Session, paths: ModulePaths, alias: str, company_id: int) -> Module:
    """
    Register an installed module for a company: create (or restore) the Module
    row enabled and add an "installed" history row. Caller commits.
    """
    folder = module_dir(paths, alias)
    if folder is None:
        raise AppsError(f"Module {alias!r} files are not installed.")
    manifest = read_manifest(folder)

    if s.get(Company, company_id) is None:
        raise AppsError(f"Company {company_id} does not exist.")

    now = datetime.utcnow()
    module = s.query(Module).filter(Module.company_id == company_id, Module.alias == alias).one_or_none()
    if module is None:
        module = Module(company_id=company_id, alias=alias, created_at=now)
        s.add(module)
    module.status = True
    module.deleted_at = None
    module.updated_at = now
    s.flush()

    s.add(
        ModuleHistory(
            company_id=company_id,
            module_id=module.id,
            category=manifest.get("category"),
            version=manifest.get("version"),
            description=gettext("%(module)s installed", module=manifest.get("name") or alias),
        )
    )
    record_event(
        s,
        actor=None,
        action="apps.install",
        entity_type="Module",
        entity_id=str(module.id),
        metadata={"alias": alias, "version": manifest.get("version")},
        company_id=company_id,
    )
    logger.info("Registered module %s for company %s", alias, company_id)
    return module


@apps_cli.command("install")
@click.argument("alias")
@click.argument("company_id", type=int)
def install_command(alias: str, company_id: int) -> None:
    """Register the installed module ALIAS for COMPANY_ID."""
    paths = paths_from_config(current_app.config)
    try:
        with session_scope(current_app) as s:
            module = run_install_command(s, paths, alias, company_id)
    except AppsError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Installed {alias} for company {company_id} (module id {module.id}).")
