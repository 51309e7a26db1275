"""
Module pipeline helpers.

Archives come from the marketplace into a scratch directory under
``MODULES_TMP_PATH`` and end up as ``MODULES_PATH/<StudlyAlias>/`` folders
described by a ``module.json`` manifest::

    {"alias": "double-entry", "name": "Double-Entry", "category": "accounting",
     "version": "1.0.4"}

The step helpers (download/unzip/install) never raise for pipeline failures;
they return ``{"success", "error", "message", "data"}`` dicts that the apps
blueprint hands straight back to the browser. The lifecycle helpers
(uninstall/update/enable/disable) raise ``AppsError``.
"""
from __future__ import annotations

import json
import logging
import re
import shutil
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from app.backoffice.modules.apps.client import MarketplaceClient, MarketplaceError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "module.json"
ARCHIVE_NAME = "upload.zip"
_ALIAS_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,127}$")


class AppsError(RuntimeError):
    pass


@dataclass(frozen=True)
class ModulePaths:
    modules_root: Path
    tmp_root: Path


def paths_from_config(config: dict) -> ModulePaths:
    return ModulePaths(
        modules_root=Path(config["MODULES_PATH"]),
        tmp_root=Path(config["MODULES_TMP_PATH"]),
    )


def studly(alias: str) -> str:
    """'double-entry' -> 'DoubleEntry'"""
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[-_\s]+", alias or "") if part)


def short_version(version: str) -> str:
    """'2.1.13' -> '2.1'"""
    parts = (version or "").strip().split(".")
    return ".".join(parts[:2]) if parts and parts[0] else ""


def _result(success: bool, *, data: dict[str, Any] | None = None, message: str | None = None) -> dict[str, Any]:
    return {"success": success, "error": not success, "message": message, "data": data or {}}


def _scratch_dir(paths: ModulePaths, raw: str | None) -> Path:
    if not raw or not str(raw).strip():
        raise AppsError("Missing path.")
    root = paths.tmp_root.resolve()
    p = Path(str(raw).strip()).resolve()
    if p == root or not p.is_relative_to(root):
        raise AppsError("Path is outside the download area.")
    if not p.is_dir():
        raise AppsError("Download folder does not exist.")
    return p


def read_manifest(folder: Path) -> dict[str, Any]:
    manifest = folder / MANIFEST_NAME
    if not manifest.is_file():
        raise AppsError(f"{MANIFEST_NAME} not found.")
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AppsError(f"{MANIFEST_NAME} is not valid JSON.") from e
    if not isinstance(data, dict):
        raise AppsError(f"{MANIFEST_NAME} must be a JSON object.")
    alias = str(data.get("alias") or "").strip().lower()
    if not _ALIAS_RE.fullmatch(alias):
        raise AppsError(f"Invalid module alias: {alias!r}")
    data["alias"] = alias
    data.setdefault("name", alias)
    return data


def module_dir(paths: ModulePaths, alias: str) -> Path | None:
    """Installed folder of ``alias``, or None."""
    candidate = paths.modules_root / studly(alias)
    if (candidate / MANIFEST_NAME).is_file():
        return candidate
    if not paths.modules_root.is_dir():
        return None
    for child in paths.modules_root.iterdir():
        if not (child / MANIFEST_NAME).is_file():
            continue
        try:
            if read_manifest(child)["alias"] == alias:
                return child
        except AppsError:
            logger.warning("Skipping module folder with unreadable manifest: %s", child)
    return None


def _summary(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "alias": data.get("alias"),
        "name": data.get("name"),
        "category": data.get("category"),
        "version": data.get("version"),
    }


# ---------- Install steps ----------

def download_module(client: MarketplaceClient, paths: ModulePaths, path: str) -> dict[str, Any]:
    """Fetch ``apps/<path>`` into ``<tmp>/<random>/upload.zip``."""
    if not path or not path.strip():
        return _result(False, message="Missing download path.")
    try:
        payload = client.download(path)
    except MarketplaceError as e:
        logger.error("Module download failed: %s", e)
        return _result(False, message=str(e))
    if not payload:
        return _result(False, message="Marketplace returned an empty archive.")

    folder = paths.tmp_root / uuid.uuid4().hex
    folder.mkdir(parents=True, exist_ok=True)
    (folder / ARCHIVE_NAME).write_bytes(payload)
    logger.info("Downloaded module archive (%s bytes) into %s", len(payload), folder)
    return _result(True, data={"path": str(folder)})


def unzip_module(paths: ModulePaths, path: str) -> dict[str, Any]:
    try:
        folder = _scratch_dir(paths, path)
    except AppsError as e:
        return _result(False, message=str(e))

    archive = folder / ARCHIVE_NAME
    if not archive.is_file():
        return _result(False, message="Downloaded archive not found.")

    try:
        with zipfile.ZipFile(archive) as zf:
            for member in zf.namelist():
                target = (folder / member).resolve()
                if not target.is_relative_to(folder):
                    return _result(False, message=f"Archive member escapes folder: {member}")
            zf.extractall(folder)
    except zipfile.BadZipFile:
        return _result(False, message="Invalid archive (not a ZIP file).")

    archive.unlink()
    return _result(True, data={"path": str(folder)})


def _manifest_folder(folder: Path) -> Path:
    if (folder / MANIFEST_NAME).is_file():
        return folder
    # archives that wrap everything in a single top-level folder
    subdirs = [p for p in folder.iterdir() if p.is_dir()]
    if len(subdirs) == 1 and (subdirs[0] / MANIFEST_NAME).is_file():
        return subdirs[0]
    raise AppsError(f"{MANIFEST_NAME} not found.")


def install_module(paths: ModulePaths, path: str) -> dict[str, Any]:
    """Move an unzipped module into ``MODULES_PATH``; replaces an existing copy (updates)."""
    try:
        folder = _scratch_dir(paths, path)
        source = _manifest_folder(folder)
        manifest = read_manifest(source)
    except AppsError as e:
        return _result(False, message=str(e))

    dest = paths.modules_root / studly(manifest["alias"])
    paths.modules_root.mkdir(parents=True, exist_ok=True)
    if dest.exists():
        shutil.rmtree(dest)
    shutil.move(str(source), str(dest))
    shutil.rmtree(folder, ignore_errors=True)
    logger.info("Installed module files for %s into %s", manifest["alias"], dest)

    data = _summary(manifest)
    data["path"] = str(dest)
    return _result(True, data=data)


# ---------- Lifecycle ----------
#
# Module files are shared by every company; per-company state (enabled,
# installed) lives on the Module row. These helpers never write state into
# the manifest.

def uninstall_module(paths: ModulePaths, alias: str, *, remove_files: bool = True) -> dict[str, Any]:
    """
    Drop the module files when ``remove_files`` is set (no other company uses
    them). Files that are already gone are not an error: the caller still
    retires its own row.
    """
    folder = module_dir(paths, alias)
    if folder is None:
        logger.warning("Uninstalling %s: module files already removed", alias)
        return _result(True, data={"alias": alias, "name": alias, "category": None, "version": None})
    data = _summary(read_manifest(folder))
    if remove_files:
        shutil.rmtree(folder)
        logger.info("Removed module files %s", folder)
    return _result(True, data=data)


def _installed_manifest(paths: ModulePaths, alias: str) -> dict[str, Any]:
    folder = module_dir(paths, alias)
    if folder is None:
        raise AppsError(f"Module {alias!r} is not installed.")
    return read_manifest(folder)


def update_module(
    paths: ModulePaths,
    alias: str,
    client: MarketplaceClient | None = None,
    *,
    app_version: str = "",
    api_token: str = "",
) -> dict[str, Any]:
    """
    Fetch and install the marketplace's latest release when it differs from
    the installed one. The reported version is always the one on disk.
    """
    current = _installed_manifest(paths, alias)
    remote = client.get_module(alias) if client is not None else None
    latest = str((remote or {}).get("version") or "").strip()

    if latest and latest != current.get("version"):
        source = str(remote.get("download_path") or alias).strip("/")
        result = download_module(client, paths, "/".join([source, latest, app_version, api_token]))
        for step in (unzip_module, install_module):
            if not result["success"]:
                break
            result = step(paths, result["data"]["path"])
        if not result["success"]:
            raise AppsError(result["message"] or f"Could not update {alias!r}.")
        logger.info("Updated module %s from %s to %s", alias, current.get("version"), latest)

    return _result(True, data=_summary(_installed_manifest(paths, alias)))


def enable_module(paths: ModulePaths, alias: str) -> dict[str, Any]:
    return _result(True, data=_summary(_installed_manifest(paths, alias)))


def disable_module(paths: ModulePaths, alias: str) -> dict[str, Any]:
    return _result(True, data=_summary(_installed_manifest(paths, alias)))
