"""Stable project identifier shared by the host and external clients."""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path

from host_relay.config import Settings

logger = logging.getLogger(__name__)

_PROJECT_ID_RE = re.compile(r"^[0-9A-F]{8}$")


def derive_project_id(project_root: Path) -> str:
    digest = hashlib.sha256(str(project_root.resolve()).encode("utf-8")).hexdigest()
    return digest[:8].upper()


def resolve_project_id(settings: Settings) -> str:
    """Read the id the host persisted; derive it from the project root when absent."""

    path = settings.project_id_path
    try:
        stored = path.read_text("utf-8").strip()
    except FileNotFoundError:
        return derive_project_id(settings.project_root)
    except OSError as error:
        logger.warning("Could not read project id from %s: %s", path, error)
        return derive_project_id(settings.project_root)
    if not _PROJECT_ID_RE.match(stored):
        logger.warning("Ignoring malformed project id %r in %s", stored, path)
        return derive_project_id(settings.project_root)
    return stored


def ensure_project_id(settings: Settings) -> str:
    """Persist the project id for clients and return it."""

    project_id = resolve_project_id(settings)
    path = settings.project_id_path
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists() or path.read_text("utf-8").strip() != project_id:
        path.write_text(f"{project_id}\n", "utf-8")
    return project_id
