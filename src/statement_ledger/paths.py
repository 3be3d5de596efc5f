import os
import re
from typing import Optional

from .logging import get_logger

log = get_logger("paths")


def expand_abs(path: str) -> str:
    """Expand env vars and ~ then return absolute path."""
    return os.path.abspath(os.path.expanduser(os.path.expandvars(path or "")))


def find_project_root(start_dir: Optional[str] = None) -> str:
    """Find the repository root by walking upward from start_dir.

    Looks for common markers: .git/, pyproject.toml, .env.
    Falls back to absolute(start_dir) if nothing found.
    """
    start = os.path.abspath(start_dir or os.getcwd() or ".")
    d = start
    while True:
        if os.path.isdir(os.path.join(d, ".git")):
            return d
        for marker in ("pyproject.toml", ".env"):
            if os.path.isfile(os.path.join(d, marker)):
                return d
        parent = os.path.dirname(d)
        if parent == d:
            return start
        d = parent


def var_dir(root_dir: str) -> str:
    """Return the absolute var directory under the project root."""
    return os.path.join(os.path.abspath(root_dir), "var")


def exports_dir(root_dir: str) -> str:
    path = os.path.join(var_dir(root_dir), "exports")
    os.makedirs(path, exist_ok=True)
    return path


def export_basename(source_path: str, suffix: str) -> str:
    """File stem for exports derived from the statement file name."""
    stem = os.path.splitext(os.path.basename(source_path or ""))[0] or "statement"
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", stem).strip("-_.").lower() or "statement"
    log.debug("Export basename for %s: %s", source_path, cleaned)
    return f"{cleaned}{suffix}"
