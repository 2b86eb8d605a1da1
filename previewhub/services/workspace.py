from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from previewhub.core.errors import InvalidPathError
from previewhub.services.files import normalize_path


logger = logging.getLogger(__name__)


def safe_target(root: Path, path: str) -> Path:
    # Resolve a project path under root, refusing anything that lands outside it.
    relative = normalize_path(path)
    base = root.resolve()
    target = (base / relative).resolve()
    if base not in target.parents:
        raise InvalidPathError(f"path escapes the workspace: {path}")
    return target


def write_file(root: Path, path: str, content: str) -> Path:
    target = safe_target(root, path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return target


def remove_file(root: Path, path: str) -> bool:
    # Missing files count as removed so replays stay harmless.
    target = safe_target(root, path)
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    return True


def write_files(root: Path, files: Mapping[str, str]) -> int:
    root.mkdir(parents=True, exist_ok=True)
    for path, content in files.items():
        write_file(root, path, content)
    return len(files)


def read_files(root: Path, *, ignore: tuple[str, ...] = ("node_modules", ".git", "dist")) -> dict[str, str]:
    files: dict[str, str] = {}
    base = root.resolve()
    for candidate in sorted(base.rglob("*")):
        if not candidate.is_file():
            continue
        relative = candidate.relative_to(base)
        if any(part in ignore for part in relative.parts):
            continue
        try:
            files[relative.as_posix()] = candidate.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            logger.debug("workspace_skip_binary path=%s", relative.as_posix())
    return files
