from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any

from previewhub.services.scaffold import DEV_SERVER_PORT


logger = logging.getLogger(__name__)

STATIC_PORT = 3000


@dataclass(frozen=True)
class ProjectProfile:
    kind: str
    framework: str
    dev_command: str
    port: int
    install_command: str | None = "npm install"


def _load_package_json(root: Path) -> dict[str, Any] | None:
    candidate = root / "package.json"
    if not candidate.is_file():
        return None
    try:
        data = json.loads(candidate.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("project_package_json_invalid path=%s error=%s", candidate, exc)
        return None
    return data if isinstance(data, dict) else None


def _static(port: int) -> ProjectProfile:
    return ProjectProfile(
        kind="static",
        framework="html",
        dev_command=f"python3 -m http.server {port}",
        port=port,
        install_command=None,
    )


def detect_project(root: Path) -> ProjectProfile:
    """Pick the dev server for a hydrated workspace.

    Checks run from most to least specific: Expo, Vite, Create React App,
    Next.js, Vue, any package.json with a dev or start script, then plain
    static HTML. Anything else is served statically as well.
    """
    names = {entry.name for entry in root.iterdir()} if root.is_dir() else set()
    package = _load_package_json(root)
    dependencies: dict[str, Any] = {}
    dev_dependencies: dict[str, Any] = {}
    scripts: dict[str, Any] = {}
    if package is not None:
        dependencies = package.get("dependencies") or {}
        dev_dependencies = package.get("devDependencies") or {}
        scripts = package.get("scripts") or {}

    if "app.json" in names or "app.config.js" in names or "expo" in dependencies:
        return ProjectProfile(
            kind="react-native",
            framework="expo",
            dev_command=f"npx expo start --web --port {STATIC_PORT}",
            port=STATIC_PORT,
        )
    if {"vite.config.js", "vite.config.ts"} & names or "vite" in dev_dependencies:
        return ProjectProfile(kind="react", framework="vite", dev_command="npm run dev", port=DEV_SERVER_PORT)
    if "react-scripts" in dependencies:
        return ProjectProfile(kind="react", framework="create-react-app", dev_command="npm start", port=STATIC_PORT)
    if "next.config.js" in names or "next" in dependencies:
        return ProjectProfile(kind="react", framework="nextjs", dev_command="npm run dev", port=STATIC_PORT)
    if "vue.config.js" in names or "vue" in dependencies:
        return ProjectProfile(kind="vue", framework="vue", dev_command="npm run dev", port=DEV_SERVER_PORT)
    if package is not None and scripts:
        if "dev" in scripts:
            return ProjectProfile(kind="nodejs", framework="custom", dev_command="npm run dev", port=STATIC_PORT)
        if "start" in scripts:
            return ProjectProfile(kind="nodejs", framework="custom", dev_command="npm start", port=STATIC_PORT)
    return _static(STATIC_PORT)
