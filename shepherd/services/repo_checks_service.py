"""Dependency install and validation checks for a scratch checkout."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from shepherd.adapters.git_cli import run_command
from shepherd.models.errors import CheckFailedError, CommandError, DependencyInstallError

logger = logging.getLogger(__name__)

CHECK_TIMEOUT_S = 15 * 60
MAX_NODE_PROJECTS = 4

# manifest basename -> lockfiles that live next to it
MANIFEST_LOCKFILES: dict[str, tuple[str, ...]] = {
    "package.json": ("package-lock.json", "npm-shrinkwrap.json", "yarn.lock", "pnpm-lock.yaml"),
    "pyproject.toml": ("poetry.lock", "uv.lock"),
}
LOCKFILE_NAMES = frozenset(
    {lock for locks in MANIFEST_LOCKFILES.values() for lock in locks}
    | {"Pipfile.lock", "Cargo.lock", "Gemfile.lock", "composer.lock", "go.sum", "bun.lockb"}
)


def is_lockfile(rel_path: str) -> bool:
    return Path(rel_path).name in LOCKFILE_NAMES


def is_manifest(rel_path: str) -> bool:
    return Path(rel_path).name in MANIFEST_LOCKFILES


def lockfiles_for(rel_path: str) -> list[str]:
    """Sibling lockfile paths (relative) that a manifest edit may regenerate."""
    p = Path(rel_path)
    return [str(p.parent / lock) if str(p.parent) != "." else lock for lock in MANIFEST_LOCKFILES.get(p.name, ())]


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _node_tool(project: Path) -> str:
    if (project / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (project / "yarn.lock").exists():
        return "yarn"
    return "npm"


class RepoChecks:
    """Runs the repository's own install/lint/typecheck scripts with timeouts."""

    def __init__(self, root: str | Path, timeout: float = CHECK_TIMEOUT_S) -> None:
        self.root = Path(root)
        self.timeout = timeout
        self._installed: set[Path] = set()

    def node_projects(self) -> list[Path]:
        projects: list[Path] = []
        if (self.root / "package.json").is_file():
            projects.append(self.root)
        for manifest in sorted(self.root.glob("*/package.json")):
            if "node_modules" in manifest.parts:
                continue
            projects.append(manifest.parent)
        return projects[:MAX_NODE_PROJECTS]

    def _has_script(self, project: Path, script: str) -> bool:
        pkg = _read_json(project / "package.json")
        scripts = pkg.get("scripts") if pkg else None
        return isinstance(scripts, dict) and isinstance(scripts.get(script), str)

    def ensure_dependencies(self) -> None:
        for project in self.node_projects():
            if project in self._installed:
                continue
            tool = _node_tool(project)
            if tool == "npm":
                has_lock = (project / "package-lock.json").exists() or (project / "npm-shrinkwrap.json").exists()
                cmd = ["npm", "ci"] if has_lock else ["npm", "install"]
            else:
                cmd = [tool, "install", "--frozen-lockfile"]
            try:
                run_command(cmd, cwd=project, timeout=self.timeout)
            except CommandError as exc:
                raise DependencyInstallError(f"Dependency install failed in {self._rel(project)}: {exc}") from exc
            self._installed.add(project)

    def regenerate_locks(self, changed_manifests: Iterable[str]) -> None:
        """Bring lock state in line with edited manifests. Failure is fatal for the loop."""
        for rel in changed_manifests:
            manifest = self.root / rel
            project = manifest.parent
            cmd: list[str] | None = None
            if manifest.name == "package.json":
                tool = _node_tool(project)
                if tool == "npm":
                    cmd = ["npm", "install", "--package-lock-only", "--ignore-scripts"]
                elif tool == "pnpm":
                    cmd = ["pnpm", "install", "--lockfile-only"]
                else:
                    cmd = ["yarn", "install", "--ignore-scripts"]
            elif manifest.name == "pyproject.toml":
                if (project / "uv.lock").exists():
                    cmd = ["uv", "lock"]
                elif (project / "poetry.lock").exists():
                    cmd = ["poetry", "lock", "--no-update"]
            if cmd is None:
                continue
            try:
                run_command(cmd, cwd=project, timeout=self.timeout)
            except CommandError as exc:
                raise DependencyInstallError(f"Lock regeneration failed for {rel}: {exc}") from exc
            self._installed.discard(project)

    def _run_script(self, project: Path, script: str) -> None:
        if not self._has_script(project, script):
            return
        tool = _node_tool(project)
        cmd = [tool, "run", script] if tool == "yarn" else [tool, "run", "-s", script]
        try:
            run_command(cmd, cwd=project, timeout=self.timeout)
        except CommandError as exc:
            output = f"{exc.stdout}\n{exc.stderr}".strip()
            raise CheckFailedError(f"Checks failed: {script} in {self._rel(project)}: {exc}", output=output) from exc

    def _compile_python(self, paths: Iterable[str]) -> None:
        # In-process compile: no bytecode lands in the checkout.
        for rel in paths:
            if not rel.endswith(".py"):
                continue
            path = self.root / rel
            if not path.is_file():
                continue
            try:
                compile(path.read_text(encoding="utf-8"), rel, "exec")
            except (SyntaxError, ValueError, UnicodeDecodeError) as exc:
                raise CheckFailedError(f"Checks failed: python compile {rel}: {exc}", output=str(exc)) from exc

    def typecheck(self, touched: Iterable[str] = ()) -> None:
        """Fast per-attempt validation: type-check scripts only."""
        self.ensure_dependencies()
        for project in self.node_projects():
            self._run_script(project, "typecheck")
        self._compile_python(touched)

    def full_check(self, touched: Iterable[str] = ()) -> None:
        """Final validation across the tree: lint then type-check."""
        self.ensure_dependencies()
        for project in self.node_projects():
            self._run_script(project, "lint")
            self._run_script(project, "typecheck")
        self._compile_python(touched)

    def _rel(self, project: Path) -> str:
        try:
            rel = str(project.relative_to(self.root))
        except ValueError:
            return str(project)
        return rel if rel != "." else "repo root"
