"""Iterative edit-and-validate loop over a scratch checkout.

Per package: compute the allowed-path set, ask for an edit proposal, validate it,
apply it transactionally (snapshot -> write -> check -> restore on failure) and feed
the failure back into the next attempt. Files changed by earlier packages persist into
later ones. A final lint + type-check runs once all packages succeed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from shepherd.models.edit import MAX_FILES_PER_PROPOSAL, EditAttempt, EditProposal, EditResult, FileEdit
from shepherd.models.errors import (
    CheckFailedError,
    CommandError,
    DependencyInstallError,
    DocsOnlyChangeError,
    EditLoopError,
    InvalidPathError,
    ZeroEditsError,
)
from shepherd.models.work_package import WorkPackage
from shepherd.services import allowed_paths_service
from shepherd.services.package_planner import package_prompt_text
from shepherd.services.repo_checks_service import is_manifest, lockfiles_for

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERS = 2
MAX_CANDIDATE_FILES = 8
CANDIDATE_FILE_MAX_CHARS = 14_000

Snapshot = dict[str, Optional[bytes]]


class Workspace(Protocol):
    path: Path

    def ls_files(self, limit: int = ...) -> list[str]: ...

    def grep_files(self, term: str, timeout: float = ...) -> list[str]: ...

    def head_sha(self) -> str: ...

    def diff(self, base: str | None = None, *extra: str) -> str: ...

    def diff_names(self, base: str | None = None) -> list[str]: ...


class EditProposer(Protocol):
    def propose_edits(
        self,
        *,
        prd_body: str,
        plan: str,
        allowed_paths: list[str],
        repo_files: list[str],
        candidate_files: str,
        previous_error: str = "",
        work_package: Optional[WorkPackage] = None,
    ) -> EditProposal: ...


class Checks(Protocol):
    def regenerate_locks(self, changed_manifests: list[str]) -> None: ...

    def typecheck(self, touched: list[str] = ...) -> None: ...

    def full_check(self, touched: list[str] = ...) -> None: ...


def read_file_truncated(path: Path, max_chars: int = CANDIDATE_FILE_MAX_CHARS) -> Optional[str]:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n\n[TRUNCATED]\n"


def take_snapshot(root: Path, paths: list[str]) -> Snapshot:
    """Pre-change bytes of every path; ``None`` marks a file that did not exist."""
    snap: Snapshot = {}
    for rel in paths:
        target = root / rel
        snap[rel] = target.read_bytes() if target.is_file() else None
    return snap


def restore_snapshot(root: Path, snap: Snapshot) -> None:
    for rel, content in snap.items():
        target = root / rel
        if content is None:
            if target.exists():
                target.unlink()
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)


def validate_proposal(proposal: EditProposal, allowed_paths: list[str]) -> list[FileEdit]:
    """Reject empty, docs-only, out-of-set or binary proposals; cap to the file limit."""
    edits = proposal.files[:MAX_FILES_PER_PROPOSAL]
    if not edits:
        raise ZeroEditsError("Dev agent produced zero file edits.")
    if all(allowed_paths_service.is_run_doc(e.path) for e in edits):
        raise DocsOnlyChangeError(
            f"Edits only changed {allowed_paths_service.RUN_DOCS_PREFIX}. Need actual code changes."
        )
    allowed = set(allowed_paths)
    for edit in edits:
        if not edit.path or edit.path not in allowed:
            raise InvalidPathError(f"Invalid file path from dev agent: {edit.path or '(empty)'}")
        if "\x00" in edit.content:
            raise InvalidPathError(f"Binary content rejected for {edit.path}")
    return edits


class EditLoop:
    def __init__(
        self,
        workspace: Workspace,
        proposer: EditProposer,
        checks: Checks,
        *,
        max_iters: int = DEFAULT_MAX_ITERS,
        max_packages: int = 10,
    ) -> None:
        self.workspace = workspace
        self.proposer = proposer
        self.checks = checks
        self.max_iters = max(1, max_iters)
        self.max_packages = max(1, max_packages)
        self.attempts: list[EditAttempt] = []

    @property
    def root(self) -> Path:
        return Path(self.workspace.path)

    def run(
        self,
        *,
        prd_body: str,
        plan: str,
        packages: Optional[list[WorkPackage]] = None,
        human_feedback: str = "",
    ) -> EditResult:
        """Implement the PRD. Raises ``DependencyInstallError`` (fatal); other failures return ok=False."""
        base = self.workspace.head_sha()
        repo_files = self.workspace.ls_files()
        todo: list[Optional[WorkPackage]] = list(packages[: self.max_packages]) if packages else [None]
        touched: list[str] = []

        for idx, package in enumerate(todo):
            label = f"package {idx + 1}/{len(todo)}" + (f" '{package.name}'" if package else "")
            error = self._run_package(
                prd_body=prd_body,
                plan=plan,
                package=package,
                repo_files=repo_files,
                human_feedback=human_feedback,
                touched=touched,
            )
            if error:
                logger.info("edit loop: %s failed: %s", label, error)
                message = error if package is None else f"Work {label} failed: {error}"
                return EditResult(ok=False, error=message, attempts=self.attempts)

        try:
            self.checks.full_check(touched=touched)
        except CheckFailedError as exc:
            return EditResult(ok=False, error=str(exc), attempts=self.attempts)

        changed = self.workspace.diff_names(base)
        if not [p for p in changed if not allowed_paths_service.is_run_doc(p)]:
            return EditResult(ok=False, error="Dev agent produced zero file edits.", attempts=self.attempts)
        return EditResult(
            ok=True,
            patch=self.workspace.diff(base),
            diff_stat=self.workspace.diff(base, "--stat"),
            changed_files=changed,
            attempts=self.attempts,
        )

    def _candidate_block(self, allowed_paths: list[str]) -> str:
        blocks: list[str] = []
        for rel in allowed_paths[:MAX_CANDIDATE_FILES]:
            content = read_file_truncated(self.root / rel)
            if content is not None:
                blocks.append(f"## file: {rel}\n\n{content}")
        return "\n\n".join(blocks)

    def _run_package(
        self,
        *,
        prd_body: str,
        plan: str,
        package: Optional[WorkPackage],
        repo_files: list[str],
        human_feedback: str,
        touched: list[str],
    ) -> str:
        """Return '' on success or the last error once the attempt budget is spent."""
        hint_text = f"{package_prompt_text(package)}\n{prd_body}" if package else prd_body
        allowed = allowed_paths_service.compute_allowed_paths(self.workspace, hint_text)
        candidates = self._candidate_block(allowed)
        last_error = ""

        for iteration in range(1, self.max_iters + 1):
            previous = "\n\n".join(part for part in (human_feedback, last_error) if part)
            attempt = EditAttempt(
                package_name=package.name if package else "",
                iteration=iteration,
                allowed_paths=allowed,
                previous_error=previous,
            )
            self.attempts.append(attempt)

            proposal = self.proposer.propose_edits(
                prd_body=prd_body,
                plan=plan,
                allowed_paths=allowed,
                repo_files=repo_files,
                candidate_files=candidates,
                previous_error=previous,
                work_package=package,
            )
            attempt.proposed_files = {f.path: f.content for f in proposal.files[:MAX_FILES_PER_PROPOSAL]}
            try:
                written = self._apply(proposal, allowed)
            except DependencyInstallError as exc:
                attempt.reason = str(exc)
                raise
            except EditLoopError as exc:
                last_error = str(exc)
                attempt.reason = last_error
                continue

            attempt.ok = True
            for rel in written:
                if rel not in touched:
                    touched.append(rel)
            return ""

        return last_error or "Failed to generate/apply edits"

    def _apply(self, proposal: EditProposal, allowed: list[str]) -> list[str]:
        edits = validate_proposal(proposal, allowed)
        paths = [e.path for e in edits]
        manifests = [p for p in paths if is_manifest(p)]
        snap_paths = list(paths)
        for manifest in manifests:
            snap_paths.extend(lock for lock in lockfiles_for(manifest) if lock not in snap_paths)
        snap = take_snapshot(self.root, snap_paths)

        try:
            for edit in edits:
                target = self.root / edit.path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(edit.content.encode("utf-8"))
            if all(snap.get(e.path) == (self.root / e.path).read_bytes() for e in edits):
                raise ZeroEditsError("Dev agent edits did not change any file content.")
            if manifests:
                self.checks.regenerate_locks(manifests)
            self.checks.typecheck(touched=paths)
        except CommandError as exc:
            restore_snapshot(self.root, snap)
            raise CheckFailedError(f"Checks failed: {exc}", output=exc.stderr) from exc
        except BaseException:
            restore_snapshot(self.root, snap)
            raise
        return paths
