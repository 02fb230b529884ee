"""Pytest configuration and shared fakes.

The engine and driver tests run against in-memory stand-ins for the tracker, the
code host and the LLM, and against real throwaway git repositories.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shepherd.adapters.git_cli import GitWorkspace  # noqa: E402
from shepherd.models.edit import EditProposal  # noqa: E402
from shepherd.models.errors import GitHubError, TrackerError  # noqa: E402
from shepherd.models.work_item import DEFAULT_STAGE_LABELS, Stage, WorkItem  # noqa: E402
from shepherd.models.work_package import PrdDraft, ScopePlan  # noqa: E402
from shepherd.services.artifact_service import ArtifactWriter  # noqa: E402
from shepherd.services.bot_config import BotConfig  # noqa: E402


def run_git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return proc.stdout


@pytest.fixture
def make_repo(tmp_path: Path) -> Callable[..., Path]:
    """Create a committed git repository from a {path: content} mapping."""

    def _make(files: dict[str, str], name: str = "work") -> Path:
        root = tmp_path / name
        root.mkdir(parents=True)
        run_git(root, "init", "-q")
        run_git(root, "checkout", "-q", "-b", "main")
        for rel, content in files.items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        run_git(root, "add", "-A")
        run_git(root, "commit", "-q", "-m", "init")
        return root

    return _make


@pytest.fixture
def origin_repo(make_repo: Callable[..., Path], tmp_path: Path) -> Path:
    """Bare repository standing in for the remote of the target repo."""
    src = make_repo(
        {
            "README.md": "# demo\n",
            "src/settings.py": 'TITLE = "Settings"\nSUBTITLE = "Manage your account"\n',
            "src/app.py": "from settings import TITLE\n\n\ndef render():\n    return TITLE\n",
        },
        name="seed",
    )
    bare = tmp_path / "origin.git"
    subprocess.run(["git", "clone", "-q", "--bare", str(src), str(bare)], check=True, capture_output=True)
    return bare


@pytest.fixture
def push_branch(origin_repo: Path, tmp_path: Path) -> Callable[[str, dict[str, str]], None]:
    """Commit ``files`` on a new branch of the origin, as an earlier dev run would have."""

    def _push(branch: str, files: dict[str, str]) -> None:
        work = tmp_path / f"pusher-{branch.replace('/', '-')}"
        subprocess.run(["git", "clone", "-q", str(origin_repo), str(work)], check=True, capture_output=True)
        run_git(work, "checkout", "-q", "-b", branch)
        for rel, content in files.items():
            target = work / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        run_git(work, "add", "-A")
        run_git(work, "commit", "-q", "-m", f"work on {branch}")
        run_git(work, "push", "-q", "origin", branch)

    return _push


@pytest.fixture
def local_clone(origin_repo: Path) -> Callable[[str, Path, Optional[int]], GitWorkspace]:
    def _clone(repo: str, dest: Path, depth: Optional[int]) -> GitWorkspace:
        cmd = ["git", "clone", "-q"]
        if depth:
            cmd.extend(["--depth", str(depth)])
        cmd.extend([f"file://{origin_repo}", str(dest)])
        subprocess.run(cmd, check=True, capture_output=True)
        return GitWorkspace(dest, repo)

    return _clone


class FakeTracker:
    def __init__(self, select_fields: tuple[str, ...] = ("Status",)) -> None:
        self.items: dict[str, WorkItem] = {}
        self.options: dict[str, list[str]] = {"Status": [v for k, v in DEFAULT_STAGE_LABELS.items() if k != Stage.EPIC]}
        self.select_fields = set(select_fields)
        self.field_types: dict[str, str] = {"Status": "select", "Parent": "relation", "Target Repo (select)": "select"}
        self.control_pages: list[dict[str, Any]] = []
        self.writes: list[tuple[str, str, Any]] = []
        self.fail_on: dict[str, Exception] = {}
        self._next_child = 0

    def add(self, item: WorkItem) -> WorkItem:
        self.items[item.id] = item
        return item

    def _write(self, item_id: str, what: str, value: Any) -> None:
        exc = self.fail_on.pop(what, None)
        if exc is not None:
            raise exc
        self.writes.append((item_id, what, value))

    def set_stage(self, item_id: str, stage: Stage) -> None:
        self._write(item_id, "stage", stage)
        if item_id in self.items:
            self.items[item_id].stage = stage

    def set_run_id(self, item_id: str, run_id: str) -> None:
        self._write(item_id, "run_id", run_id)
        self.items[item_id].run_id = run_id

    def set_issue_url(self, item_id: str, url: str) -> None:
        self._write(item_id, "issue_url", url)
        self.items[item_id].issue_url = url

    def set_pr_url(self, item_id: str, url: str) -> None:
        self._write(item_id, "pr_url", url)
        self.items[item_id].pr_url = url

    def set_feedback(self, item_id: str, text: str) -> None:
        self._write(item_id, "feedback", text)
        self.items[item_id].latest_feedback = text

    def set_last_error(self, item_id: str, text: str) -> None:
        self._write(item_id, "last_error", text)
        if item_id in self.items:
            self.items[item_id].last_error = text

    def set_title(self, item_id: str, title: str) -> None:
        self._write(item_id, "title", title)
        self.items[item_id].title = title

    def set_date(self, item_id: str, field: str, iso: str) -> None:
        self._write(item_id, f"date:{field}", iso)

    def set_checkbox(self, item_id: str, field: str, value: bool) -> None:
        self._write(item_id, f"checkbox:{field}", value)

    def has_option(self, field: str, value: str) -> bool:
        return value in self.options.get(field, [])

    def field_type(self, name: str) -> Optional[str]:
        return self.field_types.get(name)

    def ensure_select_options(self, field: str, names: list[str]) -> bool:
        existing = self.options.setdefault(field, [])
        missing = [n for n in names if n not in existing]
        if not missing:
            return True
        if field not in self.select_fields:
            return False
        existing.extend(missing)
        return True

    def ensure_fields(self, wanted: dict[str, str]) -> list[str]:
        return []

    def create_item(
        self,
        *,
        title: str,
        rough_description: str,
        target_repo: str,
        stage: Stage = Stage.INTAKE,
        parent_id: Optional[str] = None,
    ) -> WorkItem:
        self._next_child += 1
        child = WorkItem(
            id=f"child-{self._next_child}",
            title=title,
            rough_description=rough_description,
            target_repository=target_repo,
            stage=stage,
            parent_ids=[parent_id] if parent_id else [],
            has_relation_fields=True,
            url=f"https://tracker.test/child-{self._next_child}",
        )
        self.items[child.id] = child
        if parent_id and parent_id in self.items:
            self.items[parent_id].child_ids.append(child.id)
        return child

    def query_by_stage(self, stage: Stage, limit: Optional[int] = None) -> list[WorkItem]:
        found = [item.model_copy(deep=True) for item in self.items.values() if item.stage == stage]
        return found[:limit] if limit else found

    def query_pages_by_title(self, title: str, limit: int = 1) -> list[dict[str, Any]]:
        return self.control_pages[:limit]

    def writes_of(self, what: str) -> list[Any]:
        return [value for _, kind, value in self.writes if kind == what]


class FakeGitHub:
    def __init__(self) -> None:
        self.issues: dict[int, dict[str, Any]] = {}
        self.pulls: dict[int, dict[str, Any]] = {}
        self.comments: list[tuple[int, str]] = []
        self.merges: list[tuple[int, str]] = []
        self.merge_error: Optional[GitHubError] = None
        self.repos: list[str] = ["acme/app"]
        self._next = 0

    def token(self, refresh: bool = False) -> Optional[str]:
        return None

    def _number(self) -> int:
        self._next += 1
        return self._next

    def create_issue(self, owner: str, repo: str, title: str, body: str) -> dict:
        n = self._number()
        issue = {
            "number": n,
            "title": title,
            "body": body,
            "html_url": f"https://github.com/{owner}/{repo}/issues/{n}",
        }
        self.issues[n] = issue
        return issue

    def get_issue(self, owner: str, repo: str, number: int) -> dict:
        return self.issues[number]

    def create_pull(self, owner: str, repo: str, *, title: str, head: str, base: str, body: str) -> dict:
        n = self._number()
        pr = {
            "number": n,
            "title": title,
            "body": body,
            "state": "open",
            "merged_at": None,
            "head": {"ref": head},
            "base": {"ref": base},
            "html_url": f"https://github.com/{owner}/{repo}/pull/{n}",
        }
        self.pulls[n] = pr
        return pr

    def get_pull(self, owner: str, repo: str, number: int) -> dict:
        return self.pulls[number]

    def comment_issue(self, owner: str, repo: str, number: int, body: str) -> dict:
        self.comments.append((number, body))
        return {"id": len(self.comments)}

    def merge_pull(self, owner: str, repo: str, number: int, merge_method: str = "squash") -> dict:
        if self.merge_error is not None:
            raise self.merge_error
        self.merges.append((number, merge_method))
        self.pulls[number]["merged_at"] = "2026-01-01T00:00:00Z"
        return {"merged": True}

    def accessible_repos(self) -> list[str]:
        return list(self.repos)


class FakeAgents:
    def __init__(self) -> None:
        self.scope: ScopePlan | Exception = ScopePlan()
        self.prd = PrdDraft(title="PRD: Add dark mode toggle", body="## Revised PRD\n\nAC1: toggle exists.")
        self.plan = "1. change the subtitle"
        self.proposals: list[EditProposal | Exception] = []
        self.review = "Verdict: PASS\n\nLooks good."
        self.calls: list[str] = []
        self.edit_requests: list[dict[str, Any]] = []
        self.review_requests: list[dict[str, Any]] = []

    def _scope(self) -> ScopePlan:
        if isinstance(self.scope, Exception):
            raise self.scope
        return self.scope

    def scope_triage_from_intake(self, **kwargs: Any) -> ScopePlan:
        self.calls.append("scope_intake")
        return self._scope()

    def scope_triage_from_prd(self, **kwargs: Any) -> ScopePlan:
        self.calls.append("scope_prd")
        return self._scope()

    def draft_prd(self, **kwargs: Any) -> PrdDraft:
        self.calls.append("draft_prd")
        return self.prd

    def plan_dev(self, **kwargs: Any) -> str:
        self.calls.append("plan_dev")
        return self.plan

    def propose_edits(self, **kwargs: Any) -> EditProposal:
        self.calls.append("propose_edits")
        self.edit_requests.append(kwargs)
        nxt = self.proposals.pop(0) if self.proposals else EditProposal()
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def review_against_prd(self, **kwargs: Any) -> str:
        self.calls.append("review")
        self.review_requests.append(kwargs)
        return self.review


@pytest.fixture
def config(tmp_path: Path) -> BotConfig:
    return BotConfig(artifacts_root=tmp_path / "runs-root", state_dir=tmp_path / "state")


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def agents() -> FakeAgents:
    return FakeAgents()


@pytest.fixture
def artifacts(config: BotConfig) -> ArtifactWriter:
    return ArtifactWriter(config.artifacts_root, redact=False)


@pytest.fixture
def tracker_error() -> Callable[[str], TrackerError]:
    def _make(message: str = "Notion 400: validation_error") -> TrackerError:
        return TrackerError(message, status_code=400)

    return _make
