from __future__ import annotations

from pathlib import Path

import pytest

from shepherd.adapters.git_cli import GitWorkspace
from shepherd.models.edit import EditProposal, FileEdit
from shepherd.models.errors import (
    DependencyInstallError,
    DocsOnlyChangeError,
    InvalidPathError,
    ZeroEditsError,
)
from shepherd.models.work_package import WorkPackage
from shepherd.services.edit_loop_service import (
    EditLoop,
    restore_snapshot,
    take_snapshot,
    validate_proposal,
)
from shepherd.services.repo_checks_service import RepoChecks

APP_BEFORE = "def render():\n    return 'hello'\n"
APP_AFTER = "def render():\n    return 'hello, world'\n"
BROKEN = "def render(:\n    return\n"


class ScriptedProposer:
    def __init__(self, *proposals: EditProposal) -> None:
        self.proposals = list(proposals)
        self.requests: list[dict] = []

    def propose_edits(self, **kwargs) -> EditProposal:
        self.requests.append(kwargs)
        return self.proposals.pop(0) if self.proposals else EditProposal()


class LockFailingChecks:
    def regenerate_locks(self, changed_manifests: list[str]) -> None:
        raise DependencyInstallError("Lock regeneration failed for package.json: npm ERR!")

    def typecheck(self, touched: list[str] = ()) -> None:
        return None

    def full_check(self, touched: list[str] = ()) -> None:
        return None


def _proposal(files: dict[str, str]) -> EditProposal:
    return EditProposal(files=[FileEdit(path=path, content=content) for path, content in files.items()])


@pytest.fixture
def workspace(make_repo) -> GitWorkspace:
    root = make_repo(
        {
            "README.md": "# demo\n",
            "src/app.py": APP_BEFORE,
            "src/theme.py": "DARK = False\n",
            "src/poetry.lock": "# lock\n",
            "docs/shepherd/old.md": "old run\n",
        }
    )
    return GitWorkspace(root, "acme/app")


def _loop(workspace: GitWorkspace, proposer, checks=None, **kwargs) -> EditLoop:
    return EditLoop(workspace, proposer, checks or RepoChecks(workspace.path), **kwargs)


def test_valid_edit_is_applied_and_reported(workspace: GitWorkspace) -> None:
    proposer = ScriptedProposer(_proposal({"src/app.py": APP_AFTER}))

    result = _loop(workspace, proposer).run(prd_body="Say hello world in render", plan="edit app")

    assert result.ok is True
    assert result.changed_files == ["src/app.py"]
    assert "hello, world" in result.patch
    assert "src/app.py" in result.diff_stat
    assert (workspace.path / "src/app.py").read_text(encoding="utf-8") == APP_AFTER
    assert [a.ok for a in result.attempts] == [True]


def test_out_of_set_path_is_rejected_then_retried(workspace: GitWorkspace) -> None:
    proposer = ScriptedProposer(
        EditProposal(files=[FileEdit(path="scripts/evil.sh", content="rm -rf /\n")]),
        _proposal({"src/app.py": APP_AFTER}),
    )

    result = _loop(workspace, proposer).run(prd_body="render greeting", plan="")

    assert result.ok is True
    assert not (workspace.path / "scripts/evil.sh").exists()
    assert result.attempts[0].reason == "Invalid file path from dev agent: scripts/evil.sh"
    assert "scripts/evil.sh" in proposer.requests[1]["previous_error"]
    for attempt in result.attempts:
        assert "scripts/evil.sh" not in attempt.allowed_paths


def test_run_docs_and_lockfiles_are_never_allowed(workspace: GitWorkspace) -> None:
    proposer = ScriptedProposer(_proposal({"src/app.py": APP_AFTER}))

    result = _loop(workspace, proposer).run(prd_body="render", plan="")

    allowed = result.attempts[0].allowed_paths
    assert "src/app.py" in allowed
    assert "src/poetry.lock" not in allowed
    assert not [p for p in allowed if p.startswith("docs/shepherd/")]


def test_failed_check_restores_files_byte_for_byte(workspace: GitWorkspace) -> None:
    proposer = ScriptedProposer(_proposal({"src/app.py": BROKEN}), _proposal({"src/app.py": BROKEN}))
    before = (workspace.path / "src/app.py").read_bytes()

    result = _loop(workspace, proposer, max_iters=2).run(prd_body="render", plan="")

    assert result.ok is False
    assert result.error.startswith("Checks failed: python compile src/app.py")
    assert (workspace.path / "src/app.py").read_bytes() == before
    assert workspace.diff_names() == []
    assert "Checks failed" in proposer.requests[1]["previous_error"]


def test_check_failure_then_fix_succeeds(workspace: GitWorkspace) -> None:
    proposer = ScriptedProposer(_proposal({"src/app.py": BROKEN}), _proposal({"src/app.py": APP_AFTER}))

    result = _loop(workspace, proposer, max_iters=2).run(prd_body="render", plan="")

    assert result.ok is True
    assert [a.ok for a in result.attempts] == [False, True]


def test_docs_only_proposal_is_rejected(workspace: GitWorkspace) -> None:
    proposal = EditProposal(files=[FileEdit(path="docs/shepherd/run.md", content="notes")])

    with pytest.raises(DocsOnlyChangeError):
        validate_proposal(proposal, ["docs/shepherd/run.md", "src/app.py"])

    proposer = ScriptedProposer(proposal, proposal)
    result = _loop(workspace, proposer).run(prd_body="render", plan="")
    assert result.ok is False
    assert "Need actual code changes" in result.error


def test_validate_proposal_rejections() -> None:
    with pytest.raises(ZeroEditsError):
        validate_proposal(EditProposal(), ["src/app.py"])
    with pytest.raises(InvalidPathError):
        validate_proposal(EditProposal(files=[FileEdit(path="", content="x")]), ["src/app.py"])
    with pytest.raises(InvalidPathError, match="Binary"):
        validate_proposal(EditProposal(files=[FileEdit(path="src/app.py", content="a\x00b")]), ["src/app.py"])


def test_validate_proposal_caps_file_count() -> None:
    allowed = [f"src/m{i}.py" for i in range(8)]
    proposal = EditProposal(files=[FileEdit(path=p, content="x = 1\n") for p in allowed])

    assert [e.path for e in validate_proposal(proposal, allowed)] == allowed[:5]


def test_identical_content_counts_as_zero_edits(workspace: GitWorkspace) -> None:
    proposer = ScriptedProposer(_proposal({"src/app.py": APP_BEFORE}))

    result = _loop(workspace, proposer, max_iters=1).run(prd_body="render", plan="")

    assert result.ok is False
    assert result.error == "Dev agent edits did not change any file content."


def test_packages_run_in_order_and_state_carries_forward(workspace: GitWorkspace) -> None:
    packages = [
        WorkPackage(name="Theme", goal="Enable dark theme"),
        WorkPackage(name="Render", goal="Greet the world"),
    ]
    proposer = ScriptedProposer(
        _proposal({"src/theme.py": "DARK = True\n"}),
        _proposal({"src/app.py": APP_AFTER}),
    )

    result = _loop(workspace, proposer).run(prd_body="prd", plan="plan", packages=packages)

    assert result.ok is True
    assert sorted(result.changed_files) == ["src/app.py", "src/theme.py"]
    assert proposer.requests[1]["work_package"].name == "Render"
    assert (workspace.path / "src/theme.py").read_text(encoding="utf-8") == "DARK = True\n"


def test_failing_package_reports_its_position(workspace: GitWorkspace) -> None:
    packages = [WorkPackage(name="Theme"), WorkPackage(name="Render")]
    proposer = ScriptedProposer(_proposal({"src/theme.py": "DARK = True\n"}))

    result = _loop(workspace, proposer, max_iters=1).run(prd_body="prd", plan="", packages=packages)

    assert result.ok is False
    assert result.error == "Work package 2/2 'Render' failed: Dev agent produced zero file edits."


def test_dependency_install_failure_is_fatal_and_restores(make_repo) -> None:
    root = make_repo({"package.json": '{"name": "demo"}\n', "src/index.js": "module.exports = 1;\n"}, name="npm")
    workspace = GitWorkspace(root, "acme/web")
    proposer = ScriptedProposer(_proposal({"package.json": '{"name": "demo", "version": "2.0.0"}\n'}))
    loop = _loop(workspace, proposer, checks=LockFailingChecks(), max_iters=2)

    with pytest.raises(DependencyInstallError):
        loop.run(prd_body="bump version in package.json", plan="")

    assert (root / "package.json").read_text(encoding="utf-8") == '{"name": "demo"}\n'
    assert not (root / "package-lock.json").exists()
    assert len(proposer.requests) == 1
    assert loop.attempts[0].reason.startswith("Lock regeneration failed")


def test_snapshot_restore_removes_files_created_by_the_attempt(tmp_path: Path) -> None:
    (tmp_path / "kept.txt").write_bytes(b"\x01original\n")
    snap = take_snapshot(tmp_path, ["kept.txt", "new/created.txt"])

    (tmp_path / "kept.txt").write_bytes(b"changed")
    (tmp_path / "new").mkdir()
    (tmp_path / "new/created.txt").write_text("fresh", encoding="utf-8")
    restore_snapshot(tmp_path, snap)

    assert (tmp_path / "kept.txt").read_bytes() == b"\x01original\n"
    assert not (tmp_path / "new/created.txt").exists()
