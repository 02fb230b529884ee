"""Stage transition engine: one handler per pipeline stage.

Each handler reads the item, performs the stage's side effects and moves the item to
its next stage. Handlers are safe to re-run: anything that creates an external
resource (issue, pull request, child items) is guarded by the reference recorded on
the item before the work starts. Exceptions propagate to the driver, which parks the
item in ``Error``.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

from shepherd.adapters.git_cli import GitWorkspace
from shepherd.models.edit import EditResult
from shepherd.models.errors import EditLoopError, GitHubError, ItemConfigError, ShepherdError, TrackerError
from shepherd.models.work_item import GitRef, Stage, WorkItem, branch_name_for_run, new_run_id
from shepherd.models.work_package import ScopePlan, WorkPackage
from shepherd.services.allowed_paths_service import RUN_DOCS_PREFIX
from shepherd.services.artifact_service import ArtifactWriter
from shepherd.services.bot_config import BotConfig
from shepherd.services.edit_loop_service import EditLoop
from shepherd.services.package_planner import build_child_description, child_title, package_summary_markdown
from shepherd.services.repo_checks_service import RepoChecks
from shepherd.services.verdict_service import Verdict, is_pass, parse_verdict

logger = logging.getLogger(__name__)

EPIC_TITLE_PREFIX = "EPIC: "
PR_TITLE_PREFIX = "[shepherd] "
REVIEW_COMMENT_HEADER = "## Shepherd review"
REVIEW_BASE_BRANCH = "shepherd-review-base"
REVIEW_HEAD_BRANCH = "shepherd-review-head"

# Stages whose handler may call the LLM; the driver charges these against the budget.
LLM_STAGES = frozenset({Stage.INTAKE, Stage.READY_FOR_DEV, Stage.NEEDS_CHANGES, Stage.IN_REVIEW})

CloneFn = Callable[[str, Path, Optional[int]], Any]
ChecksFactory = Callable[[Path], Any]


def split_repo(repo: str) -> tuple[str, str]:
    owner, _, name = (repo or "").strip().partition("/")
    if not owner or not name or "/" in name:
        raise ItemConfigError(f"Invalid Target Repo (expected owner/name): {repo!r}")
    return owner, name


def implementation_markdown(
    *,
    run_id: str,
    issue_title: str,
    issue_url: str,
    packages: Optional[list[WorkPackage]],
    result: EditResult,
    max_packages: int,
) -> str:
    lines = [f"# Implementation: {issue_title}", "", f"- Run: `{run_id}`"]
    if issue_url:
        lines.append(f"- Issue: {issue_url}")
    lines.append("")
    if packages:
        lines.append(package_summary_markdown(packages, max_packages))
    lines.extend(["## Diff stat", "", "```", result.diff_stat.strip(), "```", "", "## Changed files", ""])
    lines.extend(f"- `{path}`" for path in result.changed_files)
    lines.append("")
    return "\n".join(lines)


class TransitionEngine:
    def __init__(
        self,
        config: BotConfig,
        tracker: Any,
        github: Any,
        agents: Any,
        artifacts: ArtifactWriter,
        *,
        clone: Optional[CloneFn] = None,
        checks_factory: Optional[ChecksFactory] = None,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.github = github
        self.agents = agents
        self.artifacts = artifacts
        self._clone = clone or self._clone_from_github
        self._checks_factory = checks_factory or RepoChecks
        self._handlers: dict[Stage, Callable[[WorkItem], Optional[Stage]]] = {
            Stage.INTAKE: self.handle_intake,
            Stage.READY_FOR_DEV: self.handle_ready_for_dev,
            Stage.NEEDS_CHANGES: self.handle_needs_changes,
            Stage.IN_REVIEW: self.handle_in_review,
            Stage.READY_TO_MERGE: self.handle_ready_to_merge,
        }

    # -- dispatch ----------------------------------------------------------------

    def uses_llm(self, item: WorkItem) -> bool:
        if item.stage == Stage.NEEDS_CHANGES and is_pass(item.latest_feedback):
            return False
        return item.stage in LLM_STAGES

    def handle(self, item: WorkItem) -> Optional[Stage]:
        """Run the handler for ``item.stage``. Returns the new stage, or None when unchanged."""
        handler = self._handlers.get(item.stage)
        if handler is None:
            return None
        return handler(item)

    # -- shared helpers ------------------------------------------------------------

    def _clone_from_github(self, repo: str, dest: Path, depth: Optional[int]) -> GitWorkspace:
        return GitWorkspace.clone(repo, dest, token_provider=self.github.token, depth=depth)

    def ensure_run_id(self, item: WorkItem) -> str:
        if item.run_id:
            return item.run_id
        run_id = new_run_id(item.title)
        self.tracker.set_run_id(item.id, run_id)
        item.run_id = run_id
        self.artifacts.event(run_id, "RUN", f"Assigned run id for {item.title or item.id}")
        return run_id

    def _write_status(self, item: WorkItem, run_id: str) -> None:
        self.artifacts.status(
            run_id,
            stage_label=self.config.label(item.stage),
            repo=item.repository(),
            tracker_url=item.url,
            issue_url=item.issue_url,
            pr_url=item.pr_url,
        )

    def _set_stage(self, item: WorkItem, run_id: str, stage: Stage, note: str = "") -> Stage:
        self.tracker.set_stage(item.id, stage)
        item.stage = stage
        label = self.config.label(stage)
        self.artifacts.event(run_id, "STATUS", f"{label}. {note}".strip() if note else label)
        self._write_status(item, run_id)
        logger.info("item %s -> %s %s", item.id, label, note)
        return stage

    def _set_feedback(self, item: WorkItem, text: str) -> None:
        self.tracker.set_feedback(item.id, text)
        item.latest_feedback = text

    def _epic_stage(self) -> Stage:
        try:
            if self.tracker.has_option(self.config.fields.stage, self.config.label(Stage.EPIC)):
                return Stage.EPIC
        except TrackerError as exc:
            logger.warning("stage schema probe failed: %s", exc)
        return Stage.PRD_DRAFTED

    # -- Intake ------------------------------------------------------------------

    def handle_intake(self, item: WorkItem) -> Optional[Stage]:
        repo = item.target_repository.strip()
        if not repo:
            raise ItemConfigError("Missing Target Repo")
        owner, name = split_repo(repo)
        run_id = self.ensure_run_id(item)

        if item.issue_ref() is not None:
            return self._set_stage(item, run_id, Stage.PRD_DRAFTED, "Issue already exists; not creating another.")

        if self._split_ready(item) and item.child_ids:
            self._set_feedback(
                item,
                f"Already split into {len(item.child_ids)} child item(s); not splitting again.",
            )
            return self._set_stage(item, run_id, self._epic_stage(), "Previously split.")

        scope = self._scope_from_intake(item, run_id)
        if scope is not None and self._split_ready(item) and scope.is_split:
            return self._split_into_children(item, run_id, scope)

        prd = self.agents.draft_prd(
            title=item.title,
            rough_description=item.rough_description,
            target_repo=repo,
            scope=scope,
        )
        self.artifacts.snapshot(run_id, "prd", prd.body)
        self.artifacts.event(run_id, "PRD", f"Drafted PRD: {prd.title}")

        issue = self.github.create_issue(owner, name, prd.title, prd.body)
        issue_url = str(issue.get("html_url") or "")
        self.tracker.set_issue_url(item.id, issue_url)
        item.issue_url = issue_url
        self.artifacts.event(run_id, "ISSUE", f"Created {issue_url}")

        stage = self._set_stage(item, run_id, Stage.PRD_DRAFTED)
        try:
            self.tracker.set_title(item.id, prd.title)
        except TrackerError as exc:
            logger.warning("title mirror failed for %s: %s", item.id, exc)
        return stage

    def _split_ready(self, item: WorkItem) -> bool:
        return self.config.intake_autosplit and item.has_relation_fields and not item.is_child

    def _scope_from_intake(self, item: WorkItem, run_id: str) -> Optional[ScopePlan]:
        try:
            scope = self.agents.scope_triage_from_intake(
                title=item.title,
                rough_description=item.rough_description,
                target_repo=item.target_repository.strip(),
                max_packages=self.config.max_packages,
            )
        except ShepherdError as exc:
            self.artifacts.event(run_id, "SCOPE_FAIL", str(exc))
            return None
        self.artifacts.scope(run_id, scope.model_dump(mode="json"), "scope")
        return scope

    def _split_into_children(self, item: WorkItem, run_id: str, scope: ScopePlan) -> Stage:
        packages = scope.packages[: self.config.max_packages]
        total = len(packages)
        repo = item.target_repository.strip()
        created: list[WorkItem] = []
        for idx, package in enumerate(packages):
            child = self.tracker.create_item(
                title=child_title(item.title, idx, total, package),
                rough_description=build_child_description(
                    parent_title=item.title,
                    target_repo=repo,
                    index=idx,
                    total=total,
                    package=package,
                ),
                target_repo=repo,
                stage=Stage.INTAKE,
                parent_id=item.id,
            )
            created.append(child)
            self.artifacts.event(run_id, "CHILD", f"Created {child.title} ({child.url or child.id})")

        listing = "\n".join(f"- {c.title} {c.url}".rstrip() for c in created)
        self._set_feedback(item, f"Split into {total} child items:\n{listing}")
        stage = self._set_stage(item, run_id, self._epic_stage(), f"Split into {total} child items.")
        if not item.title.startswith(EPIC_TITLE_PREFIX):
            try:
                self.tracker.set_title(item.id, f"{EPIC_TITLE_PREFIX}{item.title}")
            except TrackerError as exc:
                logger.warning("epic title prefix failed for %s: %s", item.id, exc)
        return stage

    # -- ReadyForDev / NeedsChanges --------------------------------------------------

    def handle_needs_changes(self, item: WorkItem) -> Optional[Stage]:
        if is_pass(item.latest_feedback):
            run_id = self.ensure_run_id(item)
            return self._set_stage(item, run_id, Stage.READY_TO_MERGE, "Feedback already holds a PASS verdict.")
        return self.handle_ready_for_dev(item, human_feedback=item.latest_feedback)

    def handle_ready_for_dev(self, item: WorkItem, human_feedback: str = "") -> Optional[Stage]:
        issue_ref = item.issue_ref()
        if issue_ref is None:
            raise ItemConfigError("Missing GitHub Issue URL")
        run_id = self.ensure_run_id(item)
        self._set_stage(item, run_id, Stage.IN_DEV)

        issue = self.github.get_issue(*issue_ref)
        prd_body = str(issue.get("body") or "")
        issue_title = str(issue.get("title") or item.title)

        plan = self.agents.plan_dev(prd_body=prd_body)
        self.artifacts.snapshot(run_id, "plan", plan)
        packages = self._scope_from_prd(prd_body, run_id)

        pr_ref = item.pr_ref()
        with tempfile.TemporaryDirectory(prefix="shepherd-dev-") as tmp:
            workspace = self._clone(issue_ref.full_name, Path(tmp) / "repo", 1)
            workspace.configure_user(self.config.bot_name, self.config.bot_email)
            if pr_ref is not None:
                pr = self.github.get_pull(*pr_ref)
                branch = str(pr["head"]["ref"])
                workspace.fetch_branch(branch)
                workspace.checkout(branch)
            else:
                branch = branch_name_for_run(run_id)
                workspace.checkout_new_branch(branch)

            result = self._run_edit_loop(workspace, prd_body, plan, packages, human_feedback)
            if not result.ok:
                self.artifacts.event(run_id, "DEV_FAIL", result.error)
                self._set_feedback(item, result.error)
                return self._set_stage(item, run_id, Stage.NEEDS_CHANGES)

            self.artifacts.snapshot(run_id, "patch", f"```diff\n{result.patch}\n```\n")
            impl_md = implementation_markdown(
                run_id=run_id,
                issue_title=issue_title,
                issue_url=item.issue_url,
                packages=packages,
                result=result,
                max_packages=self.config.max_packages,
            )
            self.artifacts.snapshot(run_id, "implementation", impl_md)
            run_doc = Path(workspace.path) / RUN_DOCS_PREFIX / f"{run_id}.md"
            run_doc.parent.mkdir(parents=True, exist_ok=True)
            run_doc.write_text(impl_md, encoding="utf-8")

            workspace.commit_all(f"shepherd: {issue_title} ({run_id})")
            workspace.push(branch)
            self.artifacts.event(run_id, "PUSH", f"Pushed {branch} ({len(result.changed_files)} files)")

        pr_url = self._ensure_pull_request(item, run_id, issue_ref, pr_ref, branch, issue_title)
        self._set_feedback(item, f"Pushed code changes to {pr_url}")
        return self._set_stage(item, run_id, Stage.IN_REVIEW)

    def _scope_from_prd(self, prd_body: str, run_id: str) -> Optional[list[WorkPackage]]:
        try:
            scope = self.agents.scope_triage_from_prd(prd_body=prd_body, max_packages=self.config.max_packages)
        except ShepherdError as exc:
            self.artifacts.event(run_id, "SCOPE_FAIL", str(exc))
            return None
        self.artifacts.scope(run_id, scope.model_dump(mode="json"), "scope_dev")
        return scope.packages if scope.is_split else None

    def _run_edit_loop(
        self,
        workspace: Any,
        prd_body: str,
        plan: str,
        packages: Optional[list[WorkPackage]],
        human_feedback: str,
    ) -> EditResult:
        checks = self._checks_factory(Path(workspace.path))
        loop = EditLoop(
            workspace,
            self.agents,
            checks,
            max_iters=self.config.dev_max_iters,
            max_packages=self.config.max_packages,
        )
        try:
            checks.ensure_dependencies()
            return loop.run(prd_body=prd_body, plan=plan, packages=packages, human_feedback=human_feedback)
        except EditLoopError as exc:
            return EditResult(ok=False, error=str(exc), attempts=loop.attempts)

    def _ensure_pull_request(
        self,
        item: WorkItem,
        run_id: str,
        issue_ref: GitRef,
        pr_ref: Optional[GitRef],
        branch: str,
        issue_title: str,
    ) -> str:
        if pr_ref is not None:
            pr = self.github.get_pull(*pr_ref)
            pr_url = str(pr.get("html_url") or item.pr_url)
            if pr_url != item.pr_url:
                self.tracker.set_pr_url(item.id, pr_url)
                item.pr_url = pr_url
            return pr_url

        pr = self.github.create_pull(
            issue_ref.owner,
            issue_ref.repo,
            title=f"{PR_TITLE_PREFIX}{issue_title}",
            head=branch,
            base=self.config.base_branch,
            body=f"Closes #{issue_ref.number}\n\nIssue: {item.issue_url}\nRun: `{run_id}`\n",
        )
        pr_url = str(pr.get("html_url") or "")
        self.tracker.set_pr_url(item.id, pr_url)
        item.pr_url = pr_url
        self.artifacts.event(run_id, "PR", f"Opened {pr_url}")
        try:
            self.github.comment_issue(*issue_ref, f"Opened pull request: {pr_url}")
        except GitHubError as exc:
            logger.warning("issue comment failed for %s: %s", item.issue_url, exc)
        return pr_url

    # -- InReview ------------------------------------------------------------------

    def handle_in_review(self, item: WorkItem) -> Optional[Stage]:
        issue_ref = item.issue_ref()
        pr_ref = item.pr_ref()
        if issue_ref is None or pr_ref is None:
            raise ItemConfigError("InReview requires both GitHub Issue and GitHub PR URLs")
        run_id = self.ensure_run_id(item)

        issue = self.github.get_issue(*issue_ref)
        pr = self.github.get_pull(*pr_ref)
        prd_body = str(issue.get("body") or "")
        base = str(pr["base"]["ref"])
        head = str(pr["head"]["ref"])

        with tempfile.TemporaryDirectory(prefix="shepherd-review-") as tmp:
            workspace = self._clone(pr_ref.full_name, Path(tmp) / "repo", None)
            workspace.fetch_ref(f"refs/heads/{base}", REVIEW_BASE_BRANCH)
            workspace.fetch_ref(f"refs/heads/{head}", REVIEW_HEAD_BRANCH)
            rev_range = f"{REVIEW_BASE_BRANCH}...{REVIEW_HEAD_BRANCH}"
            stat = workspace.diff_range(rev_range, "--stat").strip()
            names = workspace.diff_range(rev_range, "--name-only").strip()
        diff_summary = f"## Diff stat\n{stat}\n\n## Files changed\n{names}\n"

        review = self.agents.review_against_prd(
            prd_body=prd_body,
            pr_body=str(pr.get("body") or ""),
            diff_summary=diff_summary,
        )
        self.artifacts.snapshot(run_id, "review", review)
        verdict = parse_verdict(review)
        self.artifacts.event(run_id, "REVIEW", f"Verdict {verdict.value}")
        self.github.comment_issue(*pr_ref, f"{REVIEW_COMMENT_HEADER}\n\n{review}")

        if verdict == Verdict.PASS:
            return self._set_stage(item, run_id, Stage.READY_TO_MERGE, "Review passed.")
        self._set_feedback(item, review)
        return self._set_stage(item, run_id, Stage.NEEDS_CHANGES, f"Review verdict {verdict.value}.")

    # -- ReadyToMerge ----------------------------------------------------------------

    def handle_ready_to_merge(self, item: WorkItem) -> Optional[Stage]:
        pr_ref = item.pr_ref()
        if pr_ref is None:
            raise ItemConfigError("Missing GitHub PR URL")
        run_id = self.ensure_run_id(item)
        pr = self.github.get_pull(*pr_ref)

        if pr.get("merged_at"):
            return self._set_stage(item, run_id, Stage.DONE, "PR merged.")
        if pr.get("state") == "closed":
            self._set_feedback(item, f"PR was closed without merging: {item.pr_url}")
            return self._set_stage(item, run_id, Stage.NEEDS_CHANGES, "PR closed without merge.")
        if not item.merge_approved:
            return None

        try:
            self.github.merge_pull(*pr_ref, merge_method=self.config.merge_method)
        except GitHubError as exc:
            self.artifacts.event(run_id, "MERGE_FAIL", str(exc))
            self._set_feedback(item, f"Merge failed: {exc}")
            return None
        self.artifacts.event(run_id, "MERGE", f"Merged {item.pr_url} ({self.config.merge_method})")
        return self._set_stage(item, run_id, Stage.DONE, "Merged.")
