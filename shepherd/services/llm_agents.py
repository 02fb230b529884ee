"""Prompted LLM roles: scope triage, PRD drafting, planning, edit proposals, review."""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

from shepherd.adapters.llm_client import model_for, parse_json_or_raise
from shepherd.models.edit import MAX_FILES_PER_PROPOSAL, EditProposal, FileEdit
from shepherd.models.errors import LlmParseError
from shepherd.models.work_package import PrdDraft, ScopePlan, WorkPackage
from shepherd.services.package_planner import normalize_scope

REPO_FILE_LIST_LIMIT = 2000
SCOPE_CONTEXT_LIMIT = 6000


class TextModel(Protocol):
    def responses_text(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> str: ...


_PACKAGE_SHAPE = """Each packages[i] MUST have keys:
- name: string (short)
- goal: string (one sentence)
- acceptance_criteria: string[] (concrete, verifiable outcomes; 2-6 items)
- likely_areas: string[] (directories, files or subsystems; guesses allowed)
- depends_on: string[] (names of earlier packages this one needs)
- risk: string (short)"""


def _scope_system(subject: str, max_packages: int) -> str:
    return f"""You are a pragmatic tech lead.

Given {subject}, decide whether the implementation is one SINGLE package of work or should be
SPLIT into several sequential work packages that still ship on one branch.

Return JSON with keys:
- decision: "single" | "split"
- rationale: string
- packages: array

{_PACKAGE_SHAPE}

Rules:
- At most {max_packages} packages; merge smaller ones if needed.
- decision "single" means packages has exactly one entry.
- Every package must be verifiable on its own.
- Be practical and brief."""


_PRD_SYSTEM = """You are a senior product manager pairing with a tech lead. Turn a rough intake note
into a GitHub-issue PRD that an automated developer can implement without asking questions.

Return JSON with keys: title, body.
body is Markdown with these sections in order:
1. Original intake (verbatim)
2. Revised PRD
   - Problem / context
   - Goals
   - Non-goals
   - UX / UI notes (loading, empty, error and offline states)
   - Acceptance Criteria (AC1, AC2, ...)
   - Telemetry (only if relevant)
   - Backend / API notes (only if relevant)
   - Test expectations
   - Open questions

Rules:
- No placeholders such as "TBD" or "to be confirmed". Pick concrete values (exact copy,
  numbers, behaviours) when the intake leaves them open.
- Acceptance criteria must be objectively checkable.
- Keep open questions to genuine business decisions.
- Do not invent endpoints or services that are not described.

When a scope triage is supplied, add a short "Work packages" subsection under Revised PRD
listing each package (name and goal) in order."""


_PLAN_SYSTEM = """You are a senior engineer. Write a concise implementation plan for the PRD.
Return Markdown with sections:
- Summary
- Steps
- Files to touch (guesses allowed)
- Risks
- Test plan
- AC mapping (ACx -> how it is satisfied)"""


_EDIT_SYSTEM = f"""You are a senior engineer implementing a PRD by editing files.

Return JSON of exactly this shape:
{{"files": [{{"path": "relative/path.ext", "content": "<full new file content>"}}]}}

Hard requirements:
- Give the FULL new content of every file you change.
- Change at most {MAX_FILES_PER_PROPOSAL} files.
- Every path MUST come from ALLOWED_PATHS. Do not create new files.
- Text files only.
- Keep the change minimal.
- When a previous error is shown, fix exactly that problem.

JSON only, no markdown fences."""


_REVIEW_SYSTEM = """You are a strict but practical reviewer deciding whether a pull request is ready
to merge against its PRD and acceptance criteria.

- FAIL only for a clear, objective mismatch with the PRD/AC, a bug, missing functionality,
  or a safety or correctness risk.
- Do not FAIL only because a visual requirement cannot be confirmed from code. Mark that AC
  as MANUAL QA REQUIRED, say what a human should check, and keep PASS if the code looks right.

Return Markdown. The FIRST LINE must be exactly one of:
Verdict: PASS
Verdict: FAIL
(plain text, no formatting on that line)

Then include:
- Manual QA required (bullets, when any AC cannot be verified from the diff)
- AC checklist: each AC as Pass/Fail/Manual with evidence
- Key issues (if any)
- Suggested fixes

Skip style nitpicks unless they affect correctness."""


class LlmAgents:
    def __init__(self, client: TextModel, env: Optional[dict[str, str]] = None) -> None:
        self._client = client
        self._env = env

    def _model(self, role: str) -> str:
        return model_for(role, self._env)

    def scope_triage_from_intake(self, *, title: str, rough_description: str, target_repo: str, max_packages: int) -> ScopePlan:
        user = f"Target repo: {target_repo}\n\nIntake title: {title}\n\nIntake rough draft (verbatim):\n{rough_description}"
        text = self._client.responses_text(
            model=self._model("PRD"),
            system=_scope_system("an intake note", max_packages),
            user=user,
            temperature=0.1,
            json_mode=True,
        )
        return normalize_scope(text, max_packages)

    def scope_triage_from_prd(self, *, prd_body: str, max_packages: int) -> ScopePlan:
        text = self._client.responses_text(
            model=self._model("PRD"),
            system=_scope_system("a PRD", max_packages),
            user=prd_body,
            temperature=0.1,
            json_mode=True,
        )
        return normalize_scope(text, max_packages)

    def draft_prd(self, *, title: str, rough_description: str, target_repo: str, scope: Optional[ScopePlan] = None) -> PrdDraft:
        scope_block = ""
        if scope is not None:
            scope_block = f"\n\nScope triage JSON (best-effort):\n{scope.model_dump_json()[:SCOPE_CONTEXT_LIMIT]}"
        user = (
            f"Target repo: {target_repo}\n\nIntake title: {title}\n\n"
            f"Intake rough draft (verbatim):\n{rough_description}{scope_block}"
        )
        text = self._client.responses_text(
            model=self._model("PRD"), system=_PRD_SYSTEM, user=user, temperature=0.2, json_mode=True
        )
        data = parse_json_or_raise(text, "PRD agent")
        title_out = str(data.get("title") or "").strip()
        body_out = str(data.get("body") or "").strip()
        if not title_out or not body_out:
            raise LlmParseError(f"PRD agent missing fields: {text[:300]}")
        return PrdDraft(title=title_out, body=body_out)

    def plan_dev(self, *, prd_body: str) -> str:
        return self._client.responses_text(model=self._model("PRD"), system=_PLAN_SYSTEM, user=prd_body, temperature=0.2)

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
    ) -> EditProposal:
        sections: list[str] = [f"# PRD\n\n{prd_body}", f"# Plan\n\n{plan}"]
        if work_package is not None:
            sections.append(f"# Work package\n{work_package.model_dump_json()[:SCOPE_CONTEXT_LIMIT]}")
        if allowed_paths:
            sections.append("# ALLOWED_PATHS (choose from these ONLY)\n" + "\n".join(allowed_paths))
        sections.append("# Repo file list (partial)\n" + "\n".join(repo_files[:REPO_FILE_LIST_LIMIT]))
        if candidate_files:
            sections.append(f"# Candidate file contents\n{candidate_files}")
        if previous_error:
            sections.append(f"# Previous error\n{previous_error}")

        text = self._client.responses_text(
            model=self._model("DEV"), system=_EDIT_SYSTEM, user="\n\n".join(sections), json_mode=True
        )
        data = parse_json_or_raise(text, "Dev agent")
        return proposal_from_json(data, raw_text=text)

    def review_against_prd(self, *, prd_body: str, pr_body: str, diff_summary: str) -> str:
        user = f"PRD:\n{prd_body}\n\nPR description:\n{pr_body}\n\nDiff summary:\n{diff_summary}"
        return self._client.responses_text(model=self._model("REVIEW"), system=_REVIEW_SYSTEM, user=user, temperature=0.2)


def proposal_from_json(data: dict[str, Any], raw_text: str = "") -> EditProposal:
    files = data.get("files")
    if not isinstance(files, list):
        raise LlmParseError(f"Dev agent JSON missing files[]: {(raw_text or json.dumps(data))[:300]}")
    edits: list[FileEdit] = []
    for entry in files:
        if not isinstance(entry, dict):
            continue
        path = str(entry.get("path") or "").strip().lstrip("/")
        content = entry.get("content")
        edits.append(FileEdit(path=path, content="" if content is None else str(content)))
    return EditProposal(files=edits)
