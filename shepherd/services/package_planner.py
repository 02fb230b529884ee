"""Work-package planning: normalize untrusted scope-triage output.

Triage JSON comes straight from the model. Nothing in it is trusted until it has
passed through ``normalize_scope``, which is pure and total for any JSON object.
"""

from __future__ import annotations

import json
from typing import Any

from shepherd.models.errors import ScopeParseError
from shepherd.models.work_package import ScopeDecision, ScopePlan, WorkPackage

DEFAULT_MAX_PACKAGES = 10
CHILD_TITLE_MAX = 250
CHILD_DESCRIPTION_MAX = 2000
_LIST_ITEMS_IN_DESCRIPTION = 8

# Accepted spellings for each package field, canonical first.
_PACKAGE_KEYS: dict[str, tuple[str, ...]] = {
    "name": ("name", "title"),
    "goal": ("goal", "summary"),
    "acceptance_criteria": ("acceptance_criteria", "acceptance_criteria_subset", "acs"),
    "likely_areas": ("likely_areas", "likely_files_areas", "areas"),
    "depends_on": ("depends_on", "deps", "dependencies"),
    "risk": ("risk",),
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float, bool)):
        return str(value)
    return ""


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    out: list[str] = []
    for entry in value:
        text = _text(entry)
        if text:
            out.append(text)
    return out


def _first_present(raw: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def normalize_package(raw: Any, index: int = 0) -> WorkPackage:
    if not isinstance(raw, dict):
        raw = {"goal": raw} if isinstance(raw, str) else {}
    name = _text(_first_present(raw, _PACKAGE_KEYS["name"])) or f"Package {index + 1}"
    return WorkPackage(
        name=name,
        goal=_text(_first_present(raw, _PACKAGE_KEYS["goal"])),
        acceptance_criteria=_string_list(_first_present(raw, _PACKAGE_KEYS["acceptance_criteria"])),
        likely_areas=_string_list(_first_present(raw, _PACKAGE_KEYS["likely_areas"])),
        depends_on=_string_list(_first_present(raw, _PACKAGE_KEYS["depends_on"])),
        risk=_text(_first_present(raw, _PACKAGE_KEYS["risk"])),
    )


def _whole_item_package(rationale: str) -> WorkPackage:
    return WorkPackage(name="Whole item", goal=rationale or "Implement the whole work item.")


def normalize_scope(raw: Any, max_packages: int = DEFAULT_MAX_PACKAGES) -> ScopePlan:
    """Coerce a triage document into a well-formed ``ScopePlan``.

    Raises ``ScopeParseError`` only when the top level is not a JSON object (or a
    string holding one). Every other malformation is repaired deterministically.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ScopeParseError(f"Scope triage returned non-JSON: {str(raw)[:300]}") from exc
    if not isinstance(raw, dict):
        raise ScopeParseError(f"Scope triage returned {type(raw).__name__}, expected an object")

    cap = max(1, int(max_packages or DEFAULT_MAX_PACKAGES))
    rationale = _text(raw.get("rationale"))
    decision_raw = _text(raw.get("decision")).lower()
    decision = ScopeDecision.SPLIT if decision_raw == ScopeDecision.SPLIT.value else ScopeDecision.SINGLE

    packages_raw = raw.get("packages")
    if not isinstance(packages_raw, list):
        packages_raw = []
    packages = [normalize_package(entry, i) for i, entry in enumerate(packages_raw[:cap])]

    if decision == ScopeDecision.SPLIT and len(packages) <= 1:
        decision = ScopeDecision.SINGLE
    if decision == ScopeDecision.SINGLE:
        packages = packages[:1] or [_whole_item_package(rationale)]

    return ScopePlan(decision=decision, rationale=rationale, packages=packages)


def child_title(parent_title: str, index: int, total: int, package: WorkPackage) -> str:
    title = f"{parent_title} - {index + 1}/{total} {package.name}".strip()
    return title[:CHILD_TITLE_MAX].strip()


def build_child_description(
    *,
    parent_title: str,
    target_repo: str,
    index: int,
    total: int,
    package: WorkPackage,
) -> str:
    """Rough description for a child card; bounded so it fits one tracker text block."""
    lines: list[str] = [
        f"Parent: {parent_title}",
        f"Target repo: {target_repo}",
        "",
        f"Work package {index + 1}/{total}: {package.name}",
    ]
    if package.goal:
        lines.append(f"Goal: {package.goal}")
    if package.acceptance_criteria:
        lines.append("Acceptance criteria:")
        lines.extend(f"- {ac}" for ac in package.acceptance_criteria[:_LIST_ITEMS_IN_DESCRIPTION])
    if package.likely_areas:
        lines.append("Likely areas:")
        lines.extend(f"- {area}" for area in package.likely_areas[:_LIST_ITEMS_IN_DESCRIPTION])
    if package.depends_on:
        lines.append(f"Depends on: {', '.join(package.depends_on)}")
    if package.risk:
        lines.append(f"Risk: {package.risk}")
    return "\n".join(lines)[:CHILD_DESCRIPTION_MAX]


def package_prompt_text(package: WorkPackage) -> str:
    """Free text describing one package, used for hints and as prompt context."""
    parts = [package.name, package.goal]
    parts.extend(package.acceptance_criteria)
    parts.extend(package.likely_areas)
    return "\n".join(p for p in parts if p)


def package_summary_markdown(packages: list[WorkPackage], max_packages: int = DEFAULT_MAX_PACKAGES) -> str:
    if not packages:
        return ""
    lines = ["## Work packages", ""]
    for idx, package in enumerate(packages[:max_packages]):
        name = package.name or f"Package {idx + 1}"
        suffix = f" - {package.goal}" if package.goal else ""
        lines.append(f"- {idx + 1}. **{name}**{suffix}")
    lines.append("")
    return "\n".join(lines)
