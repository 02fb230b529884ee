"""Notion data-source client for the Kanban board (API version 2025-09-03).

Single-choice writes branch on the field's declared schema type, probed once per
client and cached, instead of guessing the payload shape from error messages.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable, Optional

import httpx

from shepherd.models.errors import ConfigError, TrackerError
from shepherd.models.work_item import Stage, WorkItem
from shepherd.services.bot_config import BotConfig

logger = logging.getLogger(__name__)

NOTION_VERSION = "2025-09-03"
RICH_TEXT_CHUNK = 2000
RICH_TEXT_MAX_CHUNKS = 100
TITLE_MAX = 250
SINGLE_CHOICE_TYPES = ("status", "select")


def _plain(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    return "".join(str(p.get("plain_text") or (p.get("text") or {}).get("content") or "") for p in parts if isinstance(p, dict))


def rich_text(text: str) -> list[dict[str, Any]]:
    value = text or ""
    chunks = [value[i : i + RICH_TEXT_CHUNK] for i in range(0, len(value), RICH_TEXT_CHUNK)][:RICH_TEXT_MAX_CHUNKS]
    return [{"type": "text", "text": {"content": chunk}} for chunk in chunks]


def _prop(page: dict[str, Any], name: str) -> dict[str, Any]:
    props = page.get("properties") if isinstance(page, dict) else None
    value = props.get(name) if isinstance(props, dict) else None
    return value if isinstance(value, dict) else {}


def read_title(page: dict[str, Any], name: str) -> str:
    return _plain(_prop(page, name).get("title"))


def read_rich_text(page: dict[str, Any], name: str) -> str:
    return _plain(_prop(page, name).get("rich_text"))


def read_choice(page: dict[str, Any], name: str) -> str:
    prop = _prop(page, name)
    for kind in SINGLE_CHOICE_TYPES:
        choice = prop.get(kind)
        if isinstance(choice, dict) and choice.get("name"):
            return str(choice["name"])
    return ""


def read_url(page: dict[str, Any], name: str) -> str:
    return str(_prop(page, name).get("url") or "")


def read_checkbox(page: dict[str, Any], name: str, default: bool = False) -> bool:
    prop = _prop(page, name)
    if "checkbox" not in prop:
        return default
    return bool(prop.get("checkbox"))


def read_number(page: dict[str, Any], name: str) -> Optional[float]:
    value = _prop(page, name).get("number")
    return float(value) if isinstance(value, (int, float)) else None


def read_date_start(page: dict[str, Any], name: str) -> str:
    date = _prop(page, name).get("date")
    return str(date.get("start") or "") if isinstance(date, dict) else ""


def read_relation_ids(page: dict[str, Any], name: str) -> list[str]:
    rel = _prop(page, name).get("relation")
    if not isinstance(rel, list):
        return []
    return [str(r["id"]) for r in rel if isinstance(r, dict) and r.get("id")]


def has_relation(page: dict[str, Any], name: str) -> bool:
    prop = _prop(page, name)
    return prop.get("type") == "relation" or "relation" in prop


class TrackerClient:
    def __init__(
        self,
        config: BotConfig,
        token: Optional[str] = None,
        data_source_id: Optional[str] = None,
        database_id: Optional[str] = None,
        base_url: str = "https://api.notion.com/v1",
        timeout: float = 30.0,
    ) -> None:
        self.config = config
        self.fields = config.fields
        self._token = (token or os.getenv("NOTION_TOKEN", "")).strip()
        self._data_source_id = (data_source_id or os.getenv("NOTION_DATA_SOURCE_ID", "")).strip()
        self._database_id = (database_id or os.getenv("NOTION_DATABASE_ID", "")).strip()
        if not self._token or not self._data_source_id:
            raise ConfigError("NOTION_TOKEN and NOTION_DATA_SOURCE_ID are required")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._schema: Optional[dict[str, Any]] = None

    # -- transport ---------------------------------------------------------

    def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        url = f"{self._base_url}{path}"
        try:
            with httpx.Client(timeout=self._timeout, headers=headers) as client:
                r = client.request(method, url, json=payload)
        except httpx.HTTPError as exc:
            raise TrackerError(f"Notion request failed: {exc}") from exc
        if r.status_code >= 400:
            raise TrackerError(f"Notion {r.status_code}: {(r.text or '')[:500]}", status_code=r.status_code)
        data = r.json()
        return data if isinstance(data, dict) else {}

    # -- schema probe --------------------------------------------------------

    def schema(self, refresh: bool = False) -> dict[str, Any]:
        if self._schema is None or refresh:
            data = self._request("GET", f"/data_sources/{self._data_source_id}")
            props = data.get("properties")
            self._schema = props if isinstance(props, dict) else {}
        return self._schema

    def field_type(self, name: str) -> Optional[str]:
        prop = self.schema().get(name)
        return str(prop.get("type")) if isinstance(prop, dict) and prop.get("type") else None

    def field_options(self, name: str) -> list[str]:
        prop = self.schema().get(name)
        if not isinstance(prop, dict):
            return []
        kind = prop.get("type")
        body = prop.get(kind) if isinstance(kind, str) else None
        options = body.get("options") if isinstance(body, dict) else None
        if not isinstance(options, list):
            return []
        return [str(o["name"]) for o in options if isinstance(o, dict) and o.get("name")]

    def has_option(self, field: str, value: str) -> bool:
        return value in self.field_options(field)

    def _choice_type(self, field: str) -> str:
        kind = self.field_type(field)
        return kind if kind in SINGLE_CHOICE_TYPES else "select"

    # -- reads ---------------------------------------------------------------

    def to_work_item(self, page: dict[str, Any]) -> WorkItem:
        f = self.fields
        label = read_choice(page, f.stage)
        stage = self.config.stage_for_label(label)
        if stage is None:
            logger.warning("item %s has unknown stage label %r", page.get("id"), label)
            stage = Stage.INTAKE
        target = read_rich_text(page, f.target_repo).strip() or read_choice(page, f.target_repo_select).strip()
        return WorkItem(
            id=str(page.get("id") or ""),
            title=read_title(page, f.title),
            rough_description=read_rich_text(page, f.rough_description),
            target_repository=target,
            stage=stage,
            run_id=read_rich_text(page, f.run_id).strip(),
            issue_url=read_url(page, f.issue_url),
            pr_url=read_url(page, f.pr_url),
            latest_feedback=read_rich_text(page, f.latest_feedback),
            last_error=read_rich_text(page, f.last_error),
            url=str(page.get("url") or ""),
            archived=bool(page.get("archived") or page.get("in_trash")),
            parent_ids=read_relation_ids(page, f.parent),
            child_ids=read_relation_ids(page, f.children),
            has_relation_fields=has_relation(page, f.parent) and has_relation(page, f.children),
            merge_approved=read_checkbox(page, f.merge_approved),
        )

    def _query(self, filter_: dict[str, Any], page_size: int) -> list[dict[str, Any]]:
        data = self._request(
            "POST",
            f"/data_sources/{self._data_source_id}/query",
            {"filter": filter_, "page_size": max(1, min(100, page_size))},
        )
        results = data.get("results")
        return [p for p in results if isinstance(p, dict)] if isinstance(results, list) else []

    def query_by_stage(self, stage: Stage, limit: Optional[int] = None) -> list[WorkItem]:
        kind = self._choice_type(self.fields.stage)
        label = self.config.label(stage)
        filter_ = {"property": self.fields.stage, kind: {"equals": label}}
        pages = self._query(filter_, limit or self.config.max_items)
        matching = [p for p in pages if read_choice(p, self.fields.stage) == label]
        if len(matching) < len(pages):
            logger.warning("dropped %d %s results with a different stage label", len(pages) - len(matching), label)
        return [self.to_work_item(p) for p in matching]

    def query_pages_by_title(self, title: str, limit: int = 1) -> list[dict[str, Any]]:
        return self._query({"property": self.fields.title, "title": {"equals": title}}, limit)

    def get_item(self, item_id: str) -> WorkItem:
        return self.to_work_item(self._request("GET", f"/pages/{item_id}"))

    # -- writes --------------------------------------------------------------

    def update_properties(self, item_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        return self._request("PATCH", f"/pages/{item_id}", {"properties": properties})

    def set_stage(self, item_id: str, stage: Stage) -> None:
        self.set_choice(item_id, self.fields.stage, self.config.label(stage))

    def set_choice(self, item_id: str, field: str, value: str) -> None:
        kind = self._choice_type(field)
        self.update_properties(item_id, {field: {kind: {"name": value}}})

    def set_text(self, item_id: str, field: str, text: str) -> None:
        self.update_properties(item_id, {field: {"rich_text": rich_text(text)}})

    def set_url(self, item_id: str, field: str, url: str) -> None:
        self.update_properties(item_id, {field: {"url": url or None}})

    def set_title(self, item_id: str, title: str) -> None:
        self.update_properties(
            item_id, {self.fields.title: {"title": [{"type": "text", "text": {"content": title[:TITLE_MAX]}}]}}
        )

    def set_checkbox(self, item_id: str, field: str, value: bool) -> None:
        self.update_properties(item_id, {field: {"checkbox": bool(value)}})

    def set_date(self, item_id: str, field: str, iso: str) -> None:
        self.update_properties(item_id, {field: {"date": {"start": iso}}})

    def set_run_id(self, item_id: str, run_id: str) -> None:
        self.set_text(item_id, self.fields.run_id, run_id)

    def set_issue_url(self, item_id: str, url: str) -> None:
        self.set_url(item_id, self.fields.issue_url, url)

    def set_pr_url(self, item_id: str, url: str) -> None:
        self.set_url(item_id, self.fields.pr_url, url)

    def set_feedback(self, item_id: str, text: str) -> None:
        self.set_text(item_id, self.fields.latest_feedback, text)

    def set_last_error(self, item_id: str, text: str) -> None:
        self.set_text(item_id, self.fields.last_error, text)

    def create_item(
        self,
        *,
        title: str,
        rough_description: str,
        target_repo: str,
        stage: Stage = Stage.INTAKE,
        parent_id: Optional[str] = None,
    ) -> WorkItem:
        f = self.fields
        properties: dict[str, Any] = {
            f.title: {"title": [{"type": "text", "text": {"content": title[:TITLE_MAX]}}]},
            f.rough_description: {"rich_text": rich_text(rough_description)},
            f.stage: {self._choice_type(f.stage): {"name": self.config.label(stage)}},
        }
        if self.field_type(f.target_repo) == "rich_text":
            properties[f.target_repo] = {"rich_text": rich_text(target_repo)}
        if self.field_type(f.target_repo_select) == "select":
            properties[f.target_repo_select] = {"select": {"name": target_repo}}
        if parent_id and self.field_type(f.parent) == "relation":
            properties[f.parent] = {"relation": [{"id": parent_id}]}
        if self._database_id:
            parent = {"database_id": self._database_id}
        else:
            parent = {"type": "data_source_id", "data_source_id": self._data_source_id}
        page = self._request("POST", "/pages", {"parent": parent, "properties": properties})
        return self.to_work_item(page)

    def ensure_select_options(self, field: str, names: Iterable[str]) -> bool:
        """Make sure ``names`` are options of ``field``. Returns False when they cannot be added.

        Only ``select``/``multi_select`` option sets are writable through the API; a
        ``status`` field can only be checked.
        """
        wanted = [n for n in dict.fromkeys(str(n).strip() for n in names) if n]
        existing = self.field_options(field)
        missing = [n for n in wanted if n not in existing]
        if not missing:
            return True
        kind = self.field_type(field)
        if kind not in ("select", "multi_select"):
            logger.info("field %r is %s; cannot add options %s", field, kind, missing)
            return False
        options = [{"name": n} for n in existing + missing]
        self._request(
            "PATCH",
            f"/data_sources/{self._data_source_id}",
            {"properties": {field: {kind: {"options": options}}}},
        )
        self._schema = None
        return True

    def ensure_fields(self, wanted: dict[str, str]) -> list[str]:
        """Create missing properties (name -> Notion type). Returns the names created."""
        schema = self.schema()
        missing = {name: kind for name, kind in wanted.items() if name not in schema}
        if not missing:
            return []
        self._request(
            "PATCH",
            f"/data_sources/{self._data_source_id}",
            {"properties": {name: {kind: {}} for name, kind in missing.items()}},
        )
        self._schema = None
        return sorted(missing)
