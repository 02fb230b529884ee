"""GitHub API client for issues, pull requests and installation repositories.

REST wrapper with:
- token auth (GITHUB_TOKEN / GH_TOKEN or an injected provider)
- rate-limit handling (sleep until reset when exhausted, retry once)
- ETag conditional GETs + in-memory response cache
"""

from __future__ import annotations

import os
import time
from typing import Any, Callable, Optional

import httpx

from shepherd.models.errors import GitHubError

TokenProvider = Callable[[bool], Optional[str]]

COMMENT_MAX = 60_000


def _env_token() -> Optional[str]:
    env_token = os.getenv("GITHUB_TOKEN")
    if not env_token:
        env_token = os.getenv("GH_TOKEN")
    if env_token:
        env_token = env_token.strip() or None
    return env_token


class GitHubClient:
    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = "https://api.github.com",
        user_agent: str = "kanban-shepherd/0.1",
        timeout: float = 20.0,
        token_provider: Optional[TokenProvider] = None,
    ) -> None:
        self._token_provider = token_provider
        self._token = token or (token_provider(False) if token_provider else None) or _env_token()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._user_agent = user_agent

        # Per-process caches (one tick lifetime)
        self._etag_by_url: dict[str, str] = {}
        self._json_cache_by_url: dict[str, Any] = {}

    @property
    def _headers(self) -> dict[str, str]:
        h = {
            "Accept": "application/vnd.github+json",
            "User-Agent": self._user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            h["Authorization"] = f"Bearer {self._token}"
        return h

    def token(self, refresh: bool = False) -> Optional[str]:
        """Current credential; ``refresh=True`` re-reads it from the provider or environment."""
        if refresh:
            self.refresh_token()
        return self._token

    def refresh_token(self) -> Optional[str]:
        fresh = self._token_provider(True) if self._token_provider else _env_token()
        if fresh:
            self._token = fresh
        return self._token

    def _sleep_for_rate_limit_if_needed(self, r: httpx.Response) -> None:
        remaining = r.headers.get("X-RateLimit-Remaining")
        reset = r.headers.get("X-RateLimit-Reset")
        try:
            rem_i = int(remaining) if remaining is not None else None
            reset_i = int(reset) if reset is not None else None
        except ValueError:
            rem_i, reset_i = None, None

        if rem_i == 0 and reset_i:
            now = int(time.time())
            delay = max(0, reset_i - now) + 1
            time.sleep(delay)

    def _request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        h = dict(self._headers)
        if headers:
            h.update(headers)
        try:
            with httpx.Client(timeout=self._timeout, headers=h) as client:
                r = client.request(method, url, json=json)
            self._sleep_for_rate_limit_if_needed(r)

            # If 403 is rate-limit, back off until reset then retry once.
            if r.status_code == 403 and r.headers.get("X-RateLimit-Remaining") == "0":
                with httpx.Client(timeout=self._timeout, headers=h) as client:
                    r = client.request(method, url, json=json)
        except httpx.HTTPError as exc:
            raise GitHubError(f"GitHub request failed for {url}: {exc}") from exc
        return r

    def _url(self, path: str) -> str:
        return path if path.startswith("http") else f"{self._base_url}{path}"

    def _raise_for_status(self, r: httpx.Response, method: str, url: str) -> None:
        if r.status_code >= 400:
            raise GitHubError(
                f"GitHub API error {r.status_code} for {method} {url}: {r.text[:300]}",
                status_code=r.status_code,
            )

    def get_json(self, path: str) -> Any:
        """GET JSON for a path or full URL. Uses ETag conditional requests when possible."""
        url = self._url(path)

        extra_headers: dict[str, str] = {}
        etag = self._etag_by_url.get(url)
        if etag:
            extra_headers["If-None-Match"] = etag

        r = self._request("GET", url, headers=extra_headers)

        if r.status_code == 304:
            if url in self._json_cache_by_url:
                return self._json_cache_by_url[url]
            r = self._request("GET", url, headers={})

        self._raise_for_status(r, "GET", url)

        new_etag = r.headers.get("ETag")
        if new_etag:
            self._etag_by_url[url] = new_etag

        data = r.json()
        self._json_cache_by_url[url] = data
        return data

    def send_json(self, method: str, path: str, payload: dict[str, Any]) -> Any:
        url = self._url(path)
        r = self._request(method, url, json=payload)
        self._raise_for_status(r, method, url)
        # Writes invalidate any cached GET of the same resource.
        self._etag_by_url.pop(url, None)
        self._json_cache_by_url.pop(url, None)
        return r.json() if r.content else {}

    # -- issues ----------------------------------------------------------------

    def create_issue(self, owner: str, repo: str, title: str, body: str) -> dict:
        return self.send_json("POST", f"/repos/{owner}/{repo}/issues", {"title": title, "body": body})

    def get_issue(self, owner: str, repo: str, number: int) -> dict:
        return self.get_json(f"/repos/{owner}/{repo}/issues/{number}")

    def update_issue(self, owner: str, repo: str, number: int, **fields: Any) -> dict:
        return self.send_json("PATCH", f"/repos/{owner}/{repo}/issues/{number}", fields)

    def comment_issue(self, owner: str, repo: str, number: int, body: str) -> dict:
        """Comment on an issue or pull request (PRs share the issue comment API)."""
        return self.send_json(
            "POST", f"/repos/{owner}/{repo}/issues/{number}/comments", {"body": body[:COMMENT_MAX]}
        )

    # -- pull requests -----------------------------------------------------------

    def create_pull(self, owner: str, repo: str, *, title: str, head: str, base: str, body: str) -> dict:
        return self.send_json(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            {"title": title, "head": head, "base": base, "body": body},
        )

    def get_pull(self, owner: str, repo: str, number: int) -> dict:
        return self.get_json(f"/repos/{owner}/{repo}/pulls/{number}")

    def update_pull(self, owner: str, repo: str, number: int, **fields: Any) -> dict:
        return self.send_json("PATCH", f"/repos/{owner}/{repo}/pulls/{number}", fields)

    def merge_pull(self, owner: str, repo: str, number: int, merge_method: str = "squash") -> dict:
        return self.send_json(
            "PUT", f"/repos/{owner}/{repo}/pulls/{number}/merge", {"merge_method": merge_method}
        )

    # -- repositories --------------------------------------------------------------

    def get_repo(self, owner: str, repo: str) -> dict:
        return self.get_json(f"/repos/{owner}/{repo}")

    def list_installation_repos(self, per_page: int = 100, max_pages: int = 5) -> list[str]:
        """Full names of repositories the credential can reach. Caps pages to avoid runaway API usage."""
        out: list[str] = []
        for page in range(1, max_pages + 1):
            data = self.get_json(f"/installation/repositories?per_page={per_page}&page={page}")
            repos = data.get("repositories") if isinstance(data, dict) else data
            if not isinstance(repos, list):
                break
            out.extend(str(r["full_name"]) for r in repos if isinstance(r, dict) and r.get("full_name"))
            if len(repos) < per_page:
                break
        return out

    def list_user_repos(self, per_page: int = 100, max_pages: int = 5) -> list[str]:
        out: list[str] = []
        for page in range(1, max_pages + 1):
            data = self.get_json(f"/user/repos?per_page={per_page}&page={page}")
            if not isinstance(data, list):
                break
            out.extend(str(r["full_name"]) for r in data if isinstance(r, dict) and r.get("full_name"))
            if len(data) < per_page:
                break
        return out

    def accessible_repos(self) -> list[str]:
        """Installation repositories when the token is an app token, else the user's repositories."""
        try:
            return self.list_installation_repos()
        except GitHubError as exc:
            if exc.status_code not in (401, 403, 404):
                raise
        return self.list_user_repos()
