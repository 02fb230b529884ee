"""Adapters for external systems: Notion tracker, GitHub, OpenAI and local git."""

from shepherd.adapters.git_cli import GitWorkspace
from shepherd.adapters.github_client import GitHubClient
from shepherd.adapters.llm_client import LlmClient
from shepherd.adapters.tracker_client import TrackerClient

__all__ = ["GitHubClient", "GitWorkspace", "LlmClient", "TrackerClient"]
