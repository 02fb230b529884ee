"""Kanban shepherd: moves tracker cards from intake to merged pull request."""

__version__ = "0.1.0"
