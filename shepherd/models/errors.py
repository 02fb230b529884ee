"""Exception hierarchy shared by adapters and services."""

from __future__ import annotations


class ShepherdError(RuntimeError):
    pass


class ConfigError(ShepherdError):
    """Process-wide configuration is missing or invalid."""


class ItemConfigError(ShepherdError):
    """A single work item lacks configuration it needs (e.g. target repository)."""


class TrackerError(ShepherdError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubError(ShepherdError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LlmError(ShepherdError):
    pass


class LlmParseError(LlmError):
    """Structured LLM output could not be parsed at all."""


class ScopeParseError(LlmParseError):
    pass


class CommandError(ShepherdError):
    def __init__(self, message: str, stdout: str = "", stderr: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


class CommandTimeout(CommandError):
    pass


class EditLoopError(ShepherdError):
    """Base for edit-loop failures; the message is fed back into the next prompt."""


class ZeroEditsError(EditLoopError):
    pass


class InvalidPathError(EditLoopError):
    pass


class DocsOnlyChangeError(EditLoopError):
    pass


class CheckFailedError(EditLoopError):
    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class DependencyInstallError(EditLoopError):
    """Fatal: aborts the whole edit loop instead of consuming a retry."""
