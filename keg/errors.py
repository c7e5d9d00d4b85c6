"""
errors.py

Responsibility: The exception taxonomy shared by every pipeline stage.

Each error is fatal for the formula being processed. Messages name the
field or step that failed so the CLI can print them as-is.
"""

from __future__ import annotations


class KegError(RuntimeError):
    """Base class for all keg errors."""


class ConfigError(KegError):
    pass


class ParseError(KegError, ValueError):
    """A formula could not be turned into a descriptor."""

    def __init__(self, field: str, message: str, *, line: int | None = None) -> None:
        self.field = field
        self.line = line
        where = f" (line {line})" if line is not None else ""
        super().__init__(f"Invalid `{field}`{where}: {message}")


class DependencyError(KegError):
    pass


class FetchError(KegError):
    """Transport failure while downloading a source archive."""


class NetworkError(FetchError):
    pass


class FetchTimeout(FetchError):
    pass


class ChecksumMismatch(KegError):
    def __init__(self, url: str, expected: str, actual: str) -> None:
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(f"sha256 mismatch for {url}\n  expected: {expected}\n  actual:   {actual}")


class InstallError(KegError):
    pass


class MissingSourceFile(InstallError):
    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"Install step source not found in archive: {source}")


class RenderError(KegError):
    pass


class SmokeTestFailed(KegError):
    def __init__(self, message: str, *, output: str = "") -> None:
        self.output = output
        super().__init__(message)
