#!/usr/bin/env python3
"""
Cognos Client Errors

Every failure raised by the client derives from CognosError so callers can
catch the whole family at a single point (the CLIs do this at top level).
"""

from __future__ import annotations

from typing import Optional


class CognosError(Exception):
    """Base class for all client failures."""


class ConfigError(CognosError):
    """Invalid or incomplete configuration at construction time."""


class TransportError(CognosError):
    """Network failure, unexpected HTTP status, or exhausted retries."""

    def __init__(self, message: str, link: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.link = link
        self.status_code = status_code


class GateTimeoutError(TransportError):
    """No admission slot became free within the configured timeout."""


class OperationCancelled(CognosError):
    """The caller's cancel event was set while waiting."""


class ProtocolParseError(CognosError):
    """A marker or field the portal normally emits was not found."""


class UnsupportedReportError(CognosError):
    """The report prompted for parameters."""


class PollLimitError(CognosError):
    """The report was still working after the configured number of polls."""


class FolderPathError(CognosError):
    """A folder path could not be resolved."""
