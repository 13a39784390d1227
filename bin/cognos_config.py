#!/usr/bin/env python3
"""
Cognos Client Configuration

Connection settings shared by single_report.py and download_reports.py.
Settings come from command line flags, optionally overridden by a JSON
config file, with the password falling back to the COGNOS_PASSWORD
environment variable.

Example config file:
  {
    "url": "https://adecognos.arkansas.gov",
    "dsn": "bentonvisms",
    "user": "APSCN\\\\0401jpenn",
    "retry_delay": 5,
    "retry_count": 3,
    "concurrent_requests": 4
  }
"""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from typing import Optional

from cognos_errors import ConfigError


PASSWORD_ENV = "COGNOS_PASSWORD"


@dataclass(frozen=True)
class Config:
    """Connection and retry settings for one Cognos session."""
    url: str
    dsn: str
    user: str
    password: str
    retry_delay_sec: float = 5.0
    retry_count: int = 3
    http_timeout_sec: float = 300.0
    concurrent_requests: int = 4
    acquire_timeout_sec: Optional[float] = None
    max_polls: Optional[int] = None

    def validate(self) -> "Config":
        """Raise ConfigError if the settings cannot produce a working session."""
        for name in ("url", "dsn", "user"):
            if not getattr(self, name):
                raise ConfigError(f"Missing required setting: {name}")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"Base URL must start with http:// or https://: {self.url}")
        if self.concurrent_requests < 1:
            raise ConfigError("concurrent_requests must be at least 1")
        if self.retry_count < 0:
            raise ConfigError("retry_count cannot be negative")
        if self.retry_delay_sec < 0:
            raise ConfigError("retry_delay cannot be negative")
        if self.http_timeout_sec <= 0:
            raise ConfigError("http_timeout must be positive")
        if self.acquire_timeout_sec is not None and self.acquire_timeout_sec <= 0:
            raise ConfigError("acquire_timeout must be positive when set")
        if self.max_polls is not None and self.max_polls < 1:
            raise ConfigError("max_polls must be at least 1 when set")
        return self


def add_connection_args(p: argparse.ArgumentParser) -> None:
    """Register the connection flags on an existing parser."""
    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--url", type=str, help="Base URL of the Cognos server")
    p.add_argument("--dsn", type=str, help="Cognos data source name (see the eSchool iframe URL)")
    p.add_argument("--user", type=str, help=r"Cognos user, e.g. APSCN\0401jpenn")
    p.add_argument("--password", type=str, default=None,
                   help=f"Cognos password (default: ${PASSWORD_ENV})")
    p.add_argument("--retry_delay", type=float, default=5.0,
                   help="Seconds between retries; also the report polling interval")
    p.add_argument("--retry_count", type=int, default=3,
                   help="Retries after the first failed attempt of a request")
    p.add_argument("--timeout", dest="http_timeout", type=float, default=300.0)
    p.add_argument("--concurrent_requests", type=int, default=4)
    p.add_argument("--acquire_timeout", type=float, default=None,
                   help="Give up waiting for a free request slot after this many seconds")
    p.add_argument("--max_polls", type=int, default=None,
                   help="Fail a report still running after this many polls (default: unbounded)")


def load_config_file(path: Optional[str]) -> dict:
    """
    Read the JSON config file, or return {} when no file was given.

    Raises:
        ConfigError: The file is unreadable or not a JSON object
    """
    if not path:
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must hold a JSON object")
    return data


def _number(data: dict, key: str, default, convert, optional: bool = False):
    value = data.get(key, default)
    if value is None:
        if optional:
            return None
        raise ConfigError(f"Setting {key} must be a number, got null")
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Setting {key} must be a number, got {value!r}") from None


def config_from_args(args: argparse.Namespace) -> Config:
    """Build a validated Config from parsed flags and the optional JSON file."""
    data = load_config_file(args.config)

    password = data.get("password", args.password)
    if password is None:
        password = os.getenv(PASSWORD_ENV, "")

    cfg = Config(
        url=str(data.get("url", args.url) or "").rstrip("/"),
        dsn=data.get("dsn", args.dsn) or "",
        user=data.get("user", args.user) or "",
        password=password,
        retry_delay_sec=_number(data, "retry_delay", args.retry_delay, float),
        retry_count=_number(data, "retry_count", args.retry_count, int),
        http_timeout_sec=_number(data, "timeout", args.http_timeout, float),
        concurrent_requests=_number(data, "concurrent_requests", args.concurrent_requests, int),
        acquire_timeout_sec=_number(data, "acquire_timeout", args.acquire_timeout, float, optional=True),
        max_polls=_number(data, "max_polls", args.max_polls, int, optional=True),
    )
    return cfg.validate()
