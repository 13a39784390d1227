#!/usr/bin/env python3
"""
Cognos Link Codec

Pure functions that translate between Cognos object ids and the links used
to browse or run them, plus the page scans that pull ids and fields back out
of the portal's HTML. No I/O happens here.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple
from urllib.parse import parse_qs, quote_plus, urlsplit

from cognos_errors import ProtocolParseError


CGI_PATH = "/ibmcognos/cgi-bin/cognos.cgi"

_FOLDER_ID_RE = re.compile(r"[?&]m_folder=([0-9a-zA-Z-]+)")
_PUBLIC_ROOT_RE = re.compile(r'var g_PS_PFRootId = "([0-9a-zA-Z-]+)";')
_MY_FOLDERS_ROOT_RE = re.compile(r'var g_PS_MFRootId = "([0-9a-zA-Z-]+)";')
_DOWNLOAD_URL_RE = re.compile(r"var sURL = '([^']+)';")


def login_link(dsn: str) -> str:
    """Link that must be hit first; it hands out session cookies and the root folder ids."""
    return (
        CGI_PATH
        + "?dsn=" + dsn
        + "&CAMNamespace=esp"
        + "&b_action=xts.run"
        + "&m=portal/cc.xts"
        + "&gohome="
    )


def folder_link_from_id(folder_id: str) -> str:
    return (
        CGI_PATH
        + "?b_action=xts.run"
        + "&m=portal/cc.xts"
        + "&m_folder=" + folder_id
    )


def report_link_from_id(report_id: str) -> str:
    """Link that runs a report to CSV with prompting disabled."""
    return (
        CGI_PATH
        + "?b_action=cognosViewer"
        + "&ui.action=run"
        + "&ui.object=" + quote_plus(report_id)
        + "&run.outputFormat=CSV"
        + "&run.prompt=false"
    )


def folder_id_from_link(link: str) -> str:
    """
    Pull the folder id out of a folder link.

    Raises:
        ProtocolParseError: The link does not point to a folder
    """
    m = _FOLDER_ID_RE.search(link)
    if not m:
        raise ProtocolParseError(f"Unable to find folder ID from link: {link}")
    return m.group(1)


def report_id_from_link(link: str) -> str:
    """
    Pull the report id (the ui.object query parameter) out of a report link.

    Raises:
        ProtocolParseError: The link has no ui.object parameter
    """
    values = parse_qs(urlsplit(link).query).get("ui.object")
    if not values or not values[0]:
        raise ProtocolParseError(f"Unable to find report ID from link: {link}")
    return values[0]


def find_folder_roots_in_page(html: str) -> Tuple[str, str]:
    """
    Find the public and "my folders" root ids on the login page.

    Returns:
        Tuple of (public_folder_id, my_folders_id)

    Raises:
        ProtocolParseError: Either assignment is missing
    """
    m = _PUBLIC_ROOT_RE.search(html)
    if not m:
        raise ProtocolParseError("Unable to find Cognos public root folder ID")
    public_id = m.group(1)

    m = _MY_FOLDERS_ROOT_RE.search(html)
    if not m:
        raise ProtocolParseError('Unable to find Cognos "my folders" root folder ID')
    return public_id, m.group(1)


def find_json_value_in_page(html: str, key: str) -> str:
    """
    Find the value of the first `"key": "value"` pair in a page.

    Raises:
        ProtocolParseError: The key does not appear in that form
    """
    m = re.search('"' + re.escape(key) + '": "(.*?)"', html)
    if not m:
        raise ProtocolParseError(f"Could not find JSON value {key} in page")
    return m.group(1)


def find_download_url(html: str) -> Optional[str]:
    """Return the `var sURL = '...';` link of a finished report, or None."""
    m = _DOWNLOAD_URL_RE.search(html)
    return m.group(1) if m else None
