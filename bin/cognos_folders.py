#!/usr/bin/env python3
"""
Cognos Folder Browsing

Lists folder contents and resolves human-readable paths such as
"public/Student Reports/Enrollment" to the folder or report they name.

Paths start with "public" (public folders) or "~" ("my folders" of the
logged-in user). Each later component names a folder; the last may name a
report.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple

from bs4 import BeautifulSoup

from cognos_errors import FolderPathError, ProtocolParseError
from cognos_links import (
    find_folder_roots_in_page,
    folder_id_from_link,
    folder_link_from_id,
    login_link,
    report_id_from_link,
)


PUBLIC_ROOT = "public"
MY_FOLDERS_ROOT = "~"


# =============================================================================
# FOLDER ENTRIES
# =============================================================================

class FolderEntryType(Enum):
    FOLDER = "folder"
    REPORT = "report"


@dataclass(frozen=True)
class FolderEntry:
    """Anything that can live in a Cognos folder: a folder or a report."""
    type: FolderEntryType
    id: str

    @property
    def is_folder(self) -> bool:
        return self.type is FolderEntryType.FOLDER

    def to_json(self) -> Dict[str, str]:
        return {"type": encode_entry_type(self.type), "id": self.id}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "FolderEntry":
        try:
            entry_type = FolderEntryType(data["type"])
        except ValueError:
            raise ValueError(f"Unknown folder entry type: {data['type']!r}") from None
        return cls(type=entry_type, id=str(data["id"]))


def encode_entry_type(value: Any) -> str:
    """
    External name of a folder entry type.

    Raises:
        ValueError: `value` is not a FolderEntryType
    """
    if isinstance(value, FolderEntryType):
        return value.value
    raise ValueError(f"FolderEntryType is a nominal type, but the provided value was unknown: {value!r}")


class FolderEntryEncoder(json.JSONEncoder):
    """json.dumps(..., cls=FolderEntryEncoder) for listings and entries."""

    def default(self, o):
        if isinstance(o, FolderEntry):
            return o.to_json()
        if isinstance(o, FolderEntryType):
            return encode_entry_type(o)
        return super().default(o)


# =============================================================================
# LISTING
# =============================================================================

def find_folder_roots(session) -> Tuple[str, str]:
    """
    Hit the login page and read the root folder ids from it.

    This is also the request that seeds the session cookies.

    Returns:
        Tuple of (public_folder_id, my_folders_id)
    """
    html = session.request("GET", login_link(session.cfg.dsn))
    return find_folder_roots_in_page(html)


def parse_folder_listing(html: str) -> Dict[str, FolderEntry]:
    """
    Turn a folder page into a map of entry name to FolderEntry.

    Every link in a `td.tableText` cell is one entry. Folder links carry
    m_folder; report links carry ui.object.

    Raises:
        ProtocolParseError: A link is neither a folder nor a report link
    """
    soup = BeautifulSoup(html, "html.parser")
    entries: Dict[str, FolderEntry] = {}

    for cell in soup.find_all("td", class_="tableText"):
        for link in cell.find_all("a", recursive=False):
            name = link.get_text().strip()
            href = link.get("href", "")

            try:
                entry = FolderEntry(FolderEntryType.FOLDER, folder_id_from_link(href))
            except ProtocolParseError:
                try:
                    entry = FolderEntry(FolderEntryType.REPORT, report_id_from_link(href))
                except ProtocolParseError:
                    raise ProtocolParseError(
                        f"Can not parse {name} as a folder or as a report"
                    ) from None

            entries[name] = entry

    return entries


def ls_folder(session, folder_id: str) -> Dict[str, FolderEntry]:
    """List the folders and reports directly inside a folder, keyed by name."""
    html = session.request("GET", folder_link_from_id(folder_id))
    return parse_folder_listing(html)


# =============================================================================
# PATH RESOLUTION
# =============================================================================

def split_path(path: str) -> List[str]:
    """Split "public/A/B" into ["public", "A", "B"], ignoring empty components."""
    return [part for part in path.strip().split("/") if part]


def folder_entry_from_path(session, path: Sequence[str]) -> FolderEntry:
    """
    Resolve a path to the folder or report it names.

    Args:
        session: CognosSession used for the listings
        path: Components; the first is "public" or "~"

    Raises:
        FolderPathError: Empty path, unknown root, missing component, or a
            report in the middle of the path
    """
    if len(path) == 0:
        raise FolderPathError("Cannot get folder entry for empty path")

    root = path[0]
    if root not in (PUBLIC_ROOT, MY_FOLDERS_ROOT):
        raise FolderPathError(f"Invalid root folder {root} (expected {PUBLIC_ROOT!r} or {MY_FOLDERS_ROOT!r})")

    public_id, my_folders_id = find_folder_roots(session)
    current = FolderEntry(
        FolderEntryType.FOLDER,
        public_id if root == PUBLIC_ROOT else my_folders_id,
    )

    components = path[1:]
    for i, name in enumerate(components):
        if not current.is_folder:
            raise FolderPathError(f"{components[i - 1]} is a report and cannot contain children")

        entries = ls_folder(session, current.id)
        if name not in entries:
            raise FolderPathError(f"Could not find folder entry {name}")
        current = entries[name]

    return current
