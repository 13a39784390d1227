from __future__ import annotations

import pytest

from cognos_errors import ProtocolParseError
from cognos_links import (
    CGI_PATH,
    find_download_url,
    find_folder_roots_in_page,
    find_json_value_in_page,
    folder_id_from_link,
    folder_link_from_id,
    login_link,
    report_id_from_link,
    report_link_from_id,
)
from cognos_pages import LOGIN_PAGE


def test_login_link() -> None:
    assert login_link("bentonvisms") == (
        "/ibmcognos/cgi-bin/cognos.cgi?dsn=bentonvisms&CAMNamespace=esp"
        "&b_action=xts.run&m=portal/cc.xts&gohome="
    )


def test_folder_link_round_trips_through_id_extraction() -> None:
    link = folder_link_from_id("i4F2A9C0B")
    assert link == CGI_PATH + "?b_action=xts.run&m=portal/cc.xts&m_folder=i4F2A9C0B"
    assert folder_id_from_link(link) == "i4F2A9C0B"


def test_report_link_requests_csv_without_prompting() -> None:
    link = report_link_from_id("/content/folder[@name='Student']/report[@name='Enrollment List']")
    assert link.startswith(CGI_PATH + "?b_action=cognosViewer&ui.action=run&ui.object=")
    assert "ui.object=%2Fcontent%2Ffolder%5B%40name%3D%27Student%27%5D" in link
    assert "Enrollment+List" in link
    assert link.endswith("&run.outputFormat=CSV&run.prompt=false")
    assert report_id_from_link(link) == "/content/folder[@name='Student']/report[@name='Enrollment List']"


def test_folder_id_from_non_folder_link_fails() -> None:
    with pytest.raises(ProtocolParseError, match="Unable to find folder ID"):
        folder_id_from_link(CGI_PATH + "?b_action=cognosViewer&ui.object=abc")


def test_report_id_from_link_without_object_fails() -> None:
    with pytest.raises(ProtocolParseError, match="Unable to find report ID"):
        report_id_from_link(CGI_PATH + "?b_action=xts.run")


def test_find_folder_roots() -> None:
    assert find_folder_roots_in_page(LOGIN_PAGE) == ("i0A1B2C3D4E5F", "iMY9876543210")


def test_find_folder_roots_takes_first_match() -> None:
    page = LOGIN_PAGE + 'var g_PS_PFRootId = "second";\nvar g_PS_MFRootId = "other";'
    assert find_folder_roots_in_page(page) == ("i0A1B2C3D4E5F", "iMY9876543210")


@pytest.mark.parametrize(
    "page, message",
    [
        ('var g_PS_MFRootId = "Y";', "public root folder"),
        ('var g_PS_PFRootId = "X";', "my folders"),
        ("<html></html>", "public root folder"),
    ],
)
def test_find_folder_roots_requires_both_ids(page: str, message: str) -> None:
    with pytest.raises(ProtocolParseError, match=message):
        find_folder_roots_in_page(page)


def test_find_json_value_escapes_key() -> None:
    page = '{"cvXid": "wrong", "cv.id": "_NS_", "m_sTracking": ""}'
    assert find_json_value_in_page(page, "cv.id") == "_NS_"
    assert find_json_value_in_page(page, "m_sTracking") == ""


def test_find_json_value_missing_key() -> None:
    with pytest.raises(ProtocolParseError, match="m_sConversation"):
        find_json_value_in_page('{"m_sTracking": "abc"}', "m_sConversation")


def test_find_download_url() -> None:
    page = "<script>var sURL = '/ibmcognos/cgi-bin/cognos.cgi?b_action=cognosViewer&ui.action=view';</script>"
    assert find_download_url(page) == "/ibmcognos/cgi-bin/cognos.cgi?b_action=cognosViewer&ui.action=view"
    assert find_download_url("<html></html>") is None
