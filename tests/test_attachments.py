"""Unit tests for attachment / evidence normalization."""

import json

import pytest

from app.services.attachments import AttachmentError, dump_attachments, normalize_attachments


def test_empty_inputs() -> None:
    assert normalize_attachments(None) == []
    assert normalize_attachments("") == []
    assert normalize_attachments([]) == []


def test_bare_url_gets_name_from_path() -> None:
    [a] = normalize_attachments("https://cdn.example.com/files/report.pdf")
    assert a.url == "https://cdn.example.com/files/report.pdf"
    assert a.name == "report.pdf"
    assert a.mime_type is None


def test_url_without_path_falls_back_to_generic_name() -> None:
    [a] = normalize_attachments("https://cdn.example.com")
    assert a.name == "attachment"


def test_object_mime_type_aliases() -> None:
    result = normalize_attachments([
        {"url": "https://x.test/a.png", "name": "A", "type": "image/png"},
        {"url": "https://x.test/b.png", "mimeType": "image/png"},
        {"url": "https://x.test/c.txt", "mime_type": "text/plain"},
    ])
    assert [a.name for a in result] == ["A", "b.png", "c.txt"]
    assert [a.mime_type for a in result] == ["image/png", "image/png", "text/plain"]


def test_file_urls_take_precedence_over_url() -> None:
    raw = {
        "url": "https://x.test/ignored.png",
        "fileUrls": ["https://x.test/one.png", {"url": "https://x.test/two.png", "name": "Two"}],
    }
    result = normalize_attachments(raw)
    assert [a.url for a in result] == ["https://x.test/one.png", "https://x.test/two.png"]
    assert result[1].name == "Two"


def test_file_urls_as_json_string() -> None:
    raw = json.dumps({"fileUrls": json.dumps(["https://x.test/a.zip", "https://x.test/b.zip"])})
    result = normalize_attachments(raw)
    assert [a.name for a in result] == ["a.zip", "b.zip"]


def test_mixed_list_keeps_order() -> None:
    result = normalize_attachments([
        "https://x.test/1.png",
        {"fileUrls": ["https://x.test/2.png", "https://x.test/3.png"]},
        {"url": "https://x.test/4.png"},
    ])
    assert [a.name for a in result] == ["1.png", "2.png", "3.png", "4.png"]


@pytest.mark.parametrize("raw", [
    "ftp://x.test/a.png",
    "/relative/path.png",
    {"name": "no url"},
    [42],
    "[not json",
])
def test_malformed_attachments_rejected(raw: object) -> None:
    with pytest.raises(AttachmentError):
        normalize_attachments(raw)


def test_dump_attachments() -> None:
    dumped = dump_attachments(normalize_attachments({"url": "https://x.test/a.png", "type": "image/png"}))
    assert dumped == [{"url": "https://x.test/a.png", "name": "a.png", "mime_type": "image/png"}]
