"""Normalization of attachment / evidence payloads.

Clients have sent attachments in several shapes over time:

- a bare URL string: ``"https://cdn.example.com/a.png"``
- an object: ``{"url": ..., "name": ..., "type" | "mimeType" | "mime_type": ...}``
- an object (or JSON string) carrying ``fileUrls``, itself a list or a JSON
  string holding a list of either of the above

When an object carries both ``fileUrls`` and ``url``, ``fileUrls`` wins.
Every shape ends up as an ordered list of ``Attachment``.
"""

import json
import posixpath
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator


class Attachment(BaseModel):
    url: str = Field(..., max_length=2048)
    name: str = Field(..., min_length=1, max_length=256)
    mime_type: str | None = Field(None, max_length=128)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Attachment URL must be an absolute http(s) URL")
        return v


class AttachmentError(ValueError):
    pass


def _name_from_url(url: str) -> str:
    name = posixpath.basename(urlparse(url).path)
    return name or "attachment"


def _from_url(url: str) -> Attachment:
    return Attachment(url=url, name=_name_from_url(url))


def _from_object(obj: dict) -> Attachment:
    url = obj.get("url")
    if not isinstance(url, str):
        raise AttachmentError("Attachment object is missing a url")
    mime_type = obj.get("mime_type") or obj.get("mimeType") or obj.get("type")
    return Attachment(url=url, name=obj.get("name") or _name_from_url(url), mime_type=mime_type)


def _expand(item: Any) -> list[Attachment]:
    if isinstance(item, str):
        text = item.strip()
        if text.startswith(("[", "{")):
            try:
                return _expand(json.loads(text))
            except json.JSONDecodeError as exc:
                raise AttachmentError(f"Unparseable attachment payload: {exc.msg}") from exc
        return [_from_url(text)]
    if isinstance(item, list):
        return [a for entry in item for a in _expand(entry)]
    if isinstance(item, dict):
        if "fileUrls" in item:
            return _expand(item["fileUrls"])
        return [_from_object(item)]
    raise AttachmentError(f"Unsupported attachment type: {type(item).__name__}")


def normalize_attachments(raw: Any) -> list[Attachment]:
    """Flatten any accepted attachment shape into a validated, ordered list.

    Raises ``AttachmentError`` on anything malformed.
    """
    if raw is None or raw == "":
        return []
    try:
        return _expand(raw)
    except ValidationError as exc:
        raise AttachmentError(str(exc.errors()[0]["msg"])) from exc


def dump_attachments(attachments: list[Attachment]) -> list[dict]:
    return [a.model_dump() for a in attachments]
