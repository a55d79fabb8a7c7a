from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from bs4 import BeautifulSoup


BLOCK_TAGS = ["p", "div", "li"]


class NoteParseError(ValueError):
    """Raised when a takeout JSON file cannot be turned into a KeepNote."""


@dataclass(frozen=True)
class Attachment:
    file_path: str
    mimetype: str = ""


@dataclass(frozen=True)
class Label:
    name: str


@dataclass(frozen=True)
class ListItem:
    text: str
    is_checked: bool = False


@dataclass(frozen=True)
class KeepNote:
    title: str
    text_content: str
    path: Path
    text_content_html: str = ""
    list_content: Tuple[ListItem, ...] = ()
    attachments: Tuple[Attachment, ...] = ()
    labels: Tuple[Label, ...] = ()
    is_archived: bool = False
    is_trashed: bool = False
    created_timestamp_usec: int = 0
    user_edited_timestamp_usec: int = 0
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def created_at(self) -> Optional[datetime]:
        return usec_to_datetime(self.created_timestamp_usec)

    @property
    def edited_at(self) -> Optional[datetime]:
        return usec_to_datetime(self.user_edited_timestamp_usec)

    @property
    def body(self) -> str:
        """Plain-text body: text content, then checklist items, then stripped HTML."""

        if self.text_content:
            return self.text_content
        if self.list_content:
            return "\n".join(
                f"- [{'x' if item.is_checked else ' '}] {item.text}" for item in self.list_content
            )
        if self.text_content_html:
            return html_to_text(self.text_content_html)
        return ""


def usec_to_datetime(value: int) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value / 1_000_000, tz=timezone.utc)


def html_to_text(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(BLOCK_TAGS):
        block.append("\n")
    return soup.get_text().strip()


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return 0
    return 0


def _as_list(data: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise NoteParseError(f"'{key}' must be a list, got {type(value).__name__}")
    return [entry for entry in value if isinstance(entry, dict)]


def note_from_dict(data: Dict[str, Any], path: Path) -> KeepNote:
    if not isinstance(data, dict):
        raise NoteParseError(f"{path}: expected a JSON object, got {type(data).__name__}")

    attachments = tuple(
        Attachment(file_path=_as_str(entry.get("filePath")), mimetype=_as_str(entry.get("mimetype")))
        for entry in _as_list(data, "attachments")
        if _as_str(entry.get("filePath"))
    )
    labels = tuple(
        Label(name=_as_str(entry.get("name")))
        for entry in _as_list(data, "labels")
        if _as_str(entry.get("name"))
    )
    list_content = tuple(
        ListItem(text=_as_str(entry.get("text")), is_checked=bool(entry.get("isChecked")))
        for entry in _as_list(data, "listContent")
    )

    known = {
        "title", "textContent", "textContentHtml", "listContent", "attachments", "labels",
        "isArchived", "isTrashed", "createdTimestampUsec", "userEditedTimestampUsec",
    }
    return KeepNote(
        title=_as_str(data.get("title")).strip(),
        text_content=_as_str(data.get("textContent")),
        path=path,
        text_content_html=_as_str(data.get("textContentHtml")),
        list_content=list_content,
        attachments=attachments,
        labels=labels,
        is_archived=bool(data.get("isArchived")),
        is_trashed=bool(data.get("isTrashed")),
        created_timestamp_usec=_as_int(data.get("createdTimestampUsec")),
        user_edited_timestamp_usec=_as_int(data.get("userEditedTimestampUsec")),
        extra={key: value for key, value in data.items() if key not in known},
    )


def parse_keep_note(path: Path) -> KeepNote:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise NoteParseError(f"{path}: failed to read file: {exc}") from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise NoteParseError(f"{path}: failed to decode JSON: {exc}") from exc
    return note_from_dict(data, path)


def iter_note_files(folder: Path) -> Iterator[Path]:
    """Yield every .json file below folder as the walk reaches it, sorted per directory."""

    for root, dirs, files in os.walk(folder):
        dirs.sort()
        for name in sorted(files):
            if name.endswith(".json"):
                yield Path(root) / name


def count_note_files(folder: Path) -> int:
    return sum(1 for _ in iter_note_files(folder))
