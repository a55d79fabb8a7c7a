from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from .dynalist_client import DynalistApiError, DynalistClient
from .parser import KeepNote, Label, NoteParseError, iter_note_files, parse_keep_note
from .storage import StorageError, Uploader


SOURCE_MARKER = "gkeep: "
FILENAME_BUDGET = 20
PREVIEW_LINE_BUDGET = 30
PREVIEW_LINES = 2
PREVIEW_SEPARATOR = " | "
ELLIPSIS = "..."

HASHTAGS_IN_TITLE = "title"
HASHTAGS_IN_NOTE = "note"
HASHTAG_MODES = (HASHTAGS_IN_TITLE, HASHTAGS_IN_NOTE)

# Takeout names notes without a title after their timestamp, e.g. 2019-03-05T12_34_56.789-05_00.json
TIMESTAMP_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}(?:[T _]\d{2}[_:.]\d{2}(?:[_:.]\d{2})?(?:\.\d+)?(?:Z|[+-]\d{2}[_:]?\d{2})?)?"
    r"|\b\d{8}(?:[T_]?\d{6})?\b"
)
EDGE_PUNCTUATION = " \t-_.,:;|()[]"

logger = logging.getLogger(__name__)


class AttachmentNotFoundError(FileNotFoundError):
    """Raised when an attachment referenced by a note is missing from the takeout."""


def normalize_labels(labels: Iterable[Union[Label, str]]) -> str:
    """Render labels as space-separated hashtags, keeping source order and duplicates."""

    hashtags = []
    for label in labels:
        name = label.name if isinstance(label, Label) else label
        hashtags.append("#" + name.replace(" ", "_"))
    return " ".join(hashtags)


def _truncate(text: str, budget: int) -> str:
    if len(text) > budget:
        return text[:budget] + ELLIPSIS
    return text


def shorten_filename(path: Union[Path, str]) -> str:
    base = Path(path).stem
    base = TIMESTAMP_RE.sub("", base)
    base = base.strip(EDGE_PUNCTUATION)
    if not base:
        base = "Untitled"
    return _truncate(base, FILENAME_BUDGET)


def content_preview(text: str) -> str:
    lines: List[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        lines.append(_truncate(stripped, PREVIEW_LINE_BUDGET))
        if len(lines) >= PREVIEW_LINES:
            break
    return PREVIEW_SEPARATOR.join(lines)


def synthesize_title(
    note: KeepNote
    ,hashtags: str = ""
    ,*
    ,hashtag_mode: str = HASHTAGS_IN_TITLE
) -> str:
    """Build the Dynalist item title, deriving one from the file name and body when the note has none."""

    title = note.title
    if not title:
        title = shorten_filename(note.path)
        preview = content_preview(note.body)
        if preview:
            title = f"{title}: {preview}"

    title = SOURCE_MARKER + title
    if hashtags and hashtag_mode == HASHTAGS_IN_TITLE:
        title += " " + hashtags
    return title


def resolve_attachment(base_dir: Path, relative_path: str) -> Path:
    candidate = base_dir / relative_path
    try:
        found = candidate.exists()
    except OSError:
        found = False
    if found:
        return candidate
    raise AttachmentNotFoundError(f"attachment file not found: {relative_path}")


def build_note_content(
    body: str
    ,attachment_links: Sequence[str] = ()
    ,hashtags: str = ""
    ,*
    ,hashtag_mode: str = HASHTAGS_IN_TITLE
) -> str:
    content = body
    if attachment_links:
        content += "\n\nAttachments:\n" + "\n".join(attachment_links)
    if hashtags and hashtag_mode == HASHTAGS_IN_NOTE:
        content = f"{content}\n\n{hashtags}" if content else hashtags
    return content


@dataclass
class ExportSettings:
    token: Optional[str] = None
    hashtag_mode: str = HASHTAGS_IN_TITLE
    dry_run: bool = False
    upload_attachments: bool = True


@dataclass
class NoteResult:
    path: Path
    status: str
    reason: str = ""
    payload: Optional[Dict[str, str]] = None
    node_id: Optional[str] = None
    missing_attachments: List[str] = field(default_factory=list)
    failed_uploads: List[str] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.status in ("delivered", "dry_run")


@dataclass
class RunSummary:
    total_notes: int = 0
    processed_notes: int = 0
    skipped_notes: int = 0
    failed_notes: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def handled(self) -> int:
        return self.processed_notes + self.skipped_notes + self.failed_notes

    def record(self, result: NoteResult) -> None:
        if result.delivered:
            self.processed_notes += 1
        elif result.status == "failed":
            self.failed_notes += 1
        else:
            self.skipped_notes += 1


def collect_attachment_links(
    note: KeepNote
    ,base_dir: Path
    ,uploader: Optional[Uploader]
    ,result: NoteResult
) -> List[str]:
    """Upload every resolvable attachment, skipping the ones that fail."""

    links: List[str] = []
    if uploader is None:
        return links

    for attachment in note.attachments:
        try:
            local_path = resolve_attachment(base_dir, attachment.file_path)
        except AttachmentNotFoundError as exc:
            logger.warning("%s: %s", note.path, exc)
            result.missing_attachments.append(attachment.file_path)
            continue

        try:
            url = uploader.upload(local_path, attachment.mimetype)
        except StorageError as exc:
            logger.warning("%s: failed to upload attachment: %s", note.path, exc)
            result.failed_uploads.append(attachment.file_path)
            continue

        links.append(f"[{attachment.file_path}]({url})")
    return links


def export_note(
    note: KeepNote
    ,base_dir: Path
    ,settings: ExportSettings
    ,*
    ,client: Optional[DynalistClient] = None
    ,uploader: Optional[Uploader] = None
    ,debug_logger: Optional[logging.Logger] = None
) -> NoteResult:
    """Turn one Keep note into a Dynalist inbox item and deliver it unless this is a dry run."""

    result = NoteResult(path=note.path, status="pending")
    links = collect_attachment_links(
        note, base_dir, uploader if settings.upload_attachments else None, result
    )
    hashtags = normalize_labels(note.labels)

    title = synthesize_title(note, hashtags, hashtag_mode=settings.hashtag_mode)
    content = build_note_content(note.body, links, hashtags, hashtag_mode=settings.hashtag_mode)
    result.payload = {"content": title, "note": content}

    if debug_logger:
        debug_logger.info("Payload for %s:\n%s", note.path, json.dumps(result.payload, indent=2))

    if settings.dry_run:
        result.status = "dry_run"
        return result

    if client is None:
        raise ValueError("a DynalistClient is required unless running dry")

    try:
        response = client.add_to_inbox(settings.token or "", title, content)
    except DynalistApiError as exc:
        logger.error("Failed to add %s to Dynalist after %d attempt(s): %s", note.path, exc.attempts, exc)
        result.status = "failed"
        result.reason = str(exc)
        return result

    result.status = "delivered"
    result.node_id = response.node_id
    logger.info("Added %s to Dynalist (node %s)", note.path, response.node_id)
    return result


def migrate_file(
    path: Path
    ,base_dir: Path
    ,settings: ExportSettings
    ,*
    ,client: Optional[DynalistClient] = None
    ,uploader: Optional[Uploader] = None
    ,debug_logger: Optional[logging.Logger] = None
) -> NoteResult:
    """Parse and export one takeout file; parse errors and archived notes become skipped results."""

    try:
        note = parse_keep_note(path)
    except NoteParseError as exc:
        logger.warning("Failed to parse Keep note: %s", exc)
        return NoteResult(path=path, status="skipped", reason=str(exc))

    if note.is_archived:
        logger.info("Ignoring archived note: %s", path)
        return NoteResult(path=path, status="skipped", reason="archived")
    if note.is_trashed:
        logger.info("Ignoring trashed note: %s", path)
        return NoteResult(path=path, status="skipped", reason="trashed")

    return export_note(
        note
        ,base_dir
        ,settings
        ,client=client
        ,uploader=uploader
        ,debug_logger=debug_logger
    )


def migrate_folder(
    base_dir: Path
    ,settings: ExportSettings
    ,*
    ,client: Optional[DynalistClient] = None
    ,uploader: Optional[Uploader] = None
    ,summary: Optional[RunSummary] = None
    ,on_result: Optional[Callable[[NoteResult, RunSummary], None]] = None
    ,debug_logger: Optional[logging.Logger] = None
) -> RunSummary:
    """Migrate every takeout file below base_dir, one note at a time."""

    summary = summary or RunSummary()
    for path in iter_note_files(base_dir):
        result = migrate_file(
            path
            ,base_dir
            ,settings
            ,client=client
            ,uploader=uploader
            ,debug_logger=debug_logger
        )
        summary.record(result)
        if on_result:
            on_result(result, summary)
    return summary
