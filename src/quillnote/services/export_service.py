"""Export of a note collection as JSON, plain text or Markdown.

Everything here is a pure function of the notes, their media and the
export timestamp; nothing touches the database or storage.
"""
import datetime
import html
import json
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Sequence, Union

from quillnote.exceptions import ErrorCode, ValidationError
from quillnote.models.schema import ExportFormat, MediaItem, Note

EXPORT_EXTENSIONS: Dict[ExportFormat, str] = {
    ExportFormat.JSON: "json",
    ExportFormat.TEXT: "txt",
    ExportFormat.MARKDOWN: "md",
}

EXPORT_MIME_TYPES: Dict[ExportFormat, str] = {
    ExportFormat.JSON: "application/json",
    ExportFormat.TEXT: "text/plain",
    ExportFormat.MARKDOWN: "text/markdown",
}

TEXT_RULE = "=" * 50
TEXT_SEPARATOR = "-" * 50
MARKDOWN_RULE = "---"

_FLAGS = re.IGNORECASE | re.DOTALL


@dataclass(frozen=True)
class ExportBundle:
    """A finished export, ready to be written or downloaded."""

    filename: str
    mime_type: str
    data: bytes


def parse_export_format(value: Union[str, ExportFormat]) -> ExportFormat:
    if isinstance(value, ExportFormat):
        return value
    aliases = {"txt": ExportFormat.TEXT, "md": ExportFormat.MARKDOWN}
    key = str(value).strip().lower()
    if key in aliases:
        return aliases[key]
    try:
        return ExportFormat(key)
    except ValueError:
        raise ValidationError(
            f"Invalid export format: {value}. Valid formats are: "
            f"{', '.join(f.value for f in ExportFormat)}",
            field="format",
            value=value,
            code=ErrorCode.INVALID_EXPORT_FORMAT,
        )


def export_filename(fmt: Union[str, ExportFormat], exported_at: datetime.datetime) -> str:
    """``notes-export-YYYY-MM-DD.<ext>``"""
    fmt = parse_export_format(fmt)
    return f"notes-export-{exported_at.date().isoformat()}.{EXPORT_EXTENSIONS[fmt]}"


def _strip_tags(fragment: str) -> str:
    return re.sub(r"<[^>]+>", "", fragment)


def _tidy(text: str) -> str:
    text = html.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(fragment: str) -> str:
    """Strip HTML to plain text, keeping block boundaries as line breaks."""
    if not fragment:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", fragment, flags=_FLAGS)
    text = re.sub(r"</(p|div|li|h[1-6]|blockquote|pre)\s*>", "\n", text, flags=_FLAGS)
    return _tidy(_strip_tags(text))


# Inline tags and their Markdown delimiters
_INLINE_MARKDOWN = [
    (("strong", "b"), "**", "**"),
    (("em", "i"), "*", "*"),
    (("s", "strike", "del"), "~~", "~~"),
    (("code",), "`", "`"),
]


def html_to_markdown(fragment: str) -> str:
    """Best-effort HTML to Markdown conversion.

    Handles bold, italic, strikethrough, inline code, list items, line
    breaks, paragraphs and headings 1-3. Any other tag is dropped and its
    text kept, underline included since Markdown has no form for it.
    """
    if not fragment:
        return ""
    text = fragment
    for level in (1, 2, 3):
        text = re.sub(
            rf"<h{level}(\s[^>]*)?>(.*?)</h{level}\s*>",
            lambda m, level=level: f"\n{'#' * level} {m.group(2).strip()}\n\n",
            text,
            flags=_FLAGS,
        )
    for tags, opener, closer in _INLINE_MARKDOWN:
        names = "|".join(tags)
        text = re.sub(
            rf"<({names})(\s[^>]*)?>(.*?)</\1\s*>",
            lambda m, o=opener, c=closer: f"{o}{m.group(3)}{c}",
            text,
            flags=_FLAGS,
        )
    text = re.sub(r"<li(\s[^>]*)?>(.*?)</li\s*>",
                  lambda m: f"- {m.group(2).strip()}\n", text, flags=_FLAGS)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=_FLAGS)
    text = re.sub(r"<p(\s[^>]*)?>(.*?)</p\s*>",
                  lambda m: f"{m.group(2)}\n\n", text, flags=_FLAGS)
    text = re.sub(r"<[^>]+>", "", text)
    return _tidy(text)


def _media_by_note(media: Sequence[MediaItem]) -> Dict[str, List[MediaItem]]:
    grouped: Dict[str, List[MediaItem]] = defaultdict(list)
    for item in media:
        grouped[item.note_id].append(item)
    return grouped


def _format_timestamp(value: datetime.datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def export_json(notes: Sequence[Note], media: Sequence[MediaItem],
                exported_at: datetime.datetime) -> str:
    """Full-fidelity export with media references nested under each note."""
    grouped = _media_by_note(media)
    data = {
        "exportDate": exported_at.isoformat(),
        "notesCount": len(notes),
        "notes": [
            {
                **note.model_dump(mode="json"),
                "media": [m.model_dump(mode="json") for m in grouped.get(note.id, [])],
            }
            for note in notes
        ],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def export_text(notes: Sequence[Note], media: Sequence[MediaItem],
                exported_at: datetime.datetime) -> str:
    """Human-readable export with HTML stripped from note bodies."""
    grouped = _media_by_note(media)
    lines = [
        "Notes Export",
        f"Export Date: {_format_timestamp(exported_at)}",
        f"Total Notes: {len(notes)}",
        "",
        TEXT_RULE,
        "",
    ]
    for index, note in enumerate(notes, start=1):
        lines.append(f"Note {index}")
        lines.append(f"Title: {note.display_title}")
        lines.append(f"Created: {_format_timestamp(note.created_at)}")
        if note.tags:
            lines.append(f"Tags: {', '.join(t.name for t in note.tags)}")
        lines.append("Content:")
        lines.append(html_to_text(note.content or "") or "(no content)")
        note_media = grouped.get(note.id, [])
        if note_media:
            lines.append(f"Media: {', '.join(m.media_type.value for m in note_media)}")
        lines.extend(["", TEXT_SEPARATOR, ""])
    return "\n".join(lines)


def export_markdown(notes: Sequence[Note], media: Sequence[MediaItem],
                    exported_at: datetime.datetime) -> str:
    """Markdown export: one heading per note, separated by horizontal rules."""
    grouped = _media_by_note(media)
    blocks = [
        f"_Exported {_format_timestamp(exported_at)} ({len(notes)} notes)_",
    ]
    for note in notes:
        meta = [
            f"**Created:** {_format_timestamp(note.created_at)}",
            f"**Updated:** {_format_timestamp(note.updated_at)}",
        ]
        if note.tags:
            meta.append(f"**Tags:** {', '.join(t.name for t in note.tags)}")
        parts = [f"# {note.display_title}", " | ".join(meta)]
        body = html_to_markdown(note.content or "")
        if body:
            parts.append(body)
        note_media = grouped.get(note.id, [])
        if note_media:
            parts.append("**Media:**\n" + "\n".join(
                f"- {m.media_type.value}: {m.storage_path}" for m in note_media
            ))
        blocks.append("\n\n".join(parts))
    return f"\n\n{MARKDOWN_RULE}\n\n".join(blocks) + "\n"


_SERIALIZERS = {
    ExportFormat.JSON: export_json,
    ExportFormat.TEXT: export_text,
    ExportFormat.MARKDOWN: export_markdown,
}


def build_export(fmt: Union[str, ExportFormat], notes: Sequence[Note],
                 media: Sequence[MediaItem], exported_at: datetime.datetime) -> ExportBundle:
    """Serialize notes in ``fmt`` and package the result with its file name and MIME type."""
    fmt = parse_export_format(fmt)
    content = _SERIALIZERS[fmt](notes, media, exported_at)
    return ExportBundle(
        filename=export_filename(fmt, exported_at),
        mime_type=EXPORT_MIME_TYPES[fmt],
        data=content.encode("utf-8"),
    )
