"""Markdown task files with optional YAML front matter."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import frontmatter

from deliberation.models import Attachment, AttachmentKind, Mode

logger = logging.getLogger(__name__)

_KINDS = {
    ".pdf": AttachmentKind.PDF,
    ".png": AttachmentKind.IMAGE,
    ".jpg": AttachmentKind.IMAGE,
    ".jpeg": AttachmentKind.IMAGE,
    ".gif": AttachmentKind.IMAGE,
    ".webp": AttachmentKind.IMAGE,
}


@dataclass
class TaskFile:
    text: str
    mode: Mode | None = None
    rounds: int | None = None
    web_search: bool | None = None
    attachments: list[Path] = field(default_factory=list)


def parse_task_file(file_path: Path) -> TaskFile:
    """Parse a markdown task file.

    Recognized front matter keys: mode, rounds, web_search, attachments
    (a path or list of paths, relative to the task file). Unknown keys are
    ignored.

    Raises:
        ValueError: If mode is not debate, convergent or plain.
    """
    post = frontmatter.load(str(file_path))
    meta = dict(post.metadata)

    mode = Mode(str(meta["mode"]).lower()) if "mode" in meta else None
    rounds = int(meta["rounds"]) if "rounds" in meta else None
    web_search = bool(meta["web_search"]) if "web_search" in meta else None

    raw_attachments = meta.get("attachments") or []
    if isinstance(raw_attachments, str):
        raw_attachments = [raw_attachments]
    attachments = [(file_path.parent / str(p)) for p in raw_attachments]

    return TaskFile(
        text=post.content.strip(),
        mode=mode,
        rounds=rounds,
        web_search=web_search,
        attachments=attachments,
    )


def attachment_kind(path: Path) -> AttachmentKind | None:
    return _KINDS.get(path.suffix.lower())


def load_attachment(path: Path) -> Attachment:
    """Read an attachment from disk.

    Raises:
        ValueError: If the file extension is not a supported image or PDF type.
    """
    kind = attachment_kind(path)
    if kind is None:
        raise ValueError(f"Unsupported attachment type: {path.name}")
    return Attachment(kind=kind, data=path.read_bytes(), name=path.name)
