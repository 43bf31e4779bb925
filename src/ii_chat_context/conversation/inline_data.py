"""
Conversion of inline base64 payloads in model output into attachments.

Markdown images of the form ![alt](data:<mime>;base64,<data>) above a
size threshold are stored through an AttachmentSink and replaced in the
text by ![alt](attachment://<id>).
"""

import asyncio
import base64
import mimetypes
import re
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from .nodes import Attachment

logger = structlog.get_logger()

INLINE_BASE64_PATTERN = re.compile(r"!\[([^\]]*)\]\(data:([^;]+);base64,([^)]+)\)")
ATTACHMENT_SCHEME = "attachment://"


@dataclass
class InlineDataResult:
    processed_text: str
    new_attachments: list[Attachment] = field(default_factory=list)


def estimate_decoded_size(base64_length: int) -> float:
    return base64_length * 0.75


def attachment_type_for(mime_type: str) -> str:
    major = mime_type.split("/", 1)[0]
    if major in ("image", "audio", "video"):
        return major
    if mime_type.startswith("text/") or mime_type == "application/pdf":
        return "document"
    return "other"


def _new_attachment_id() -> str:
    return f"att-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class AttachmentSink(ABC):
    """Stores decoded payloads and returns the attachment that refers to them."""

    @abstractmethod
    async def store(self, data: bytes, name: str, mime_type: str) -> Attachment:
        pass


class InMemoryAttachmentSink(AttachmentSink):
    """Keeps payloads inline on the attachment as base64."""

    async def store(self, data: bytes, name: str, mime_type: str) -> Attachment:
        return Attachment(
            id=_new_attachment_id(),
            type=attachment_type_for(mime_type),
            mime_type=mime_type,
            size=len(data),
            name=name,
            data=base64.b64encode(data).decode("ascii"),
        )


class DirectoryAttachmentSink(AttachmentSink):
    """Writes payloads to files under a directory."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def store(self, data: bytes, name: str, mime_type: str) -> Attachment:
        attachment_id = _new_attachment_id()
        path = self.base_dir / f"{attachment_id}-{name}"
        await asyncio.to_thread(self._write, path, data)
        return Attachment(
            id=attachment_id,
            type=attachment_type_for(mime_type),
            mime_type=mime_type,
            size=len(data),
            name=name,
            path=str(path),
        )


async def process_inline_data(
    text: str,
    size_threshold_kb: int = 100,
    sink: AttachmentSink | None = None,
) -> InlineDataResult:
    """Replace large inline data URIs with attachment references."""
    matches = list(INLINE_BASE64_PATTERN.finditer(text))
    if not matches:
        return InlineDataResult(processed_text=text)

    sink = sink or InMemoryAttachmentSink()
    threshold_bytes = size_threshold_kb * 1024
    processed = text
    attachments: list[Attachment] = []

    for index, match in enumerate(matches):
        full_match, alt_text, mime_type, payload = match.group(0), match.group(1), match.group(2), match.group(3)

        if threshold_bytes > 0 and estimate_decoded_size(len(payload)) < threshold_bytes:
            continue

        try:
            data = base64.b64decode(payload, validate=True)
            extension = (mimetypes.guess_extension(mime_type) or ".bin").lstrip(".")
            name = f"inline-data-{int(time.time() * 1000)}-{index}.{extension}"
            attachment = await sink.store(data, name, mime_type)
        except Exception as e:
            logger.warning(
                "Failed to convert inline data",
                index=index,
                mime_type=mime_type,
                base64_length=len(payload),
                error=str(e),
            )
            continue

        processed = processed.replace(full_match, f"![{alt_text}]({ATTACHMENT_SCHEME}{attachment.id})", 1)
        attachments.append(attachment)

    if attachments:
        logger.info(
            "Inline data converted to attachments",
            found=len(matches),
            converted=len(attachments),
            skipped=len(matches) - len(attachments),
        )
    return InlineDataResult(processed_text=processed, new_attachments=attachments)
