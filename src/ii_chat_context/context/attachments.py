"""
Attachment to content-part conversion.
"""

import asyncio
import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from ..config import LLMModelInfo
from ..conversation.nodes import Attachment

logger = structlog.get_logger()

TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-yaml",
    "application/yaml",
}


@dataclass
class ModelCapabilities:
    """Media a model accepts as input."""

    vision: bool = True
    audio: bool = False
    video: bool = False
    document: bool = True

    @classmethod
    def from_model(cls, model: LLMModelInfo | None) -> "ModelCapabilities":
        if model is None:
            return cls()
        return cls(
            vision=model.vision,
            audio=model.audio,
            video=model.video,
            document=model.document,
        )

    def supports(self, attachment_type: str) -> bool:
        if attachment_type == "image":
            return self.vision
        if attachment_type == "audio":
            return self.audio
        if attachment_type == "video":
            return self.video
        if attachment_type == "document":
            return self.document
        return False


class AssetConverter(ABC):
    """Turns an attachment into a message content part."""

    @abstractmethod
    async def asset_to_content_part(
        self,
        asset: Attachment,
        capabilities: ModelCapabilities | None = None,
    ) -> dict[str, Any] | None:
        """Return a content part, or None to skip the attachment."""
        pass


def _is_text_mime(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in TEXT_MIME_TYPES


class DefaultAssetConverter(AssetConverter):
    """Reads inline data or the file at `path` and base64-encodes it."""

    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = Path(base_dir) if base_dir else None

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        if not p.is_absolute() and self.base_dir is not None:
            p = self.base_dir / p
        return p

    async def _read_bytes(self, asset: Attachment) -> bytes:
        if asset.data:
            return base64.b64decode(asset.data)
        if asset.path:
            return await asyncio.to_thread(self._resolve(asset.path).read_bytes)
        raise ValueError(f"Attachment {asset.id} has neither data nor path")

    async def asset_to_content_part(
        self,
        asset: Attachment,
        capabilities: ModelCapabilities | None = None,
    ) -> dict[str, Any] | None:
        capabilities = capabilities or ModelCapabilities()
        kind = asset.type

        if kind == "document" and _is_text_mime(asset.mime_type):
            raw = await self._read_bytes(asset)
            text = raw.decode("utf-8", errors="replace")
            return {"type": "text", "text": f"[{asset.name or asset.id}]\n{text}"}

        if not capabilities.supports(kind):
            logger.info(
                "Skipping attachment unsupported by model",
                attachment_id=asset.id,
                attachment_type=kind,
            )
            return None

        raw = await self._read_bytes(asset)
        data = base64.b64encode(raw).decode("ascii")
        part: dict[str, Any] = {"type": kind, "mime_type": asset.mime_type, "data": data}
        if kind == "document":
            part["name"] = asset.name or asset.id
        return part
