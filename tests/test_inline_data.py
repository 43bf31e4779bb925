"""
Tests for inline base64 extraction.
"""

import base64

import pytest

from ii_chat_context.conversation.inline_data import (
    DirectoryAttachmentSink,
    attachment_type_for,
    process_inline_data,
)


def _image(payload: bytes, alt="img", mime="image/png"):
    return f"![{alt}](data:{mime};base64,{base64.b64encode(payload).decode()})"


@pytest.mark.asyncio
async def test_text_without_data_uris_unchanged():
    """Test plain text passes through untouched."""
    text = "no images here"
    result = await process_inline_data(text)

    assert result.processed_text is text
    assert result.new_attachments == []


@pytest.mark.asyncio
async def test_small_payload_below_threshold_kept():
    """Test payloads under the threshold stay inline."""
    text = _image(b"tiny")
    result = await process_inline_data(text, size_threshold_kb=1)

    assert result.processed_text == text
    assert result.new_attachments == []


@pytest.mark.asyncio
async def test_large_payload_converted():
    """Test payloads over the threshold become attachment references."""
    payload = b"x" * 2048
    text = f"before {_image(payload, alt='chart')} after"

    result = await process_inline_data(text, size_threshold_kb=1)

    attachment = result.new_attachments[0]
    assert result.processed_text == f"before ![chart](attachment://{attachment.id}) after"
    assert attachment.size == 2048
    assert attachment.mime_type == "image/png"
    assert base64.b64decode(attachment.data) == payload


@pytest.mark.asyncio
async def test_invalid_base64_is_skipped():
    """Test a malformed payload is left in the text."""
    text = "![bad](data:image/png;base64,@@@@) " + _image(b"good")

    result = await process_inline_data(text, size_threshold_kb=0)

    assert len(result.new_attachments) == 1
    assert result.processed_text.startswith("![bad](data:image/png;base64,@@@@) ![img](attachment://")


@pytest.mark.asyncio
async def test_directory_sink_writes_file(tmp_path):
    """Test the directory sink stores payloads on disk."""
    sink = DirectoryAttachmentSink(tmp_path / "attachments")

    result = await process_inline_data(_image(b"hello"), size_threshold_kb=0, sink=sink)

    attachment = result.new_attachments[0]
    assert attachment.path is not None
    assert attachment.path.endswith(".png")
    assert attachment.data is None
    with open(attachment.path, "rb") as f:
        assert f.read() == b"hello"


def test_attachment_type_for():
    """Test mime type to attachment type mapping."""
    assert attachment_type_for("image/jpeg") == "image"
    assert attachment_type_for("audio/mpeg") == "audio"
    assert attachment_type_for("application/pdf") == "document"
    assert attachment_type_for("application/zip") == "other"
