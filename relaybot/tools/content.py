"""Normalization of tool output into content blocks the model accepts."""

import base64
import binascii
import json
import re
from typing import Any

from relaybot.models.llm import ImageBlock, ImageSource, TextBlock

DEFAULT_IMAGE_MEDIA_TYPE = "image/jpeg"

_DATA_URL_PREFIX = re.compile(r"^data:image/[^;]+;base64,")


def sniff_image_bytes(header: bytes) -> str:
    """Guess an image media type from its leading bytes.

    Falls back to JPEG, the most common format for screenshots and photos.
    """
    if header.startswith(b"\x89PNG"):
        return "image/png"
    if header.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if header.startswith(b"GIF8"):
        return "image/gif"
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "image/webp"
    if header.startswith(b"BM"):
        return "image/bmp"
    return DEFAULT_IMAGE_MEDIA_TYPE


def detect_image_format(data: str) -> str:
    """Detect the media type of base64 image data, with or without a data URL prefix."""
    clean = _DATA_URL_PREFIX.sub("", data)
    try:
        header = base64.b64decode(clean[:32])
    except (binascii.Error, ValueError):
        return DEFAULT_IMAGE_MEDIA_TYPE
    return sniff_image_bytes(header)


def _image_block(data: str, media_type: str | None) -> ImageBlock:
    clean = _DATA_URL_PREFIX.sub("", data)
    return ImageBlock(source=ImageSource(media_type=media_type or detect_image_format(data), data=clean))


def normalize_content_item(item: Any) -> TextBlock | ImageBlock:
    """Convert one provider content item into a text or image block."""
    if isinstance(item, str):
        return TextBlock(text=item)
    if not isinstance(item, dict):
        return TextBlock(text=str(item))

    item_type = item.get("type")

    if item_type == "text" and isinstance(item.get("text"), str):
        return TextBlock(text=item["text"])

    if item_type == "image":
        if isinstance(item.get("source"), dict):
            return ImageBlock.model_validate(item)
        if item.get("data"):
            return _image_block(item["data"], item.get("media_type") or item.get("mimeType"))

    # Some providers nest the payload under an "image" key
    image = item.get("image")
    if isinstance(image, dict) and image.get("data") and not image.get("source"):
        return _image_block(image["data"], image.get("media_type") or image.get("mimeType"))

    if item_type == "resource" and isinstance(item.get("resource"), dict):
        resource = item["resource"]
        if isinstance(resource.get("text"), str):
            return TextBlock(text=resource["text"])

    return TextBlock(text=json.dumps(item, default=str))


def normalize_tool_content(content: Any) -> list[TextBlock | ImageBlock]:
    """Normalize raw tool output into a list of content blocks.

    Args:
        content: A string, a single content item, a list of items, or None

    Returns:
        Text and image blocks, in the provider's order
    """
    if content is None:
        return []
    if isinstance(content, list):
        return [normalize_content_item(item) for item in content]
    return [normalize_content_item(content)]
