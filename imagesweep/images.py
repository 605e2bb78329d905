"""The image record exchanged between components, and its JSON form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable


@dataclass
class Image:
    """An image on a node: its ID, its tagged names and its digests."""

    image_id: str
    names: list[str] = field(default_factory=list)
    digests: list[str] = field(default_factory=list)


def _to_dict(image: Image) -> dict[str, Any]:
    return {
        "image_id": image.image_id,
        "names": list(image.names),
        "digests": list(image.digests),
    }


def _string_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"field {key!r} must be a list of strings")
    return list(value)


def _from_dict(raw: Any) -> Image:
    if not isinstance(raw, dict):
        raise ValueError(f"image entry must be an object, got {type(raw).__name__}")
    image_id = raw.get("image_id", "")
    if image_id is None:
        image_id = ""
    if not isinstance(image_id, str):
        raise ValueError("field 'image_id' must be a string")
    return Image(
        image_id=image_id,
        names=_string_list(raw.get("names"), "names"),
        digests=_string_list(raw.get("digests"), "digests"),
    )


def images_to_json(images: Iterable[Image]) -> str:
    """Encode images as a JSON array."""
    return json.dumps([_to_dict(img) for img in images])


def images_from_json(data: str | bytes) -> list[Image]:
    """Decode a JSON array of images; ``null`` yields an empty list."""
    decoded = json.loads(data)
    if decoded is None:
        return []
    if not isinstance(decoded, list):
        raise ValueError("expected a JSON array of images")
    return [_from_dict(item) for item in decoded]