"""Protocol-buffer encoding of the container runtime interface messages in use.

The v1 and v1alpha2 runtime APIs share field numbers for every message
handled here, so one codec serves both.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

_VARINT = 0
_FIXED64 = 1
_LEN = 2
_FIXED32 = 5
_MASK64 = (1 << 64) - 1


@dataclass
class ImageSpec:
    """A reference to an image, with optional annotations."""

    image: str = ""
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerInfo:
    """A container as reported by the runtime."""

    id: str = ""
    pod_sandbox_id: str = ""
    name: str = ""
    attempt: int = 0
    image: ImageSpec | None = None
    image_ref: str = ""
    state: int = 0
    created_at: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class ImageInfo:
    """An image as reported by the runtime."""

    id: str = ""
    repo_tags: list[str] = field(default_factory=list)
    repo_digests: list[str] = field(default_factory=list)
    size: int = 0
    uid: int | None = None
    username: str = ""
    spec: ImageSpec | None = None
    pinned: bool = False


def _varint(value: int) -> bytes:
    value &= _MASK64
    out = bytearray()
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _key(number: int, wire_type: int) -> bytes:
    return _varint(number << 3 | wire_type)


def _bytes_field(number: int, payload: bytes) -> bytes:
    return _key(number, _LEN) + _varint(len(payload)) + payload


def _str_field(number: int, text: str) -> bytes:
    return _bytes_field(number, text.encode()) if text else b""


def _int_field(number: int, value: int) -> bytes:
    return _key(number, _VARINT) + _varint(value) if value else b""


def _map_field(number: int, mapping: dict[str, str]) -> bytes:
    return b"".join(
        _bytes_field(number, _str_field(1, k) + _str_field(2, v))
        for k, v in mapping.items()
    )


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _MASK64, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint too long")


def _fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 7
        if wire_type == _VARINT:
            value, pos = _read_varint(data, pos)
            yield number, wire_type, value
        elif wire_type == _LEN:
            length, pos = _read_varint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated length-delimited field")
            yield number, wire_type, data[pos : pos + length]
            pos += length
        elif wire_type in (_FIXED64, _FIXED32):
            size = 8 if wire_type == _FIXED64 else 4
            if pos + size > len(data):
                raise ValueError("truncated fixed-width field")
            yield number, wire_type, int.from_bytes(data[pos : pos + size], "little")
            pos += size
        else:
            raise ValueError(f"unsupported wire type {wire_type}")


def _signed(value: int) -> int:
    return value - (1 << 64) if value >= 1 << 63 else value


def _text(value: int | bytes) -> str:
    if not isinstance(value, bytes):
        raise ValueError("expected a length-delimited field")
    return value.decode()


def _message(value: int | bytes) -> bytes:
    if not isinstance(value, bytes):
        raise ValueError("expected an embedded message")
    return value


def _number(value: int | bytes) -> int:
    if isinstance(value, bytes):
        raise ValueError("expected a numeric field")
    return value


def _decode_map_entry(data: bytes) -> tuple[str, str]:
    key = value = ""
    for number, _, raw in _fields(data):
        if number == 1:
            key = _text(raw)
        elif number == 2:
            value = _text(raw)
    return key, value


def _encode_spec(spec: ImageSpec) -> bytes:
    return _str_field(1, spec.image) + _map_field(2, spec.annotations)


def _decode_spec(data: bytes) -> ImageSpec:
    spec = ImageSpec()
    for number, _, raw in _fields(data):
        if number == 1:
            spec.image = _text(raw)
        elif number == 2:
            k, v = _decode_map_entry(_message(raw))
            spec.annotations[k] = v
    return spec


def encode_image(image: ImageInfo) -> bytes:
    """Encode an Image message."""
    out = _str_field(1, image.id)
    out += b"".join(_bytes_field(2, t.encode()) for t in image.repo_tags)
    out += b"".join(_bytes_field(3, d.encode()) for d in image.repo_digests)
    out += _int_field(4, image.size)
    if image.uid is not None:
        out += _bytes_field(5, _int_field(1, image.uid))
    out += _str_field(6, image.username)
    if image.spec is not None:
        out += _bytes_field(7, _encode_spec(image.spec))
    out += _int_field(8, int(image.pinned))
    return out


def _decode_image(data: bytes) -> ImageInfo:
    image = ImageInfo()
    for number, _, raw in _fields(data):
        if number == 1:
            image.id = _text(raw)
        elif number == 2:
            image.repo_tags.append(_text(raw))
        elif number == 3:
            image.repo_digests.append(_text(raw))
        elif number == 4:
            image.size = _number(raw)
        elif number == 5:
            uid = 0
            for inner, _, value in _fields(_message(raw)):
                if inner == 1:
                    uid = _signed(_number(value))
            image.uid = uid
        elif number == 6:
            image.username = _text(raw)
        elif number == 7:
            image.spec = _decode_spec(_message(raw))
        elif number == 8:
            image.pinned = bool(_number(raw))
    return image


def encode_container(container: ContainerInfo) -> bytes:
    """Encode a Container message."""
    out = _str_field(1, container.id) + _str_field(2, container.pod_sandbox_id)
    metadata = _str_field(1, container.name) + _int_field(2, container.attempt)
    if metadata:
        out += _bytes_field(3, metadata)
    if container.image is not None:
        out += _bytes_field(4, _encode_spec(container.image))
    out += _str_field(5, container.image_ref)
    out += _int_field(6, container.state)
    out += _int_field(7, container.created_at)
    out += _map_field(8, container.labels)
    out += _map_field(9, container.annotations)
    return out


def _decode_container(data: bytes) -> ContainerInfo:
    container = ContainerInfo()
    for number, _, raw in _fields(data):
        if number == 1:
            container.id = _text(raw)
        elif number == 2:
            container.pod_sandbox_id = _text(raw)
        elif number == 3:
            for inner, _, value in _fields(_message(raw)):
                if inner == 1:
                    container.name = _text(value)
                elif inner == 2:
                    container.attempt = _number(value) & 0xFFFFFFFF
        elif number == 4:
            container.image = _decode_spec(_message(raw))
        elif number == 5:
            container.image_ref = _text(raw)
        elif number == 6:
            container.state = _signed(_number(raw))
        elif number == 7:
            container.created_at = _signed(_number(raw))
        elif number == 8:
            k, v = _decode_map_entry(_message(raw))
            container.labels[k] = v
        elif number == 9:
            k, v = _decode_map_entry(_message(raw))
            container.annotations[k] = v
    return container


def encode_version_request() -> bytes:
    """Encode an empty VersionRequest."""
    return b""


def decode_version_response(data: bytes) -> str:
    """Return the runtime API version from a VersionResponse."""
    api_version = ""
    for number, _, raw in _fields(data):
        if number == 4:
            api_version = _text(raw)
    return api_version


def encode_list_images_request() -> bytes:
    """Encode a ListImagesRequest without a filter."""
    return b""


def decode_list_images_response(data: bytes) -> list[ImageInfo]:
    """Return the images of a ListImagesResponse."""
    return [_decode_image(_message(raw)) for number, _, raw in _fields(data) if number == 1]


def encode_list_containers_request() -> bytes:
    """Encode a ListContainersRequest without a filter."""
    return b""


def decode_list_containers_response(data: bytes) -> list[ContainerInfo]:
    """Return the containers of a ListContainersResponse."""
    return [
        _decode_container(_message(raw)) for number, _, raw in _fields(data) if number == 1
    ]


def encode_remove_image_request(image: str) -> bytes:
    """Encode a RemoveImageRequest for the given image reference."""
    return _bytes_field(1, _encode_spec(ImageSpec(image=image)))