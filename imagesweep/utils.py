"""Shared helpers: endpoints, pipes, image bookkeeping and exclusion lists."""

from __future__ import annotations

import errno
import json
import os
import re
import time
from pathlib import Path
from typing import Any, Iterable, Mapping
from urllib.parse import unquote

from imagesweep.images import Image, images_from_json, images_to_json

UNIX_PROTOCOL = "unix"
PIPE_MODE = 0o644
SCAN_ERASE_PATH = "/run/eraser.sh/shared-data/scanErase"
COLLECT_SCAN_PATH = "/run/eraser.sh/shared-data/collectScan"
ERASE_COMPLETE_COLLECT_PATH = "/run/eraser.sh/shared-data/eraseCompleteCollect"
ERASE_COMPLETE_MESSAGE = "complete"
ERASE_COMPLETE_SCAN_PATH = "/run/eraser.sh/shared-data/eraseCompleteScan"

RUNTIME_DOCKER = "docker"
RUNTIME_CONTAINERD = "containerd"
RUNTIME_CRIO = "cri-o"
DOCKER_PATH = "/run/dockershim.sock"
CONTAINERD_PATH = "/run/containerd/containerd.sock"
CRIO_PATH = "/run/crio/crio.sock"

ENV_CONTAINER_RUNTIME = "ERASER_CONTAINER_RUNTIME"
DEFAULT_NAMESPACE = "eraser-system"

RUNTIME_SOCKET_PATHS = {
    RUNTIME_DOCKER: DOCKER_PATH,
    RUNTIME_CONTAINERD: CONTAINERD_PATH,
    RUNTIME_CRIO: CRIO_PATH,
}


class EndpointError(ValueError):
    """An endpoint could not be used; ``protocol`` is what was recognised, if anything."""

    def __init__(self, message: str, protocol: str = "") -> None:
        super().__init__(message)
        self.protocol = protocol


class ProtocolNotSupportedError(EndpointError):
    """The endpoint's scheme is neither tcp nor unix."""


class EndpointDeprecatedError(EndpointError):
    """The endpoint has no scheme."""


class OnlyUnixSocketError(EndpointError):
    """A unix socket endpoint was required."""


class EndpointParseError(EndpointError):
    """The endpoint is not a valid URL."""


_HOST_PUNCTUATION = set("-._~!$&'()*+,;=:[]<>\"%")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _split_scheme(raw: str) -> tuple[str, str]:
    for i, ch in enumerate(raw):
        if ch.isascii() and ch.isalpha():
            continue
        if ch.isascii() and (ch.isdigit() or ch in "+-."):
            if i == 0:
                return "", raw
            continue
        if ch == ":":
            if i == 0:
                raise EndpointParseError("error while parsing: missing protocol scheme")
            return raw[:i], raw[i + 1 :]
        return "", raw
    return "", raw


def _check_host(authority: str) -> str:
    host = authority.rpartition("@")[2]
    if host.startswith("["):
        close = host.find("]")
        if close < 0:
            raise EndpointParseError("error while parsing: missing ']' in host")
        port = host[close + 1 :]
    else:
        colon = host.rfind(":")
        port = host[colon:] if colon >= 0 else ""
    if port and not (port.startswith(":") and port[1:].isdigit() or port == ":"):
        raise EndpointParseError(f"error while parsing: invalid port {port!r} after host")
    for ch in host:
        if ch.isascii() and not (ch.isalnum() or ch in _HOST_PUNCTUATION):
            raise EndpointParseError(
                f"error while parsing: invalid character {ch!r} in host name"
            )
    return host


def _parse_url(raw: str) -> tuple[str, str, str]:
    """Split ``raw`` into (scheme, host, path) with the strictness of a URL parser."""
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw):
        raise EndpointParseError("error while parsing: invalid control character in URL")
    raw = raw.partition("#")[0]
    scheme, rest = _split_scheme(raw)
    scheme = scheme.lower()
    rest = rest.partition("?")[0]

    if not rest.startswith("/"):
        if scheme:
            return scheme, "", ""
        if ":" in rest.partition("/")[0]:
            raise EndpointParseError(
                "error while parsing: first path segment in URL cannot contain colon"
            )

    host = ""
    path = rest
    if (scheme or not rest.startswith("///")) and rest.startswith("//"):
        authority, slash, tail = rest[2:].partition("/")
        host = _check_host(authority)
        path = slash + tail

    if _BAD_ESCAPE.search(path):
        raise EndpointParseError("error while parsing: invalid URL escape")
    return scheme, host, unquote(path)


def parse_endpoint(endpoint: str) -> tuple[str, str]:
    """Return ``(protocol, address)`` for a tcp:// or unix:// endpoint."""
    scheme, host, path = _parse_url(endpoint)
    if scheme == "tcp":
        return "tcp", host
    if scheme == "unix":
        return "unix", path
    if scheme == "":
        raise EndpointDeprecatedError(
            f"using {endpoint!r} as endpoint is deprecated, "
            "please consider using full url format"
        )
    raise ProtocolNotSupportedError(f"{scheme!r}: protocol not supported", protocol=scheme)


def parse_endpoint_with_fallback_protocol(
    endpoint: str, fallback_protocol: str
) -> tuple[str, str]:
    """Parse ``endpoint``, retrying with ``fallback_protocol`` when no scheme is recognised."""
    try:
        return parse_endpoint(endpoint)
    except EndpointError as err:
        if err.protocol:
            raise
    return parse_endpoint(f"{fallback_protocol}://{endpoint}")


def get_address(endpoint: str) -> str:
    """Return the socket path of a unix endpoint."""
    protocol, addr = parse_endpoint_with_fallback_protocol(endpoint, UNIX_PROTOCOL)
    if protocol != UNIX_PROTOCOL:
        raise OnlyUnixSocketError("only support unix socket endpoint", protocol=protocol)
    return addr


def _container_image_id(container: Any) -> str:
    spec = getattr(container, "image", None)
    if spec is None:
        return ""
    if isinstance(spec, str):
        return spec
    return getattr(spec, "image", "") or ""


def _references(image_id: str, id_to_image: Mapping[str, Image]) -> list[str]:
    known = id_to_image.get(image_id)
    if known is None:
        return []
    return [*known.names, *known.digests]


def get_running_images(
    containers: Iterable[Any], id_to_image: Mapping[str, Image]
) -> dict[str, str]:
    """Map every ID, name and digest of an image used by a container to its image ID."""
    running: dict[str, str] = {}
    for container in containers:
        image_id = _container_image_id(container)
        running[image_id] = image_id
        for ref in _references(image_id, id_to_image):
            running[ref] = image_id
    return running


def get_non_running_images(
    running_images: Mapping[str, str],
    all_images: Iterable[Image],
    id_to_image: Mapping[str, Image],
) -> dict[str, str]:
    """Map every ID, name and digest of an image no container uses to its image ID."""
    non_running: dict[str, str] = {}
    for img in all_images:
        image_id = img.image_id
        if image_id in running_images:
            continue
        non_running[image_id] = image_id
        for ref in _references(image_id, id_to_image):
            non_running[ref] = image_id
    return non_running


def is_excluded(
    excluded: Iterable[str] | None, img: str, id_to_image: Mapping[str, Image]
) -> bool:
    """Tell whether ``img`` matches the exclusion list, directly or by wildcard."""
    excluded = set(excluded or ())
    if not excluded:
        return False
    if img in excluded:
        return True

    refs = _references(img, id_to_image)
    if any(ref in excluded for ref in refs):
        return True

    candidates = [img, *refs]
    for key in excluded:
        if key.endswith("/*"):
            prefix = key.split("*")[0]
        elif key.endswith(":*"):
            prefix = key.split(":")[0]
        else:
            continue
        if any(candidate.startswith(prefix) for candidate in candidates):
            return True
    return False


def parse_image_list(path: str | os.PathLike[str]) -> list[str]:
    """Read a JSON array of image references from ``path``."""
    data = json.loads(Path(path).read_bytes())
    if data is None:
        return []
    if not isinstance(data, list) or not all(isinstance(v, str) for v in data):
        raise ValueError(f"{os.fspath(path)}: expected a JSON array of strings")
    return data


def _read_config_map(directory: Path) -> list[str]:
    json_files = sorted(
        entry.name for entry in os.scandir(directory) if entry.name.endswith(".json")
    )
    if not json_files:
        raise IsADirectoryError(
            errno.EISDIR, "no .json file in exclusion directory", os.fspath(directory)
        )
    data = json.loads((directory / json_files[0]).read_bytes())
    if not isinstance(data, dict):
        raise ValueError(f"{directory / json_files[0]}: expected a JSON object")
    excluded = data.get("excluded") or []
    if not isinstance(excluded, list) or not all(isinstance(v, str) for v in excluded):
        raise ValueError(f"{directory / json_files[0]}: 'excluded' must be a list of strings")
    return excluded


def parse_excluded(directory: str | os.PathLike[str] = ".") -> set[str]:
    """Collect excluded images from every ``exclude-*`` directory under ``directory``."""
    base = Path(directory)
    names = sorted(entry.name for entry in os.scandir(base))
    excluded: set[str] = set()
    for name in names:
        if name.startswith("exclude-"):
            excluded.update(_read_config_map(base / name))
    return excluded


def read_collect_scan_pipe(
    path: str | os.PathLike[str] = COLLECT_SCAN_PATH, timeout: float | None = None
) -> list[Image]:
    """Wait for ``path`` to appear, then read the image list from it.

    Raises TimeoutError if ``timeout`` seconds pass before it appears.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        try:
            with open(path, "rb") as pipe:
                data = pipe.read()
            break
        except FileNotFoundError:
            if deadline is None:
                time.sleep(1.0)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"{os.fspath(path)} did not appear in time") from None
            time.sleep(min(1.0, remaining))
    return images_from_json(data)


def write_scan_erase_pipe(
    images: Iterable[Image], path: str | os.PathLike[str] = SCAN_ERASE_PATH
) -> None:
    """Create a named pipe at ``path`` and write the image list into it."""
    data = images_to_json(images).encode()
    os.mkfifo(path, PIPE_MODE)
    with open(path, "wb") as pipe:
        pipe.write(data)


def process_repo_digests(repo_digests: Iterable[str]) -> tuple[list[str], list[ValueError]]:
    """Extract unique digests from ``repo@digest`` strings, with an error per bad entry."""
    digests: dict[str, None] = {}
    errors: list[ValueError] = []
    for repo_digest in repo_digests:
        parts = repo_digest.split("@")
        if len(parts) < 2:
            errors.append(ValueError(f"repoDigest not formatted correctly: {repo_digest}"))
            continue
        digests[parts[1]] = None
    return list(digests), errors


def get_namespace() -> str:
    """Return the pod's namespace from the environment."""
    return os.environ.get("POD_NAMESPACE", DEFAULT_NAMESPACE)