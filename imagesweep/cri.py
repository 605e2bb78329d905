"""Clients for the container runtime's image and runtime services."""

from __future__ import annotations

from typing import Callable, Iterable

import grpc

from imagesweep.cri_wire import (
    ContainerInfo,
    ImageInfo,
    decode_list_containers_response,
    decode_list_images_response,
    decode_version_response,
    encode_list_containers_request,
    encode_list_images_request,
    encode_remove_image_request,
    encode_version_request,
)
from imagesweep.utils import get_address

RUNTIME_V1 = "v1"
RUNTIME_V1ALPHA2 = "v1alpha2"
CONNECT_TIMEOUT = 30.0

Probe = Callable[[grpc.Channel], str]


class MultiError(Exception):
    """Several errors gathered together; its text lists them one per line."""

    def __init__(self, errors: Iterable[BaseException] = ()) -> None:
        super().__init__()
        self.errors: list[BaseException] = [e for e in errors if e is not None]

    def append(self, error: BaseException | None) -> None:
        if error is not None:
            self.errors.append(error)

    def __str__(self) -> str:
        return "\n".join(str(e) for e in self.errors)


class UnrecognizedVersionError(ValueError):
    """The runtime reported an API version with no matching client."""


def _call(channel: grpc.Channel, method: str, request: bytes, timeout: float | None) -> bytes:
    return channel.unary_unary(method)(request, timeout=timeout)


class RuntimeClient:
    """Lists and removes images through one CRI API version over a channel."""

    def __init__(self, channel: grpc.Channel, version: str, timeout: float | None = None) -> None:
        self.channel = channel
        self.version = version
        self.timeout = timeout

    def _method(self, service: str, name: str) -> str:
        return f"/runtime.{self.version}.{service}/{name}"

    def list_images(self) -> list[ImageInfo]:
        response = _call(
            self.channel,
            self._method("ImageService", "ListImages"),
            encode_list_images_request(),
            self.timeout,
        )
        return decode_list_images_response(response)

    def list_containers(self) -> list[ContainerInfo]:
        response = _call(
            self.channel,
            self._method("RuntimeService", "ListContainers"),
            encode_list_containers_request(),
            self.timeout,
        )
        return decode_list_containers_response(response)

    def delete_image(self, image: str) -> None:
        """Remove ``image``; an empty reference or an already absent image is not an error."""
        if not image:
            return
        try:
            _call(
                self.channel,
                self._method("ImageService", "RemoveImage"),
                encode_remove_image_request(image),
                self.timeout,
            )
        except grpc.RpcError as err:
            code = getattr(err, "code", None)
            if callable(code) and code() == grpc.StatusCode.NOT_FOUND:
                return
            raise

    def close(self) -> None:
        self.channel.close()

    def __enter__(self) -> RuntimeClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _version_probe(api: str) -> Probe:
    def probe(channel: grpc.Channel) -> str:
        response = _call(
            channel, f"/runtime.{api}.RuntimeService/Version", encode_version_request(), None
        )
        return decode_version_response(response)

    return probe


DEFAULT_PROBES: tuple[Probe, ...] = (_version_probe(RUNTIME_V1), _version_probe(RUNTIME_V1ALPHA2))


def client_for_version(channel: grpc.Channel, version: str) -> RuntimeClient:
    """Return a client for a runtime reporting API ``version``."""
    if version in (RUNTIME_V1, RUNTIME_V1ALPHA2):
        return RuntimeClient(channel, version)
    raise UnrecognizedVersionError(f"unrecognized CRI version: '{version}'")


def connect_with_fallback(
    channel: grpc.Channel, probes: Iterable[Probe] | None = None
) -> RuntimeClient:
    """Try each version probe in turn and return a client for the first that works."""
    errors = MultiError()
    for probe in DEFAULT_PROBES if probes is None else probes:
        try:
            return client_for_version(channel, probe(channel))
        except (grpc.RpcError, UnrecognizedVersionError, ValueError) as err:
            errors.append(err)
    raise errors


def new_eraser_client(socket_path: str) -> RuntimeClient:
    """Connect to the runtime at ``socket_path`` and return a client for it."""
    address = get_address(socket_path)
    channel = grpc.insecure_channel(f"unix:{address}")
    try:
        grpc.channel_ready_future(channel).result(timeout=CONNECT_TIMEOUT)
        return connect_with_fallback(channel)
    except BaseException:
        channel.close()
        raise


def new_collector_client(socket_path: str) -> RuntimeClient:
    """Connect to the runtime for listing images and containers."""
    return new_eraser_client(socket_path)