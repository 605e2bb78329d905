import pytest

from imagesweep.cri_wire import (
    ContainerInfo,
    ImageInfo,
    ImageSpec,
    decode_list_containers_response,
    decode_list_images_response,
    decode_version_response,
    encode_container,
    encode_image,
    encode_list_containers_request,
    encode_list_images_request,
    encode_remove_image_request,
    encode_version_request,
)


def _wrap(field_payload: bytes) -> bytes:
    return b"\x0a" + bytes([len(field_payload)]) + field_payload


def test_empty_requests():
    assert encode_version_request() == b""
    assert encode_list_images_request() == b""
    assert encode_list_containers_request() == b""


def test_remove_image_request_bytes():
    assert encode_remove_image_request("abc") == b"\n\x05\n\x03abc"


def test_image_round_trip():
    image = ImageInfo(
        id="sha256:abc",
        repo_tags=["repo/a:1", "repo/a:2"],
        repo_digests=["repo/a@sha256:def"],
        size=123456,
        uid=-5,
        username="root",
        spec=ImageSpec(image="repo/a:1", annotations={"k": "v"}),
        pinned=True,
    )
    data = _wrap(encode_image(image))
    assert decode_list_images_response(data) == [image]


def test_container_round_trip():
    container = ContainerInfo(
        id="c1",
        pod_sandbox_id="pod",
        name="web",
        attempt=2,
        image=ImageSpec(image="sha256:abc"),
        image_ref="sha256:abc",
        state=1,
        created_at=1700000000,
        labels={"app": "web"},
        annotations={"note": "x"},
    )
    data = _wrap(encode_container(container))
    assert decode_list_containers_response(data) == [container]


def test_many_images_keep_order():
    images = [ImageInfo(id=f"id{n}") for n in range(3)]
    data = b"".join(_wrap(encode_image(i)) for i in images)
    assert [i.id for i in decode_list_images_response(data)] == ["id0", "id1", "id2"]


def test_version_response_skips_other_fields():
    data = b"\x0a\x030.1" + b"\x12\x02cd" + b"\x22\x02v1"
    assert decode_version_response(data) == "v1"


def test_truncated_data_raises():
    with pytest.raises(ValueError):
        decode_list_images_response(b"\x0a\x10abc")