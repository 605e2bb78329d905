import pytest

from imagesweep.cri_wire import ContainerInfo, ImageInfo, ImageSpec
from imagesweep.remover import main, remove_images


class FakeClient:
    def __init__(self, images=(), containers=()):
        self.images = list(images)
        self.containers = list(containers)
        self.deleted = []

    def list_images(self):
        return list(self.images)

    def list_containers(self):
        return list(self.containers)

    def delete_image(self, image):
        if not image:
            raise ValueError("unable to remove empty image")
        for index, value in enumerate(self.images):
            if image == value.id or image in value.repo_tags or image in value.repo_digests:
                del self.images[index]
                self.deleted.append(image)
                return
        raise LookupError("image not removed")


class FailingClient(FakeClient):
    def __init__(self, failing, **kwargs):
        super().__init__(**kwargs)
        self.failing = failing

    def delete_image(self, image):
        if image == self.failing:
            raise RuntimeError("runtime refused")
        super().delete_image(image)


def build_client(running=(), cached=()):
    client = FakeClient()
    added = set()
    for name in running:
        client.containers.append(ContainerInfo(image=ImageSpec(image=name)))
        client.images.append(ImageInfo(id=name))
        added.add(name)
    for name in cached:
        if name not in added:
            client.images.append(ImageInfo(id=name))
    return client


CASES = {
    "No images at all": dict(running=[], cached=[], remove=[], expect=[]),
    "Images to remove but no images on node": dict(
        running=[], cached=[], remove=["image1", "image2"], expect=[]
    ),
    "No images to remove but images on node": dict(
        running=[], cached=["image1", "image2"], remove=[], expect=["image1", "image2"]
    ),
    "Remove subset of images": dict(
        running=[], cached=["image1", "image2", "image3"], remove=["image1", "image2"],
        expect=["image3"],
    ),
    "Remove all images explicitly": dict(
        running=[], cached=["image1", "image2", "image3"],
        remove=["image1", "image2", "image3"], expect=[],
    ),
    "Remove single running image": dict(
        running=["image1"], cached=[], remove=["image1"], expect=["image1"]
    ),
    "Remove multiple running images": dict(
        running=["image2", "image3"], cached=["image1"], remove=["image2", "image3"],
        expect=["image1", "image2", "image3"],
    ),
    "Remove all images by prune": dict(
        running=[], cached=["image1", "image2", "image3"], remove=["*"], expect=[]
    ),
    "Prune and explicit image running=false": dict(
        running=[], cached=["image1", "image2", "image3"], remove=["*", "image2"], expect=[]
    ),
    "Prune and explicit image running=true": dict(
        running=["image1"], cached=["image2", "image3"], remove=["*", "image2"],
        expect=["image1"],
    ),
}


@pytest.mark.parametrize("case", list(CASES.values()), ids=list(CASES))
def test_remove_images_cases(case):
    client = build_client(case["running"], case["cached"])
    remove_images(client, case["remove"], None)

    remaining = {img.id for img in client.images}
    assert remaining == set(case["expect"])
    for target in case["remove"]:
        if target in case["running"] or target == "*":
            continue
        assert target not in remaining


@pytest.mark.parametrize(
    "cached, remove, expected_count",
    [
        (["image1", "image2", "image3"], ["image1", "image2"], 2),
        (["image1", "image2", "image3"], ["*"], 3),
        (["image1", "image2", "image3"], ["*", "image2"], 3),
        ([], ["image1"], 0),
    ],
)
def test_remove_images_counts(cached, remove, expected_count):
    client = build_client(cached=cached)
    assert remove_images(client, remove, None) == expected_count


IMAGE1 = ImageInfo(
    id="sha256:ccd78eb0f420877b5513f61bf470dd379d8e8672671115d65c6f69d1c4261f87",
    repo_tags=["mcr.microsoft.com/aks/acc/sgx-webhook:0.6"],
)
IMAGE2 = ImageInfo(
    id="sha256:d153e49438bdcf34564a4e6b4f186658ca1168043be299106f8d6048e8617574",
    repo_tags=["mcr.microsoft.com/containernetworking/azure-npm:v1.2.1"],
)
IMAGE3 = ImageInfo(
    id="sha256:8adbfa37c6320849612a5ade36bbb94ff03229a0587f026dd1e0561f196824ce",
    repo_tags=["mcr.microsoft.com/oss/kubernetes/ip-masq-agent:v2.5.0.4"],
)
IMAGE4 = ImageInfo(
    id="sha256:b4034db328056e7f4c27ab76a5b9811b0f5eaa99565194cf7c6446781e772043",
    repo_tags=["mcr.microsoft.com/oss/kubernetes/kube-proxy:v1.19.11-hotfix.20210526"],
    repo_digests=[
        "mcr.microsoft.com/oss/kubernetes/kube-proxy@sha256:"
        "a64d3538b72905b07356881314755b02db3675ff47ee2bcc49dd7be856e285d5"
    ],
)
IMAGE5 = ImageInfo(
    id="sha256:fd46ec1af6de89db1714a243efa1e35c4408f5a5b9df9c653dd70db1ee95522b",
    repo_tags=[],
    repo_digests=[
        "docker.io/aldaircoronel/remove_images@sha256:"
        "d93d3d3073797258ef06c39e2dce9782c5c8a2315359337448e140c14423928e"
    ],
)
CONTAINER1 = ContainerInfo(
    id="7eb07fbb43e86a6114fb3b382339176117bc377cff89d5466210cbf2b101d4cb",
    image=ImageSpec(image=IMAGE3.id),
    image_ref=IMAGE3.id,
)
CONTAINER2 = ContainerInfo(
    id="36080589120ee72504484c0f407568c49531021c751bc55b3ccd5af03b8af2cb",
    image=ImageSpec(image=IMAGE4.id),
    image_ref=IMAGE4.id,
)


def node_client():
    return FakeClient(
        images=[IMAGE1, IMAGE2, IMAGE3, IMAGE4, IMAGE5], containers=[CONTAINER1, CONTAINER2]
    )


def test_remove_by_id_tag_and_digest():
    client = node_client()
    targets = [
        IMAGE1.id,
        "mcr.microsoft.com/containernetworking/azure-npm:v1.2.1",
        "sha256:d93d3d3073797258ef06c39e2dce9782c5c8a2315359337448e140c14423928e",
    ]
    assert remove_images(client, targets, None) == 3
    assert {img.id for img in client.images} == {IMAGE3.id, IMAGE4.id}
    assert client.deleted == [IMAGE1.id, IMAGE2.id, IMAGE5.id]


def test_running_image_by_tag_is_kept():
    client = node_client()
    target = "mcr.microsoft.com/oss/kubernetes/kube-proxy:v1.19.11-hotfix.20210526"
    assert remove_images(client, [target], None) == 0
    assert len(client.images) == 5


def test_prune_keeps_running_images():
    client = node_client()
    assert remove_images(client, ["*"], None) == 3
    assert {img.id for img in client.images} == {IMAGE3.id, IMAGE4.id}


def test_prune_respects_repository_wildcard_exclusion():
    client = node_client()
    removed = remove_images(client, ["*"], {"mcr.microsoft.com/*"})
    assert removed == 1
    assert {img.id for img in client.images} == {IMAGE1.id, IMAGE2.id, IMAGE3.id, IMAGE4.id}


def test_prune_respects_tag_wildcard_exclusion():
    client = node_client()
    removed = remove_images(client, ["*"], {"mcr.microsoft.com/aks/acc/sgx-webhook:*"})
    assert removed == 2
    assert {img.id for img in client.images} == {IMAGE1.id, IMAGE3.id, IMAGE4.id}


def test_explicit_target_excluded_by_name():
    client = node_client()
    tag = "mcr.microsoft.com/containernetworking/azure-npm:v1.2.1"
    assert remove_images(client, [tag], {tag}) == 0
    assert IMAGE2 in client.images


def test_delete_failure_is_skipped():
    client = FailingClient(failing="image2")
    client.images = [ImageInfo(id="image1"), ImageInfo(id="image2"), ImageInfo(id="image3")]
    assert remove_images(client, ["*"], None) == 2
    assert [img.id for img in client.images] == ["image2"]


def test_listing_failure_propagates():
    class BrokenClient(FakeClient):
        def list_images(self):
            raise ConnectionError("runtime unavailable")

    with pytest.raises(ConnectionError):
        remove_images(BrokenClient(), ["*"], None)


def test_main_rejects_unknown_runtime():
    assert main(["--runtime", "not-a-runtime"]) == 1


def test_main_rejects_bad_log_level(capsys):
    assert main(["--log-level", "loud"]) == 1
    assert "error setting up logger" in capsys.readouterr().err