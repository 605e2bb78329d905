from unittest.mock import patch

import pytest

from imagesweep import version


@pytest.fixture
def build_info(monkeypatch):
    monkeypatch.setattr(version, "BUILD_TIME", "Now")
    monkeypatch.setattr(version, "BUILD_VERSION", "version")
    monkeypatch.setattr(version, "VCS_COMMIT", "hash")


@patch("platform.machine", return_value="x86_64")
@patch("platform.system", return_value="Linux")
def test_get_user_agent(_system, _machine, build_info):
    actual = version.get_user_agent("manager")
    assert actual.lower() == "eraser/manager/version (linux/amd64) hash/now"


@patch("platform.machine", return_value="aarch64")
@patch("platform.system", return_value="Darwin")
def test_get_user_agent_maps_arm(_system, _machine, build_info):
    assert version.get_user_agent("collector") == (
        "eraser/collector/version (darwin/arm64) hash/Now"
    )


def test_get_user_agent_contains_component(build_info):
    agent = version.get_user_agent("scanner")
    assert agent.startswith("eraser/scanner/version (")
    assert agent.endswith(") hash/Now")