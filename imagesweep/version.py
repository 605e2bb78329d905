"""Build information and the user agent string sent by every component."""

from __future__ import annotations

import platform

# Set at build or release time.
BUILD_VERSION = ""
BUILD_TIME = ""
VCS_COMMIT = ""

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "armv6l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


def _os_name() -> str:
    return platform.system().lower() or "unknown"


def _arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine or "unknown")


def get_user_agent(component: str) -> str:
    """Return ``eraser/<component>/<version> (<os>/<arch>) <commit>/<timestamp>``."""
    return (
        f"eraser/{component}/{BUILD_VERSION} "
        f"({_os_name()}/{_arch()}) {VCS_COMMIT}/{BUILD_TIME}"
    )