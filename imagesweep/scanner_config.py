"""Scanner configuration, option maps and the scan loop over all images."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, MutableMapping, Protocol

import yaml

from imagesweep.images import Image

SEVERITY_CRITICAL = "CRITICAL"
SEVERITY_HIGH = "HIGH"
SEVERITY_MEDIUM = "MEDIUM"
SEVERITY_LOW = "LOW"
SEVERITY_UNKNOWN = "UNKNOWN"

VULN_TYPE_OS = "os"
VULN_TYPE_LIBRARY = "library"

SECURITY_CHECK_VULN = "vuln"
SECURITY_CHECK_CONFIG = "config"
SECURITY_CHECK_SECRET = "secret"

SEVERITIES = (
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    SEVERITY_LOW,
    SEVERITY_UNKNOWN,
)
VULN_TYPES = (VULN_TYPE_OS, VULN_TYPE_LIBRARY)
SECURITY_CHECKS = (SECURITY_CHECK_VULN, SECURITY_CHECK_SECRET, SECURITY_CHECK_CONFIG)

log = logging.getLogger("scanner")


class ScanStatus(enum.IntEnum):
    """Outcome of scanning one image."""

    FAILED = 0
    NON_COMPLIANT = 1
    OK = 2


@dataclass
class VulnConfig:
    ignore_unfixed: bool = False
    types: list[str] = field(default_factory=list)
    security_checks: list[str] = field(default_factory=list)
    severities: list[str] = field(default_factory=list)


@dataclass
class TimeoutConfig:
    """Timeouts in seconds."""

    total: float = 0.0
    per_image: float = 0.0


@dataclass
class Config:
    cache_dir: str = ""
    db_repo: str = ""
    delete_failed_images: bool = False
    delete_eol_images: bool = False
    vulnerabilities: VulnConfig = field(default_factory=VulnConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)


@dataclass
class ScanOptions:
    """What a scan looks for."""

    vuln_type: list[str] = field(default_factory=list)
    security_checks: list[str] = field(default_factory=list)
    scan_removed_packages: bool = False
    list_all_packages: bool = False


def default_config() -> Config:
    """Return the configuration used when none is given."""
    return Config(
        cache_dir="/var/lib/trivy",
        db_repo="ghcr.io/aquasecurity/trivy-db",
        delete_failed_images=True,
        delete_eol_images=True,
        vulnerabilities=VulnConfig(
            ignore_unfixed=True,
            types=[VULN_TYPE_OS, VULN_TYPE_LIBRARY],
            security_checks=[SECURITY_CHECK_VULN],
            severities=[SEVERITY_CRITICAL, SEVERITY_HIGH, SEVERITY_MEDIUM, SEVERITY_LOW],
        ),
        timeout=TimeoutConfig(total=23 * 3600.0, per_image=3600.0),
    )


_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_COMPONENT = re.compile(r"(\d*\.?\d*)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a duration such as ``1h30m`` or ``250ms`` into seconds."""
    if not isinstance(text, str):
        raise ValueError(f"duration must be a string, got {type(text).__name__}")
    rest = text
    sign = 1.0
    if rest[:1] in ("+", "-"):
        sign = -1.0 if rest[0] == "-" else 1.0
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f'time: invalid duration "{text}"')
    total = 0.0
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None or match.group(1) in ("", "."):
            raise ValueError(f'time: invalid duration "{text}"')
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return sign * total


def _mapping(raw: Any, where: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(raw).__name__}")
    return {str(key).lower(): value for key, value in raw.items()}


def _string(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a string")
    return value


def _boolean(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{key}: expected a boolean")
    return value


def _strings(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key}: expected a list of strings")
    return list(value)


def _merge_vulnerabilities(target: VulnConfig, raw: Any) -> None:
    data = _mapping(raw, "vulnerabilities")
    if data.get("ignoreunfixed") is not None:
        target.ignore_unfixed = _boolean(data["ignoreunfixed"], "ignoreUnfixed")
    if "types" in data:
        target.types = _strings(data["types"], "types")
    if "securitychecks" in data:
        target.security_checks = _strings(data["securitychecks"], "securityChecks")
    if "severities" in data:
        target.severities = _strings(data["severities"], "severities")


def _merge_timeout(target: TimeoutConfig, raw: Any) -> None:
    data = _mapping(raw, "timeout")
    if data.get("total") is not None:
        target.total = parse_duration(data["total"])
    if data.get("perimage") is not None:
        target.per_image = parse_duration(data["perimage"])


def _merge_config(cfg: Config, raw: Any) -> None:
    data = _mapping(raw, "scanner config")
    if data.get("cachedir") is not None:
        cfg.cache_dir = _string(data["cachedir"], "cacheDir")
    if data.get("dbrepo") is not None:
        cfg.db_repo = _string(data["dbrepo"], "dbRepo")
    if data.get("deletefailedimages") is not None:
        cfg.delete_failed_images = _boolean(data["deletefailedimages"], "deleteFailedImages")
    if data.get("deleteeolimages") is not None:
        cfg.delete_eol_images = _boolean(data["deleteeolimages"], "deleteEOLImages")
    if data.get("vulnerabilities") is not None:
        _merge_vulnerabilities(cfg.vulnerabilities, data["vulnerabilities"])
    if data.get("timeout") is not None:
        _merge_timeout(cfg.timeout, data["timeout"])


def load_config(filename: str | Path) -> Config:
    """Read the scanner section of an eraser configuration file over the defaults."""
    cfg = default_config()
    document = yaml.safe_load(Path(filename).read_text()) or {}
    components = _mapping(document, "eraser config").get("components") or {}
    scanner = _mapping(components, "components").get("scanner") or {}
    scanner_yaml = _mapping(scanner, "scanner").get("config")
    if scanner_yaml is None:
        return cfg
    if not isinstance(scanner_yaml, str):
        raise ValueError("components.scanner.config: expected a string")
    raw = yaml.safe_load(scanner_yaml)
    if raw is not None:
        _merge_config(cfg, raw)
    return cfg


def parse_comma_separated_options(options: MutableMapping[str, bool], text: str) -> None:
    """Set to True each key named in ``text``; every name must already be a key."""
    for item in text.split(","):
        if item not in options:
            raise ValueError(f"'{item}' was not one of {list(options)!r}")
        options[item] = True


def true_map_keys(mapping: MutableMapping[str, bool]) -> list[str]:
    """Return the keys whose value is True."""
    return [key for key, enabled in mapping.items() if enabled]


def init_options(
    vuln_config: VulnConfig | None,
) -> tuple[dict[str, bool], dict[str, bool], dict[str, bool]]:
    """Return the severity, vulnerability-type and security-check maps for a config."""
    if vuln_config is None:
        raise ValueError("valid configuration required")
    severities = dict.fromkeys(SEVERITIES, False)
    vuln_types = dict.fromkeys(VULN_TYPES, False)
    security_checks = dict.fromkeys(SECURITY_CHECKS, False)
    for chosen, mapping in (
        (vuln_config.severities, severities),
        (vuln_config.types, vuln_types),
        (vuln_config.security_checks, security_checks),
    ):
        mapping.update(dict.fromkeys(chosen, True))
    return severities, vuln_types, security_checks


class _Scanner(Protocol):
    def scan(self, image: Image) -> ScanStatus: ...

    def expired(self) -> bool: ...


def scan(scanner: _Scanner, images: Iterable[Image]) -> tuple[list[Image], list[Image], bool]:
    """Scan every image until the scanner's total time runs out.

    Returns the non-compliant images, the failed ones, and whether time ran out;
    images not reached in time count as failed.
    """
    pending = list(images)
    vulnerable: list[Image] = []
    failed: list[Image] = []
    for index, image in enumerate(pending):
        if scanner.expired():
            failed.extend(pending[index:])
            log.error("image scan total timeout exceeded")
            return vulnerable, failed, True
        try:
            status = scanner.scan(image)
        except Exception as err:  # one image failing does not stop the run
            failed.append(image)
            log.error("scan failed: %s", err)
            continue
        if status == ScanStatus.NON_COMPLIANT:
            log.info("vulnerable image found: %s", image)
            vulnerable.append(image)
        elif status == ScanStatus.FAILED:
            failed.append(image)
    return vulnerable, failed, False