"""Collects the non-running, non-excluded images on a node and hands them on."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Iterable

from imagesweep import logger as log_setup
from imagesweep.cri import new_collector_client
from imagesweep.images import Image, images_to_json
from imagesweep.utils import (
    COLLECT_SCAN_PATH,
    ERASE_COMPLETE_COLLECT_PATH,
    ERASE_COMPLETE_MESSAGE,
    PIPE_MODE,
    RUNTIME_CONTAINERD,
    RUNTIME_SOCKET_PATHS,
    SCAN_ERASE_PATH,
    get_non_running_images,
    get_running_images,
    is_excluded,
    parse_excluded,
    process_repo_digests,
)

TIMEOUT = 300.0
GENERAL_ERROR = 1

log = logging.getLogger("collector")


def _inventory(client: Any) -> tuple[list[Image], dict[str, Image]]:
    all_images: list[Image] = []
    id_to_image: dict[str, Image] = {}
    for info in client.list_images():
        digests, errors = process_repo_digests(info.repo_digests)
        for err in errors:
            log.error("error processing digest: %s", err)
        image = Image(image_id=info.id, names=list(info.repo_tags), digests=digests)
        all_images.append(image)
        id_to_image[info.id] = image
    return all_images, id_to_image


def get_images(client: Any, excluded: Iterable[str] | None = None) -> list[Image]:
    """Return each image no container uses and the exclusion list does not cover."""
    excluded_set = set(excluded or ())
    all_images, id_to_image = _inventory(client)
    containers = client.list_containers()

    running = get_running_images(containers, id_to_image)
    non_running = get_non_running_images(running, all_images, id_to_image)

    final: list[Image] = []
    checked: set[str] = set()
    for image_id in non_running.values():
        if image_id in checked:
            continue
        checked.add(image_id)
        known = id_to_image[image_id]
        if not is_excluded(excluded_set, image_id, id_to_image):
            final.append(
                Image(image_id=image_id, names=list(known.names), digests=list(known.digests))
            )
    return final


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collect non-running images on this node.")
    parser.add_argument("--runtime", default=RUNTIME_CONTAINERD, help="container runtime")
    parser.add_argument(
        "--scan-disabled",
        action="store_true",
        help="send images straight to the eraser instead of the scanner",
    )
    parser.add_argument("--log-level", default="info", help="log verbosity level")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the collector and return its exit status."""
    args = _parse_args(argv)
    try:
        log_setup.configure(args.log_level)
    except log_setup.LogLevelError as err:
        print(f"Error setting up logger: {err}", file=sys.stderr)
        return GENERAL_ERROR

    socket_path = RUNTIME_SOCKET_PATHS.get(args.runtime)
    if socket_path is None:
        log.error("unsupported runtime: %s", args.runtime)
        return GENERAL_ERROR

    try:
        client = new_collector_client(socket_path)
    except Exception as err:  # connection or version negotiation failed
        log.error("failed to get image client: %s", err)
        return GENERAL_ERROR
    client.timeout = TIMEOUT

    with client:
        try:
            excluded = parse_excluded()
        except FileNotFoundError:
            log.info("configmaps for exclusion do not exist")
            excluded = set()
        except (OSError, ValueError) as err:
            log.error("failed to parse exclusion list: %s", err)
            return GENERAL_ERROR
        if not excluded:
            log.info("no images to exclude")

        try:
            final_images = get_images(client, excluded)
        except Exception as err:  # listing failed
            log.error("failed to list all images: %s", err)
            return GENERAL_ERROR
    log.info("images collected: %s", final_images)

    data = images_to_json(final_images).encode()
    path = SCAN_ERASE_PATH if args.scan_disabled else COLLECT_SCAN_PATH

    try:
        os.mkfifo(path, PIPE_MODE)
        with open(path, "wb") as pipe:
            pipe.write(data)
    except OSError as err:
        log.error("failed to write to pipe %s: %s", path, err)
        return GENERAL_ERROR

    try:
        os.mkfifo(ERASE_COMPLETE_COLLECT_PATH, PIPE_MODE)
        with open(ERASE_COMPLETE_COLLECT_PATH, "rb") as pipe:
            received = pipe.read().decode(errors="replace")
    except OSError as err:
        log.error("failed to read pipe %s: %s", ERASE_COMPLETE_COLLECT_PATH, err)
        return GENERAL_ERROR

    if received != ERASE_COMPLETE_MESSAGE:
        log.info("garbage in pipe %s: %r", ERASE_COMPLETE_COLLECT_PATH, received)
        return GENERAL_ERROR
    return 0


if __name__ == "__main__":
    raise SystemExit(main())