"""Removes non-running images from a node: a given list, or all of them with ``*``."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Any, Iterable

from imagesweep import logger as log_setup
from imagesweep.cri import RuntimeClient, new_eraser_client
from imagesweep.images import Image, images_from_json
from imagesweep.metrics import configure_metrics, export_metrics, record_metrics_eraser
from imagesweep.utils import (
    ERASE_COMPLETE_COLLECT_PATH,
    ERASE_COMPLETE_MESSAGE,
    ERASE_COMPLETE_SCAN_PATH,
    RUNTIME_CONTAINERD,
    RUNTIME_SOCKET_PATHS,
    SCAN_ERASE_PATH,
    get_non_running_images,
    get_running_images,
    is_excluded,
    parse_excluded,
    parse_image_list,
    process_repo_digests,
)

TIMEOUT = 300.0
PRUNE_ALL = "*"
GENERAL_ERROR = 1

log = logging.getLogger("eraser")


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


def remove_images(
    client: Any, target_images: Iterable[str], excluded: Iterable[str] | None = None
) -> int:
    """Delete the targeted non-running images and return how many were removed.

    A target of ``*`` removes every non-running, non-excluded image.
    """
    excluded_set = set(excluded or ())
    all_images, id_to_image = _inventory(client)
    containers = client.list_containers()

    running = get_running_images(containers, id_to_image)
    non_running = get_non_running_images(running, all_images, id_to_image)

    log.debug("map of non-running images: %s", non_running)
    log.debug("map of running images: %s", running)
    log.debug("map of image ID to image: %s", id_to_image)

    removed = 0
    prune = False
    deleted: set[str] = set()

    for target in target_images:
        if target == PRUNE_ALL:
            prune = True
            continue

        image_id = non_running.get(target)
        if image_id is not None:
            if is_excluded(excluded_set, target, id_to_image):
                log.info("image is excluded: given=%s imageID=%s", target, image_id)
                continue
            try:
                client.delete_image(image_id)
            except Exception as err:  # the runtime's failure for one image is not fatal
                log.error("error removing image: given=%s imageID=%s: %s", target, image_id, err)
                continue
            deleted.add(target)
            removed += 1
            log.info("removed image: given=%s imageID=%s", target, image_id)
            continue

        if target in running:
            log.info("image is running: given=%s imageID=%s", target, running[target])
            continue

        log.info("image is not on node: given=%s", target)

    if prune:
        success = True
        for image_id in non_running.values():
            if image_id in deleted:
                continue
            if is_excluded(excluded_set, image_id, id_to_image):
                log.info("image is excluded: imageID=%s", image_id)
                continue
            try:
                client.delete_image(image_id)
            except Exception as err:  # keep pruning the rest
                success = False
                log.error("error removing image: imageID=%s: %s", image_id, err)
                continue
            log.info("removed image: digest=%s", image_id)
            deleted.add(image_id)
            removed += 1
        log.info("prune successful" if success else "error during prune")

    return removed


def _read_scanned_image_ids(path: str) -> list[str]:
    while True:
        try:
            with open(path, "rb") as pipe:
                data = pipe.read()
            break
        except FileNotFoundError:
            time.sleep(1.0)
    return [img.image_id for img in images_from_json(data)]


def _write_message(path: str) -> None:
    fd = os.open(path, os.O_WRONLY)
    with os.fdopen(fd, "w") as pipe:
        pipe.write(ERASE_COMPLETE_MESSAGE)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remove non-running images from this node.")
    parser.add_argument("--runtime", default=RUNTIME_CONTAINERD, help="container runtime")
    parser.add_argument("--imagelist", default="", help="path of a JSON list of images")
    parser.add_argument("--log-level", default="info", help="log verbosity level")
    return parser.parse_args(argv)


def _run(client: RuntimeClient, args: argparse.Namespace) -> int:
    if args.imagelist:
        try:
            targets = parse_image_list(args.imagelist)
        except (OSError, ValueError) as err:
            log.error("failed to parse image list file: %s", err)
            return GENERAL_ERROR
        log.info("successfully parsed image list file")
    else:
        try:
            targets = _read_scanned_image_ids(SCAN_ERASE_PATH)
        except (OSError, ValueError) as err:
            log.error("error reading non-compliant images: %s", err)
            return GENERAL_ERROR
        log.info("successfully created imagelist from scanned non-compliant images")

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
        removed = remove_images(client, targets, excluded)
    except Exception as err:  # listing failed: nothing more to do
        log.error("failed to remove images: %s", err)
        return GENERAL_ERROR

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    if endpoint:
        exporter, reader, provider = configure_metrics(endpoint)
        try:
            record_metrics_eraser(provider, removed)
        except ValueError as err:
            log.error("error recording metrics: %s", err)
        export_metrics(exporter, reader)

    if not args.imagelist:
        try:
            _write_message(ERASE_COMPLETE_COLLECT_PATH)
        except OSError as err:
            log.error("unable to write to pipe %s: %s", ERASE_COMPLETE_COLLECT_PATH, err)
            return GENERAL_ERROR
        try:
            _write_message(ERASE_COMPLETE_SCAN_PATH)
        except FileNotFoundError:
            return 0
        except OSError as err:
            log.error("unable to write to pipe %s: %s", ERASE_COMPLETE_SCAN_PATH, err)
            return GENERAL_ERROR
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the eraser and return its exit status."""
    args = _parse_args(argv)
    try:
        log_setup.configure(args.log_level)
    except log_setup.LogLevelError as err:
        print(f"error setting up logger: {err}", file=sys.stderr)
        return GENERAL_ERROR

    socket_path = RUNTIME_SOCKET_PATHS.get(args.runtime)
    if socket_path is None:
        log.error("unsupported runtime: %s", args.runtime)
        return GENERAL_ERROR

    try:
        client = new_eraser_client(socket_path)
    except Exception as err:  # connection or version negotiation failed
        log.error("failed to get image client: %s", err)
        return GENERAL_ERROR

    client.timeout = TIMEOUT
    with client:
        return _run(client, args)


if __name__ == "__main__":
    raise SystemExit(main())