"""The hand-off a scanner performs with the collector and the eraser."""

from __future__ import annotations

import logging
import os
from typing import Iterable

from imagesweep.images import Image
from imagesweep.metrics import configure_metrics, export_metrics, record_metrics_scanner
from imagesweep.utils import (
    COLLECT_SCAN_PATH,
    ERASE_COMPLETE_MESSAGE,
    ERASE_COMPLETE_SCAN_PATH,
    PIPE_MODE,
    SCAN_ERASE_PATH,
    read_collect_scan_pipe,
    write_scan_erase_pipe,
)

_WRITABLE_BY_ALL = 0o666


class ImageProvider:
    """Receives images from the collector, sends non-compliant ones to the eraser.

    ``finish`` must be called once scanning is done; it waits for the eraser.
    """

    def __init__(
        self,
        *,
        log: logging.Logger | None = None,
        timeout: float | None = None,
        delete_scan_failed_images: bool = True,
        delete_eol_images: bool = False,
        report_metrics: bool = False,
        collect_scan_path: str | os.PathLike[str] = COLLECT_SCAN_PATH,
        scan_erase_path: str | os.PathLike[str] = SCAN_ERASE_PATH,
        erase_complete_scan_path: str | os.PathLike[str] = ERASE_COMPLETE_SCAN_PATH,
    ) -> None:
        self.log = log if log is not None else logging.getLogger("scanner")
        self.timeout = timeout
        self.delete_scan_failed_images = delete_scan_failed_images
        self.delete_eol_images = delete_eol_images
        self.report_metrics = report_metrics
        self.collect_scan_path = collect_scan_path
        self.scan_erase_path = scan_erase_path
        self.erase_complete_scan_path = erase_complete_scan_path

    def receive_images(self) -> list[Image]:
        """Prepare the completion pipe, then read every candidate image from the collector."""
        path = self.erase_complete_scan_path
        try:
            os.mkfifo(path, PIPE_MODE)
        except OSError as err:
            self.log.error("failed to create pipe %s: %s", os.fspath(path), err)
            raise
        try:
            os.chmod(path, _WRITABLE_BY_ALL)
        except OSError as err:
            self.log.error("unable to enable pipe %s for writing: %s", os.fspath(path), err)
            raise
        try:
            return read_collect_scan_pipe(self.collect_scan_path, self.timeout)
        except (OSError, ValueError) as err:
            self.log.error("unable to read images from collect scan pipe: %s", err)
            raise

    def send_images(
        self, non_compliant_images: Iterable[Image], failed_images: Iterable[Image]
    ) -> None:
        """Write the images to remove into the eraser's pipe, and report their count."""
        to_remove = list(non_compliant_images)
        if self.delete_scan_failed_images:
            to_remove.extend(failed_images)

        try:
            write_scan_erase_pipe(to_remove, self.scan_erase_path)
        except OSError as err:
            self.log.error("unable to write non-compliant images to scan erase pipe: %s", err)
            raise

        if self.report_metrics:
            endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")
            exporter, reader, provider = configure_metrics(endpoint)
            try:
                record_metrics_scanner(provider, len(to_remove))
            except ValueError as err:
                self.log.error("error recording metrics: %s", err)
                raise
            export_metrics(exporter, reader)

    def finish(self) -> bool:
        """Wait for the eraser's completion message; return whether it arrived intact."""
        path = self.erase_complete_scan_path
        try:
            with open(path, "rb") as pipe:
                data = pipe.read()
        except OSError as err:
            self.log.error("failed to read pipe %s: %s", os.fspath(path), err)
            raise

        received = data.decode(errors="replace")
        if received != ERASE_COMPLETE_MESSAGE:
            self.log.info("garbage in pipe %s: %r", os.fspath(path), received)
            return False

        self.log.info("scanning complete, exiting")
        return True