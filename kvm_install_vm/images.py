"""Base image cache with resumable downloads."""

from __future__ import annotations

import os
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from kvm_install_vm.constants import (
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TIMEOUT,
    IMAGE_SUFFIXES,
    PARTIAL_SUFFIX,
    USER_AGENT,
)
from kvm_install_vm.exceptions import FilesystemError, IntegrityError, TransferError
from kvm_install_vm.models import AcquiredImage, DistroProfile
from kvm_install_vm.utils import ProgressPrinter, ensure_directory, format_size, log, run

ProgressCallback = Callable[[int, Optional[int]], None]


def _content_range_start(value: Optional[str]) -> Optional[int]:
    """Return the first byte position of a ``Content-Range: bytes a-b/c`` header."""
    if not value:
        return None
    try:
        unit, _, span = value.strip().partition(" ")
        if unit.lower() != "bytes":
            return None
        return int(span.split("-", 1)[0])
    except ValueError:
        return None


def _content_length(response) -> Optional[int]:
    raw = response.headers.get("Content-Length")
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


class ArtifactStore:
    """Locate, download and verify distro base images.

    Finished images live under ``image_dir`` with their upstream filename.
    Downloads go to ``<filename>.part`` and are renamed into place only once
    complete, so the canonical name never refers to a partial file. A leftover
    ``.part`` from an interrupted run is resumed with an HTTP range request
    when the server honours it, and restarted from zero otherwise.
    """

    def __init__(self, image_dir: Path) -> None:
        self.image_dir = image_dir

    def image_path(self, profile: DistroProfile) -> Path:
        return self.image_dir / profile.qcow_filename

    def partial_path(self, profile: DistroProfile) -> Path:
        return self.image_dir / f"{profile.qcow_filename}{PARTIAL_SUFFIX}"

    @staticmethod
    def image_url(profile: DistroProfile) -> str:
        return f"{profile.image_url.rstrip('/')}/{profile.qcow_filename}"

    def image_exists(self, profile: DistroProfile) -> bool:
        return self.image_path(profile).is_file()

    def ensure(self, profile: DistroProfile, progress: Optional[ProgressCallback] = None) -> AcquiredImage:
        image_path = self.image_path(profile)
        if image_path.is_file():
            log("INFO", f"Using cached image: {image_path}")
            return AcquiredImage(local_path=image_path, byte_size=image_path.stat().st_size)

        ensure_directory(self.image_dir)
        url = self.image_url(profile)
        log("INFO", f"Downloading base image: {profile.qcow_filename}")
        log("DEBUG", f"From URL: {url}")
        self.download(url, image_path, progress=progress)
        return AcquiredImage(local_path=image_path, byte_size=image_path.stat().st_size)

    def download(self, url: str, destination: Path, progress: Optional[ProgressCallback] = None) -> None:
        """Fetch ``url`` into ``destination`` through its ``.part`` sibling."""
        part_path = destination.with_name(destination.name + PARTIAL_SUFFIX)
        printer: Optional[ProgressPrinter] = None
        if progress is None:
            printer = ProgressPrinter()
            progress = printer

        offset = part_path.stat().st_size if part_path.exists() else 0
        response = None
        append = False
        if offset > 0:
            log("INFO", f"Partial download found ({format_size(offset)}); attempting to resume")
            response, append = self._open_resume(url, offset)
            if response is None:
                log("WARN", "Server does not support resume. Starting a new download")
                self._discard(part_path)
                offset = 0

        if response is None:
            response = self._open(url)

        try:
            if append:
                length = _content_length(response)
                total = offset + length if length is not None else None
            else:
                offset = 0
                total = _content_length(response)
            written = self._stream(response, part_path, append=append, offset=offset, total=total, progress=progress)
        finally:
            response.close()
            if printer is not None:
                printer.finish()

        if total is not None and written != total:
            raise TransferError(
                f"Incomplete download of {url}: got {written} of {total} bytes "
                f"(partial file kept at {part_path} for resume)"
            )
        try:
            os.replace(part_path, destination)
        except OSError as exc:
            raise FilesystemError(f"Failed to publish {destination}: {exc}") from exc
        log("SUCCESS", f"Downloaded {destination.name} ({format_size(written)})")

    def _request(self, url: str, offset: int = 0) -> Request:
        headers = {"User-Agent": USER_AGENT}
        if offset:
            headers["Range"] = f"bytes={offset}-"
        return Request(url, headers=headers)

    def _open(self, url: str):
        try:
            return urlopen(self._request(url), timeout=DOWNLOAD_TIMEOUT)
        except HTTPError as exc:
            raise TransferError(f"HTTP error downloading {url}: {exc.code} {exc.reason}") from exc
        except (URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise TransferError(f"Failed to download {url}: {reason}") from exc

    def _open_resume(self, url: str, offset: int):
        """Issue the range request; returns ``(response, append)`` or ``(None, False)``.

        ``append`` is True for a 206 continuing at ``offset``. A 200 means the
        server ignored the range, so the response is usable as a full download.
        """
        try:
            response = urlopen(self._request(url, offset), timeout=DOWNLOAD_TIMEOUT)
        except HTTPError as exc:
            log("DEBUG", f"Range request rejected with HTTP {exc.code}")
            return None, False
        except (URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise TransferError(f"Failed to download {url}: {reason}") from exc

        status = getattr(response, "status", None) or response.getcode()
        if status == 206:
            start = _content_range_start(response.headers.get("Content-Range"))
            if start is None or start == offset:
                log("DEBUG", f"Resuming from byte position: {offset}")
                return response, True
            log("DEBUG", f"Server resumed at byte {start}, expected {offset}")
        elif status == 200:
            return response, False
        response.close()
        return None, False

    @staticmethod
    def _discard(part_path: Path) -> None:
        try:
            part_path.unlink(missing_ok=True)
        except OSError as exc:
            raise FilesystemError(f"Failed to remove stale partial download {part_path}: {exc}") from exc

    @staticmethod
    def _stream(
        response,
        part_path: Path,
        *,
        append: bool,
        offset: int,
        total: Optional[int],
        progress: ProgressCallback,
    ) -> int:
        """Copy the response body into ``part_path``; returns the final file length."""
        try:
            handle: BinaryIO = open(part_path, "ab" if append else "wb")
        except OSError as exc:
            raise FilesystemError(f"Failed to open {part_path} for writing: {exc}") from exc
        downloaded = offset
        with handle:
            progress(downloaded, total)
            while True:
                try:
                    chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                except OSError as exc:
                    raise TransferError(
                        f"Connection error after {downloaded} bytes (partial file kept at {part_path}): {exc}"
                    ) from exc
                if not chunk:
                    break
                try:
                    handle.write(chunk)
                    handle.flush()
                except OSError as exc:
                    raise FilesystemError(f"Failed to write {part_path}: {exc}") from exc
                downloaded += len(chunk)
                progress(downloaded, total)
            try:
                os.fsync(handle.fileno())
            except OSError as exc:
                raise FilesystemError(f"Failed to sync {part_path}: {exc}") from exc
        return downloaded

    def verify(self, path: Path) -> None:
        """Run ``qemu-img check``; raises ``IntegrityError`` on a bad report."""
        log("INFO", f"Verifying image integrity: {path}")
        result = run(["qemu-img", "check", str(path)], check=False)
        if result.returncode != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            raise IntegrityError(f"Image verification failed for {path}: {stderr or f'exit {result.returncode}'}")
        log("SUCCESS", "Image verification successful")

    def delete(self, profile: DistroProfile) -> bool:
        removed = False
        for path in (self.image_path(profile), self.partial_path(profile)):
            if not path.exists():
                continue
            try:
                path.unlink()
            except OSError as exc:
                raise FilesystemError(f"Failed to delete {path}: {exc}") from exc
            log("INFO", f"Deleted {path}")
            removed = True
        if not removed:
            log("INFO", f"Image for {profile.id} does not exist, nothing to delete")
        return removed

    def list_images(self) -> List[Path]:
        if not self.image_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.image_dir.iterdir()
            if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
        )
