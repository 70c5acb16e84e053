"""Cloud image download with SHA256SUMS verification."""

from __future__ import annotations

import hashlib
import os
import shutil
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen

from tdguest.errors import ChecksumError, DownloadError
from tdguest.models import CHECKSUM_MANIFEST
from tdguest.observability import StructuredLogger

CHUNK_SIZE = 1 << 20


def join_url(base: str, name: str) -> str:
    return f"{base.rstrip('/')}/{name}"


def download(url: str, destination: Path) -> Path:
    """Stream *url* into *destination* through a temporary sibling file."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_name(destination.name + ".part")
    try:
        with urlopen(url) as response, temp_path.open("wb") as handle:  # noqa: S310 - checksum verified by caller
            shutil.copyfileobj(response, handle, CHUNK_SIZE)
    except (URLError, OSError) as exc:
        temp_path.unlink(missing_ok=True)
        raise DownloadError(
            "Download failed.",
            hint="Check network access and the image base URL.",
            context={"url": url, "reason": str(exc)},
        ) from exc
    os.replace(temp_path, destination)
    return destination


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def expected_checksum(manifest: Path, name: str) -> str:
    """Return the digest listed for *name* in a ``sha256sum`` style manifest."""
    for line in manifest.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        # binary-mode entries are prefixed with '*'
        if parts[-1].lstrip("*") == name:
            return parts[0].lower()
    raise ChecksumError(
        "Invalid SHA256SUMS file",
        hint="The manifest has no entry for the cloud image; check CLOUD_IMG.",
        context={"manifest": str(manifest), "image": name},
    )


def fetch_cloud_image(
    *,
    base_url: str,
    image_name: str,
    cache_dir: Path,
    logger: StructuredLogger,
    max_attempts: int = 3,
) -> tuple[Path, str]:
    """Refresh the checksum manifest and return a verified cloud image.

    An image already in *cache_dir* whose digest matches is reused.  A
    mismatching image is deleted and downloaded again, up to *max_attempts*
    downloads in total.
    """
    manifest = cache_dir / CHECKSUM_MANIFEST
    manifest.unlink(missing_ok=True)
    download(join_url(base_url, CHECKSUM_MANIFEST), manifest)
    expected = expected_checksum(manifest, image_name)

    image_path = cache_dir / image_name
    downloads = 0
    while True:
        if not image_path.exists():
            if downloads >= max_attempts:
                raise ChecksumError(
                    "Cloud image checksum does not match after re-downloading.",
                    hint="The mirror may be serving a stale image; retry later.",
                    context={"image": image_name, "attempts": str(downloads)},
                )
            logger.info(f"Downloading {image_name}", step="download")
            download(join_url(base_url, image_name), image_path)
            downloads += 1

        actual = sha256_file(image_path)
        if actual == expected:
            logger.ok("Verify the checksum for Ubuntu cloud image.", step="download")
            return image_path, actual

        logger.warn("Invalid download file according to sha256sum, re-download", step="download")
        image_path.unlink()
