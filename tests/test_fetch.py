import hashlib
from pathlib import Path

import pytest

from tdguest.errors import ChecksumError, DownloadError
from tdguest.fetch import expected_checksum, fetch_cloud_image, join_url
from tdguest.observability import StructuredLogger

IMAGE = "ubuntu-24.04-server-cloudimg-amd64.img"


def test_verified_cached_image_is_not_downloaded_again(
    tmp_path: Path,
    logger: StructuredLogger,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    mirror = _mirror(tmp_path, payload=b"cloud image")
    cache = tmp_path / "cache"
    cache.mkdir()
    (cache / IMAGE).write_bytes(b"cloud image")
    downloaded = _track_downloads(monkeypatch)

    path, digest = fetch_cloud_image(
        base_url=mirror.as_uri(),
        image_name=IMAGE,
        cache_dir=cache,
        logger=logger,
    )

    assert path == cache / IMAGE
    assert digest == hashlib.sha256(b"cloud image").hexdigest()
    assert downloaded == [join_url(mirror.as_uri(), "SHA256SUMS")]


def test_corrupt_cached_image_is_downloaded_again(
    tmp_path: Path,
    logger: StructuredLogger,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    mirror = _mirror(tmp_path, payload=b"cloud image")
    cache = tmp_path / "cache"
    cache.mkdir()
    (cache / IMAGE).write_bytes(b"truncated")
    downloaded = _track_downloads(monkeypatch)

    path, _ = fetch_cloud_image(
        base_url=mirror.as_uri(),
        image_name=IMAGE,
        cache_dir=cache,
        logger=logger,
    )

    assert path.read_bytes() == b"cloud image"
    assert downloaded.count(join_url(mirror.as_uri(), IMAGE)) == 1
    assert [r["level"] for r in logger.records_for_step("download")] == ["warn", "info", "ok"]


def test_persistent_mismatch_gives_up_after_max_attempts(
    tmp_path: Path,
    logger: StructuredLogger,
) -> None:
    mirror = _mirror(tmp_path, payload=b"cloud image", listed_digest="0" * 64)

    with pytest.raises(ChecksumError) as excinfo:
        fetch_cloud_image(
            base_url=mirror.as_uri(),
            image_name=IMAGE,
            cache_dir=tmp_path / "cache",
            logger=logger,
            max_attempts=2,
        )

    assert excinfo.value.context["attempts"] == "2"


def test_manifest_without_image_entry_is_invalid(tmp_path: Path) -> None:
    manifest = tmp_path / "SHA256SUMS"
    manifest.write_text(f"{'a' * 64} *other.img\n", encoding="utf-8")

    with pytest.raises(ChecksumError, match="Invalid SHA256SUMS file"):
        expected_checksum(manifest, IMAGE)


def test_manifest_entry_accepts_binary_marker(tmp_path: Path) -> None:
    manifest = tmp_path / "SHA256SUMS"
    manifest.write_text(f"{'B' * 64} *{IMAGE}\n{'c' * 64}  {IMAGE}.manifest\n", encoding="utf-8")

    assert expected_checksum(manifest, IMAGE) == "b" * 64


def test_unreachable_mirror_raises_download_error(tmp_path: Path, logger: StructuredLogger) -> None:
    with pytest.raises(DownloadError) as excinfo:
        fetch_cloud_image(
            base_url=(tmp_path / "missing").as_uri(),
            image_name=IMAGE,
            cache_dir=tmp_path / "cache",
            logger=logger,
        )

    assert excinfo.value.code == "E_DOWNLOAD"
    assert not (tmp_path / "cache" / "SHA256SUMS.part").exists()


def _mirror(tmp_path: Path, *, payload: bytes, listed_digest: str | None = None) -> Path:
    mirror = tmp_path / "mirror"
    mirror.mkdir()
    (mirror / IMAGE).write_bytes(payload)
    digest = listed_digest or hashlib.sha256(payload).hexdigest()
    (mirror / "SHA256SUMS").write_text(f"{digest} *{IMAGE}\n", encoding="utf-8")
    return mirror


def _track_downloads(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    from tdguest import fetch as fetch_module

    calls: list[str] = []
    real_download = fetch_module.download

    def tracking(url: str, destination: Path) -> Path:
        calls.append(url)
        return real_download(url, destination)

    monkeypatch.setattr(fetch_module, "download", tracking)
    return calls
