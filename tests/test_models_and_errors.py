from pathlib import Path

from tdguest.errors import (
    ChecksumError,
    CloudInitError,
    CustomizationError,
    DownloadError,
    ErrorCode,
    InitrdError,
    LaunchError,
    PreconditionError,
    ResizeError,
    ValidationError,
)
from tdguest.models import BuildConfig, RuntimePaths


def test_error_codes_are_stable_and_machine_readable() -> None:
    errors = [
        ValidationError("bad input"),
        PreconditionError("missing tool"),
        DownloadError("offline"),
        ChecksumError("bad digest"),
        ResizeError("resize failed"),
        CloudInitError("timeout"),
        CustomizationError("setup failed"),
        InitrdError("cpio failed"),
        LaunchError("qemu failed"),
    ]
    assert [error.code for error in errors] == [
        ErrorCode.VALIDATION.value,
        ErrorCode.PRECONDITION.value,
        ErrorCode.DOWNLOAD.value,
        ErrorCode.CHECKSUM.value,
        ErrorCode.RESIZE.value,
        ErrorCode.CLOUD_INIT.value,
        ErrorCode.CUSTOMIZATION.value,
        ErrorCode.INITRD.value,
        ErrorCode.LAUNCH.value,
    ]


def test_error_renders_hint_and_context() -> None:
    error = DownloadError(
        "Download failed.",
        hint="Check network access.",
        context={"url": "https://example.invalid/img", "reason": ""},
    )

    rendered = str(error)
    assert rendered.splitlines()[0] == "Download failed."
    assert "Hint: Check network access." in rendered
    assert "url: https://example.invalid/img" in rendered
    assert "reason" not in rendered
    assert error.to_dict() == {
        "code": "E_DOWNLOAD",
        "message": "Download failed.",
        "context": {"url": "https://example.invalid/img", "reason": ""},
        "hint": "Check network access.",
    }


def test_build_config_derives_staging_and_final_paths(tmp_path: Path) -> None:
    config = BuildConfig(
        output="guest.qcow2",
        work_dir=tmp_path / "work",
        staging_dir=tmp_path / "stage",
        cache_dir=tmp_path / "cache",
    )

    assert config.staged_image == tmp_path / "stage" / "guest.qcow2"
    assert config.final_image == tmp_path / "work" / "guest.qcow2"
    assert config.checksum_path == tmp_path / "cache" / "SHA256SUMS"


def test_build_config_keeps_explicit_output_directory(tmp_path: Path) -> None:
    config = BuildConfig(output=str(tmp_path / "out" / "guest.qcow2"), staging_dir=tmp_path)

    assert config.staged_image == tmp_path / "guest.qcow2"
    assert config.final_image == tmp_path / "out" / "guest.qcow2"


def test_runtime_paths_match_side_channel_file_names() -> None:
    paths = RuntimePaths()

    assert paths.setup_log == Path("/tmp/tdx-guest-setup.txt")
    assert paths.pid_file == Path("/tmp/tdx-demo-td-pid.pid")
    assert paths.qemu_log == Path("/tmp/tdx-guest-vm.log")
    assert paths.guest_mount == Path("/mnt/guest")
    assert "tdx-demo-*-monitor.sock" in paths.stale_globs()
