"""End-to-end guest image build pipeline."""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from tdguest.cleanup import cleanup_build
from tdguest.cloud_init import cleanup_domain, run_cloud_init
from tdguest.errors import CustomizationError, PreconditionError
from tdguest.fetch import fetch_cloud_image
from tdguest.image import resize_image, setup_image, stage_image
from tdguest.initrd import inject_binary_into_initrd, inject_ram_binaries_into_initrd
from tdguest.manifest import BuildManifest
from tdguest.models import HOST_PACKAGES, REQUIRED_BUILD_TOOLS, BuildConfig, StepRecord
from tdguest.observability import StructuredLogger
from tdguest.runner import Runner, SubprocessRunner, require_tools
from tdguest.validate import validate_build_config

ROOT_WARNING_PAUSE = 5


@dataclass(frozen=True, slots=True)
class BuildResult:
    image: Path
    manifest_path: Path
    manifest: BuildManifest


@dataclass(slots=True)
class GuestImageBuilder:
    """Runs the build steps in order, cleaning up on success and failure.

    On failure the staged image is left in ``config.staging_dir`` for
    inspection.
    """

    config: BuildConfig
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    runner: Runner | None = None
    steps: list[StepRecord] = field(default_factory=list)
    _runner: Runner = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._runner = self.runner or SubprocessRunner(log_path=self.config.paths.setup_log)

    def build(self) -> BuildResult:
        config = self.config
        runner = self._runner
        validate_build_config(config)

        self._start_setup_log()

        cleanup_domain(runner)
        if config.install_deps:
            self.install_host_packages()
        require_tools(*REQUIRED_BUILD_TOOLS)
        self.logger.ok("Installation of required tools", step="prerequisites")
        self._warn_if_not_root()

        try:
            cloud_sha256 = self._prepare_image()
        finally:
            cleanup_build(config, runner=runner, logger=self.logger)

        image = self._publish()
        manifest = BuildManifest(
            cloud_img=config.cloud_img,
            cloud_img_sha256=cloud_sha256,
            image=str(image),
            size_gb=config.size_gb,
            hostname=config.hostname,
            user=config.user,
            steps=tuple(self.steps),
        )
        self.logger.ok(f"TDX guest image : {image}", step="publish")
        try:
            manifest_path = manifest.write(image, fmt=config.manifest_format)
            self.logger.to_json_lines(image.with_name(image.name + ".log.jsonl"))
        except OSError as exc:
            raise CustomizationError(
                "Failed to write the build manifest.",
                context={"image": str(image), "reason": str(exc)},
            ) from exc
        return BuildResult(image=image, manifest_path=manifest_path, manifest=manifest)

    def install_host_packages(self) -> None:
        self._runner.run(
            ["apt", "install", "--yes", *HOST_PACKAGES],
            error=PreconditionError,
            message="Failed to install host packages.",
            hint="Run as root or install the packages manually.",
        )
        self._record("install_deps", "ok")

    def _start_setup_log(self) -> None:
        setup_log = self.config.paths.setup_log
        try:
            setup_log.parent.mkdir(parents=True, exist_ok=True)
            setup_log.write_text("=== tdx guest image generation === \n", encoding="utf-8")
        except OSError as exc:
            raise PreconditionError(
                "Cannot write the setup log.",
                hint="Remove it if a previous sudo run left it owned by root.",
                context={"path": str(setup_log), "reason": str(exc)},
            ) from exc

    def _prepare_image(self) -> str:
        config = self.config
        runner = self._runner

        if config.force_recreate:
            config.cloud_image_path.unlink(missing_ok=True)

        cloud_image, cloud_sha256 = fetch_cloud_image(
            base_url=config.image_base_url,
            image_name=config.cloud_img,
            cache_dir=config.cache_dir,
            logger=self.logger,
        )
        self._record("download", "ok", cloud_sha256)

        stage_image(cloud_image, config.staged_image, logger=self.logger)
        self._record("stage", "ok", str(config.staged_image))

        grown = resize_image(config.staged_image, config.size_gb, runner=runner, logger=self.logger)
        self._record("resize", "ok" if grown else "warn", f"+{config.size_gb}G")

        with tempfile.TemporaryDirectory(prefix="tdguest-seed-") as seed_dir:
            run_cloud_init(config, Path(seed_dir), runner=runner, logger=self.logger)
        self._record("cloud_init", "ok")

        setup_image(config, runner=runner, logger=self.logger)
        self._record("setup", "ok")

        if config.initrd_mode == "binary":
            initrd = inject_binary_into_initrd(config, runner=runner, logger=self.logger)
            self._record("initrd", "ok", initrd.name)
        elif config.initrd_mode == "ram":
            initrd = inject_ram_binaries_into_initrd(config, runner=runner, logger=self.logger)
            self._record("initrd", "ok", initrd.name)
        else:
            self._record("initrd", "skipped")

        return cloud_sha256

    def _publish(self) -> Path:
        staged = self.config.staged_image
        final = self.config.final_image
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            if staged.resolve() != final.resolve():
                shutil.move(str(staged), str(final))
            mode = stat.S_IMODE(final.stat().st_mode)
            os.chmod(final, mode | 0o666)
        except OSError as exc:
            raise CustomizationError(
                "Failed to move the guest image to its destination.",
                context={"staged": str(staged), "destination": str(final), "reason": str(exc)},
            ) from exc
        self._record("publish", "ok", str(final))
        return final

    def _warn_if_not_root(self) -> None:
        if os.geteuid() == 0:
            return
        self.logger.warn(
            'Current user is not root, please use root permission via "sudo" or make sure '
            "current user has correct permission by configuring /etc/libvirt/qemu.conf",
            step="prerequisites",
        )
        self.logger.warn(
            "Please refer https://libvirt.org/drvqemu.html#posix-users-groups",
            step="prerequisites",
        )
        time.sleep(ROOT_WARNING_PAUSE)

    def _record(self, name: str, status: str, detail: str = "") -> None:
        self.steps.append(StepRecord(name=name, status=status, detail=detail))  # type: ignore[arg-type]
