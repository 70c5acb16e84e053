"""Argument validation that must pass before any network access."""

from __future__ import annotations

from tdguest.errors import ValidationError
from tdguest.models import BuildConfig


def validate_build_config(config: BuildConfig) -> None:
    if config.output_name == config.cloud_img:
        raise ValidationError(
            "Please specify a different name for guest image via -o",
            context={"output": config.output, "cloud_img": config.cloud_img},
        )
    if not config.output_name.endswith(".qcow2"):
        raise ValidationError(
            "The output file should be qcow2 format with the suffix .qcow2.",
            context={"output": config.output},
        )
    if config.size_gb <= 0:
        raise ValidationError(
            "Image size must be a positive number of gigabytes.",
            context={"size": str(config.size_gb)},
        )
    if config.cloud_init_wait <= 0:
        raise ValidationError(
            "Cloud-init wait time must be a positive number of minutes.",
            context={"wait": str(config.cloud_init_wait)},
        )
    if not config.binary_dest_dir.startswith("/"):
        raise ValidationError(
            "Initrd binary destination must be an absolute path.",
            context={"dest": config.binary_dest_dir},
        )
    if config.initrd_mode == "ram" and config.ram_binaries_path is None:
        raise ValidationError(
            "RAM binaries injection needs a source directory.",
            hint="Pass -r <dir> or set RAM_BINARIES_PATH.",
        )
