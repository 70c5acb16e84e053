"""Settings resolution from defaults, environment and ``setup-tdx-config``.

The config file is a shell fragment meant to be sourced.  It is parsed here
as plain ``KEY=value`` assignments and never executed; anything else on a
line (commands, conditionals) is ignored.  Values assigned in the file win
over the environment, the same way sourcing it would.
"""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from pathlib import Path

from tdguest.errors import ValidationError
from tdguest.models import (
    DEFAULT_CLOUD_IMG,
    DEFAULT_IMAGE_BASE_URL,
    GENERIC_GUEST_IMG,
    INTEL_GUEST_IMG,
    LaunchConfig,
)

CONFIG_FILE_NAME = "setup-tdx-config"

SETTING_KEYS = (
    "OFFICIAL_UBUNTU_IMAGE",
    "CLOUD_IMG",
    "TDX_SETUP_INTEL_KERNEL",
    "GUEST_USER",
    "GUEST_PASSWORD",
    "GUEST_HOSTNAME",
    "BINARIES_PATH",
    "RAM_BINARIES_PATH",
)

DEFAULTS: Mapping[str, str] = {
    "OFFICIAL_UBUNTU_IMAGE": DEFAULT_IMAGE_BASE_URL,
    "CLOUD_IMG": DEFAULT_CLOUD_IMG,
    "TDX_SETUP_INTEL_KERNEL": "",
    "GUEST_USER": "tdx",
    "GUEST_PASSWORD": "123456",
    "GUEST_HOSTNAME": "tdx-guest",
    "BINARIES_PATH": "./binaries",
    "RAM_BINARIES_PATH": "",
}


def load_config_file(path: str | Path) -> dict[str, str]:
    """Return the variable assignments found in a shell config file."""
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(
            "Unable to read config file.",
            context={"path": str(config_path), "reason": str(exc)},
        ) from exc

    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as exc:
            raise ValidationError(
                "Config file line is not valid shell syntax.",
                context={"path": str(config_path), "line": str(lineno), "reason": str(exc)},
            ) from exc
        if tokens and tokens[0] == "export":
            tokens = tokens[1:]
        if len(tokens) != 1 or "=" not in tokens[0]:
            continue
        key, _, value = tokens[0].partition("=")
        if key.isidentifier():
            values[key] = value
    return values


def discover_config_file(*candidates: Path) -> Path | None:
    for directory in candidates:
        path = directory / CONFIG_FILE_NAME
        if path.is_file():
            return path
    return None


def resolve_settings(
    environ: Mapping[str, str],
    config_file: Path | None = None,
) -> dict[str, str]:
    """Layer defaults < environment < config file.

    Empty environment values fall back to the default, as ``${VAR:-default}``
    does.
    """
    settings = dict(DEFAULTS)
    for key in SETTING_KEYS:
        value = environ.get(key)
        if value:
            settings[key] = value
    if config_file is not None:
        for key, value in load_config_file(config_file).items():
            if key in settings and value:
                settings[key] = value
    return settings


def default_guest_image(settings: Mapping[str, str]) -> str:
    if settings.get("TDX_SETUP_INTEL_KERNEL") == "1":
        return INTEL_GUEST_IMG
    return GENERIC_GUEST_IMG


def launch_config_from_env(environ: Mapping[str, str], *, cwd: Path | None = None) -> LaunchConfig:
    """Build a :class:`LaunchConfig` honouring the ``make run`` overrides."""
    base = LaunchConfig()
    root = cwd or Path.cwd()

    vm_img = Path(environ["VM_IMG"]) if environ.get("VM_IMG") else root / base.vm_img
    firmware = Path(environ["FIRMWARE"]) if environ.get("FIRMWARE") else base.firmware
    ssh_port = base.ssh_port
    if environ.get("SSH_PORT"):
        ssh_port = parse_port(environ["SSH_PORT"])
    process_name = environ.get("PROCESS_NAME") or base.process_name
    device_args = base.device_args
    if "DEVICE_ARGS" in environ:
        device_args = tuple(shlex.split(environ["DEVICE_ARGS"]))

    return LaunchConfig(
        vm_img=vm_img,
        firmware=firmware,
        ssh_port=ssh_port,
        process_name=process_name,
        device_args=device_args,
    )


def parse_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise ValidationError("SSH port must be an integer.", context={"value": value}) from exc
    if not 0 < port < 65536:
        raise ValidationError("SSH port must be between 1 and 65535.", context={"value": value})
    return port
