"""Cloud-init seed generation and transient first boot under libvirt."""

from __future__ import annotations

import textwrap
import time
from pathlib import Path

from tdguest.errors import CloudInitError
from tdguest.models import CLOUD_INIT_DOMAIN, BuildConfig
from tdguest.observability import StructuredLogger
from tdguest.runner import Runner

USER_DATA_TEMPLATE = textwrap.dedent("""\
    #cloud-config
    ssh_pwauth: true
    disable_root: false
    package_update: false
    runcmd:
      - sed -i 's/^#\\?PermitRootLogin.*/PermitRootLogin yes/' /etc/ssh/sshd_config
      - systemctl restart ssh
    power_state:
      mode: poweroff
      condition: true
""")

META_DATA_TEMPLATE = textwrap.dedent("""\
    instance-id: tdx-guest
""")


def _read_template(directory: Path, name: str, fallback: str) -> str:
    path = directory / name
    if path.is_file():
        return path.read_text(encoding="utf-8")
    return fallback


def render_user_data(template: str, *, user: str, password: str) -> str:
    return template + textwrap.dedent(f"""
        user: {user}
        password: {password}
        chpasswd: {{ expire: False }}
    """)


def render_meta_data(template: str, *, hostname: str) -> str:
    return template + f"\nlocal-hostname: {hostname}\n"


def write_seed_files(config: BuildConfig, seed_dir: Path) -> tuple[Path, Path]:
    """Render ``user-data`` and ``meta-data`` into *seed_dir*."""
    seed_dir.mkdir(parents=True, exist_ok=True)
    templates = config.cloud_init_data_dir

    user_data = seed_dir / "user-data"
    user_data.write_text(
        render_user_data(
            _read_template(templates, "user-data.template", USER_DATA_TEMPLATE),
            user=config.user,
            password=config.password,
        ),
        encoding="utf-8",
    )
    meta_data = seed_dir / "meta-data"
    meta_data.write_text(
        render_meta_data(
            _read_template(templates, "meta-data.template", META_DATA_TEMPLATE),
            hostname=config.hostname,
        ),
        encoding="utf-8",
    )
    return user_data, meta_data


def build_seed_iso(
    config: BuildConfig,
    seed_dir: Path,
    *,
    runner: Runner,
    logger: StructuredLogger,
) -> Path:
    iso = config.paths.cloud_init_iso
    try:
        iso.unlink(missing_ok=True)
        write_seed_files(config, seed_dir)
    except OSError as exc:
        raise CloudInitError(
            "Failed to prepare the cloud-init seed.",
            hint="Remove stale files left by a previous run under another user.",
            context={"iso": str(iso), "seed_dir": str(seed_dir), "reason": str(exc)},
        ) from exc
    logger.ok("Generate configuration for cloud-init...", step="cloud_init")
    runner.run(
        [
            "genisoimage",
            "-output", str(iso),
            "-volid", "cidata",
            "-joliet",
            "-rock",
            "user-data",
            "meta-data",
        ],
        cwd=seed_dir,
        error=CloudInitError,
        message="Failed to generate the cloud-init ISO image",
    )
    logger.ok("Generate the cloud-init ISO image...", step="cloud_init")
    return iso


def virt_install_command(config: BuildConfig, iso: Path) -> list[str]:
    return [
        "virt-install",
        "--debug",
        "--memory", "4096",
        "--vcpus", "4",
        "--name", CLOUD_INIT_DOMAIN,
        "--disk", str(config.staged_image),
        "--disk", f"{iso},device=cdrom",
        "--os-variant", "ubuntu24.04",
        "--virt-type", "kvm",
        "--graphics", "none",
        "--import",
        f"--wait={config.cloud_init_wait}",
    ]


def run_cloud_init(
    config: BuildConfig,
    seed_dir: Path,
    *,
    runner: Runner,
    logger: StructuredLogger,
) -> None:
    """Boot the staged image once so cloud-init applies the seed."""
    iso = build_seed_iso(config, seed_dir, runner=runner, logger=logger)
    try:
        runner.run(
            virt_install_command(config, iso),
            error=CloudInitError,
            message="Failed to configure cloud init",
            hint=f"Please increase wait time (--wait, currently {config.cloud_init_wait}) and try again.",
        )
        logger.ok("Complete cloud-init...", step="cloud_init")
        time.sleep(1)
    finally:
        cleanup_domain(runner)


def cleanup_domain(runner: Runner, name: str = CLOUD_INIT_DOMAIN) -> None:
    """Tear down the transient domain; safe when it does not exist."""
    runner.run(["virsh", "shutdown", name], log=False)
    time.sleep(1)
    runner.run(["virsh", "destroy", name], log=False)
    runner.run(["virsh", "undefine", name], log=False)
