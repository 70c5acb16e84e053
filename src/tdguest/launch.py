"""QEMU launcher for the finished guest image as a TD.

Starts ``qemu-system-x86_64`` daemonized with:
- KVM acceleration and a split kernel irqchip on q35
- OVMF firmware
- virtio-net with a host-forwarded SSH port
- a virtio-blk root disk
- caller supplied device arguments (a vsock device by default)
"""

from __future__ import annotations

import grp
import os
import pwd
import shutil
import subprocess
from dataclasses import dataclass

from tdguest.errors import LaunchError, PreconditionError
from tdguest.models import LaunchConfig
from tdguest.observability import StructuredLogger
from tdguest.runner import command_context

KVM_GROUP = "kvm"


def current_user() -> str:
    return os.environ.get("USER") or pwd.getpwuid(os.getuid()).pw_name


def in_group(group: str) -> bool:
    try:
        entry = grp.getgrnam(group)
    except KeyError:
        return False
    if entry.gr_gid in os.getgroups():
        return True
    return current_user() in entry.gr_mem


def ensure_kvm_group() -> None:
    if not in_group(KVM_GROUP):
        user = current_user()
        raise PreconditionError(
            f"Please add user {user} to kvm group to run this script.",
            hint=f"usermod -aG kvm {user} and then log in again.",
            context={"user": user, "group": KVM_GROUP},
        )


def qemu_command(config: LaunchConfig) -> list[str]:
    name = config.process_name
    return [
        config.qemu_binary,
        "-D", str(config.paths.qemu_log),
        "-accel", "kvm",
        "-m", config.memory,
        "-smp", str(config.cpus),
        "-name", f"{name},process={name},debug-threads=on",
        "-cpu", "host",
        "-machine", "q35,kernel_irqchip=split,hpet=off",
        "-bios", str(config.firmware),
        "-nographic",
        "-daemonize",
        "-nodefaults",
        "-device", "virtio-net-pci,netdev=nic0_vm",
        "-netdev", f"user,id=nic0_vm,hostfwd=tcp::{config.ssh_port}-:22",
        "-drive", f"file={config.vm_img},if=none,id=virtio-disk0",
        "-device", "virtio-blk-pci,drive=virtio-disk0",
        *config.device_args,
        "-pidfile", str(config.paths.pid_file),
    ]


@dataclass(slots=True)
class TdLauncher:
    logger: StructuredLogger

    def launch(self, config: LaunchConfig) -> str:
        """Start the TD and return the SSH endpoint."""
        ensure_kvm_group()
        if shutil.which(config.qemu_binary) is None:
            raise PreconditionError(
                f"QEMU binary not found: {config.qemu_binary}",
                hint="Install QEMU and ensure it is in PATH.",
                context={"binary": config.qemu_binary},
            )
        if not config.vm_img.is_file():
            raise LaunchError(
                "Guest image not found.",
                hint="Build one with `tdguest create` or set VM_IMG.",
                context={"vm_img": str(config.vm_img)},
            )

        cmd = qemu_command(config)
        result = subprocess.run(cmd, capture_output=True, check=False)
        if result.returncode != 0:
            raise LaunchError(
                "QEMU launch failed.",
                hint="Check QEMU output and ensure KVM and TDX are available.",
                context=command_context(cmd, result),
            )

        endpoint = f"ssh -p {config.ssh_port} root@localhost"
        self.logger.info(f"TD is running, connect with: {endpoint}", operation="run", step="launch")
        return endpoint
