"""Core typed dataclasses for build and launch configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

InitrdMode = Literal["off", "binary", "ram"]
ManifestFormat = Literal["json", "cbor"]

DEFAULT_IMAGE_BASE_URL = "https://cloud-images.ubuntu.com/releases/noble/release/"
DEFAULT_CLOUD_IMG = "ubuntu-24.04-server-cloudimg-amd64.img"
GENERIC_GUEST_IMG = "tdx-guest-ubuntu-24.04-generic.qcow2"
INTEL_GUEST_IMG = "tdx-guest-ubuntu-24.04-intel.qcow2"
CHECKSUM_MANIFEST = "SHA256SUMS"

CLOUD_INIT_DOMAIN = "tdx-config-cloud-init"
GUEST_SETUP_DIR = "/tmp/tdx"

# Host packages needed by the build pipeline; isc-dhcp-client lets the
# virt-customize appliance resolve names.
HOST_PACKAGES = (
    "qemu-utils",
    "libguestfs-tools",
    "virtinst",
    "genisoimage",
    "libvirt-daemon-system",
    "isc-dhcp-client",
)
REQUIRED_BUILD_TOOLS = ("qemu-img", "virt-customize", "virt-install", "genisoimage")


@dataclass(frozen=True, slots=True)
class RuntimePaths:
    """Fixed side-channel files shared between build, run and clean."""

    tmp_dir: Path = Path("/tmp")
    mnt_dir: Path = Path("/mnt")

    @property
    def setup_log(self) -> Path:
        return self.tmp_dir / "tdx-guest-setup.txt"

    @property
    def qemu_log(self) -> Path:
        return self.tmp_dir / "tdx-guest-vm.log"

    @property
    def pid_file(self) -> Path:
        return self.tmp_dir / "tdx-demo-td-pid.pid"

    @property
    def cloud_init_iso(self) -> Path:
        return self.tmp_dir / "ciiso.iso"

    @property
    def guest_mount(self) -> Path:
        return self.mnt_dir / "guest"

    @property
    def initrd_workdir(self) -> Path:
        return self.tmp_dir / "initrd"

    def stale_globs(self) -> tuple[str, ...]:
        return ("tdx-guest-*.log", "tdx-demo-*-monitor.sock")


@dataclass(frozen=True, slots=True)
class BuildConfig:
    output: str = GENERIC_GUEST_IMG
    size_gb: int = 50
    hostname: str = "tdx-guest"
    user: str = "tdx"
    password: str = "123456"
    binaries_path: Path = Path("./binaries")
    binary_dest_dir: str = "/bin"
    ram_binaries_path: Path | None = None
    force_recreate: bool = False
    image_base_url: str = DEFAULT_IMAGE_BASE_URL
    cloud_img: str = DEFAULT_CLOUD_IMG
    work_dir: Path = field(default_factory=Path.cwd)
    assets_dir: Path = field(default_factory=Path.cwd)
    cache_dir: Path = field(default_factory=Path.cwd)
    staging_dir: Path = Path("/tmp")
    cloud_init_wait: int = 12
    initrd_mode: InitrdMode = "off"
    install_deps: bool = False
    manifest_format: ManifestFormat = "json"
    paths: RuntimePaths = field(default_factory=RuntimePaths)

    @property
    def output_name(self) -> str:
        return Path(self.output).name

    @property
    def staged_image(self) -> Path:
        """Where the image lives while libvirt and libguestfs work on it."""
        return self.staging_dir / self.output_name

    @property
    def final_image(self) -> Path:
        output = Path(self.output)
        if output.parent != Path("."):
            return output
        return self.work_dir / output

    @property
    def cloud_image_path(self) -> Path:
        return self.cache_dir / self.cloud_img

    @property
    def checksum_path(self) -> Path:
        return self.cache_dir / CHECKSUM_MANIFEST

    @property
    def cloud_init_data_dir(self) -> Path:
        return self.assets_dir / "cloud-init-data"


@dataclass(frozen=True, slots=True)
class LaunchConfig:
    vm_img: Path = Path("image") / GENERIC_GUEST_IMG
    firmware: Path = Path("/usr/share/ovmf/OVMF.fd")
    ssh_port: int = 10022
    process_name: str = "td"
    device_args: tuple[str, ...] = ("-device", "vhost-vsock-pci,guest-cid=3")
    memory: str = "2G"
    cpus: int = 16
    qemu_binary: str = "qemu-system-x86_64"
    paths: RuntimePaths = field(default_factory=RuntimePaths)


@dataclass(slots=True)
class StepRecord:
    name: str
    status: Literal["ok", "warn", "skipped"]
    detail: str = ""
