"""Command line entry point.

Usage:
    tdguest create [-o FILE] [-s GB] [-n HOST] [-u USER] [-p PASS] [-b BIN] [-d DIR] [-r DIR] [-f]
    tdguest run
    tdguest clean
"""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path

from tdguest.builder import GuestImageBuilder
from tdguest.cleanup import clean_guest
from tdguest.config import (
    default_guest_image,
    discover_config_file,
    launch_config_from_env,
    parse_port,
    resolve_settings,
)
from tdguest.errors import TdGuestError
from tdguest.launch import TdLauncher
from tdguest.models import BuildConfig, RuntimePaths
from tdguest.observability import StructuredLogger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tdguest",
        description="Build and launch Intel TDX guest images",
    )
    parser.add_argument("--tmp-dir", type=Path, default=Path("/tmp"), help=argparse.SUPPRESS)
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    sub = parser.add_subparsers(dest="command", required=True)

    create_p = sub.add_parser(
        "create",
        help="Create a TDX guest image from an Ubuntu cloud image",
        description=(
            "Create a TDX guest image (qcow2) from a cloud image. The image is "
            "built under the staging directory and then moved to the output path."
        ),
    )
    create_p.add_argument("-f", dest="force", action="store_true", help="Force to recreate the output image")
    create_p.add_argument("-n", dest="hostname", help='Guest host name, default is "tdx-guest"')
    create_p.add_argument("-u", dest="user", help='Guest user name, default is "tdx"')
    create_p.add_argument("-p", dest="password", help='Guest password, default is "123456"')
    create_p.add_argument("-s", dest="size", type=int, default=50, help="Size increase of the guest image in GB")
    create_p.add_argument(
        "-o",
        dest="output",
        metavar="FILE",
        help="Output file, must end in .qcow2; default is tdx-guest-ubuntu-24.04-generic.qcow2",
    )
    create_p.add_argument("-b", dest="binaries", type=Path, metavar="PATH", help="Binary path to add to the guest")
    create_p.add_argument(
        "-d",
        dest="binary_dest",
        default="/bin",
        metavar="DIR",
        help="Destination directory within initrd, default is /bin",
    )
    create_p.add_argument("-r", dest="ram_binaries", type=Path, metavar="DIR", help="Directory of RAM binaries")
    create_p.add_argument("--config", type=Path, help="Path to a setup-tdx-config file")
    create_p.add_argument("--assets-dir", type=Path, help="Directory holding setup scripts")
    create_p.add_argument("--cache-dir", type=Path, help="Directory for the downloaded cloud image")
    create_p.add_argument("--staging-dir", type=Path, help="Directory where the image is built")
    create_p.add_argument("--wait", type=int, default=12, help="Minutes to wait for cloud-init")
    create_p.add_argument(
        "--initrd",
        choices=("off", "binary", "ram"),
        default="off",
        help="Inject binaries into the initrd",
    )
    create_p.add_argument("--install-deps", action="store_true", help="apt install host packages first")
    create_p.add_argument("--manifest", choices=("json", "cbor"), default="json", help="Manifest format")
    create_p.set_defaults(func=cmd_create)

    run_p = sub.add_parser(
        "run",
        help="Launch the guest image as a TD",
        description="Honours VM_IMG, FIRMWARE, SSH_PORT, PROCESS_NAME and DEVICE_ARGS.",
    )
    run_p.add_argument("--image", type=Path, help="Guest image (overrides VM_IMG)")
    run_p.add_argument("--firmware", type=Path, help="OVMF firmware (overrides FIRMWARE)")
    run_p.add_argument("--ssh-port", help="Host SSH port (overrides SSH_PORT)")
    run_p.add_argument("--name", help="Process name (overrides PROCESS_NAME)")
    run_p.set_defaults(func=cmd_run)

    clean_p = sub.add_parser("clean", help="Terminate the TD and remove temp files")
    clean_p.set_defaults(func=cmd_clean)
    return parser


def build_config_from_args(
    args: argparse.Namespace,
    environ: Mapping[str, str],
    *,
    cwd: Path | None = None,
) -> BuildConfig:
    root = cwd or Path.cwd()
    assets_dir = args.assets_dir or root
    config_file = args.config or discover_config_file(assets_dir, root)
    settings = resolve_settings(environ, config_file)

    ram_binaries = args.ram_binaries
    if ram_binaries is None and settings["RAM_BINARIES_PATH"]:
        ram_binaries = Path(settings["RAM_BINARIES_PATH"])

    return BuildConfig(
        output=args.output or default_guest_image(settings),
        size_gb=args.size,
        hostname=args.hostname or settings["GUEST_HOSTNAME"],
        user=args.user or settings["GUEST_USER"],
        password=args.password or settings["GUEST_PASSWORD"],
        binaries_path=args.binaries or Path(settings["BINARIES_PATH"]),
        binary_dest_dir=args.binary_dest,
        ram_binaries_path=ram_binaries,
        force_recreate=args.force,
        image_base_url=settings["OFFICIAL_UBUNTU_IMAGE"],
        cloud_img=settings["CLOUD_IMG"],
        work_dir=root,
        assets_dir=assets_dir,
        cache_dir=args.cache_dir or assets_dir,
        staging_dir=args.staging_dir or args.tmp_dir,
        cloud_init_wait=args.wait,
        initrd_mode=args.initrd,
        install_deps=args.install_deps,
        manifest_format=args.manifest,
        paths=RuntimePaths(tmp_dir=args.tmp_dir),
    )


def cmd_create(args: argparse.Namespace, logger: StructuredLogger) -> int:
    config = build_config_from_args(args, os.environ)
    GuestImageBuilder(config=config, logger=logger).build()
    return 0


def cmd_run(args: argparse.Namespace, logger: StructuredLogger) -> int:
    config = launch_config_from_env(os.environ)
    overrides: dict[str, object] = {"paths": RuntimePaths(tmp_dir=args.tmp_dir)}
    if args.image is not None:
        overrides["vm_img"] = args.image
    if args.firmware is not None:
        overrides["firmware"] = args.firmware
    if args.ssh_port is not None:
        overrides["ssh_port"] = parse_port(args.ssh_port)
    if args.name:
        overrides["process_name"] = args.name
    TdLauncher(logger=logger).launch(replace(config, **overrides))
    return 0


def cmd_clean(args: argparse.Namespace, logger: StructuredLogger) -> int:
    clean_guest(RuntimePaths(tmp_dir=args.tmp_dir), logger=logger)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = StructuredLogger(color=not args.no_color and sys.stdout.isatty())
    try:
        return int(args.func(args, logger))
    except TdGuestError as exc:
        logger.error(exc.message, operation=args.command)
        if exc.hint:
            print(f"Hint: {exc.hint}", file=sys.stderr)
        for key, value in exc.context.items():
            if value:
                print(f"  {key}: {value}", file=sys.stderr)
        return 1
    except OSError as exc:
        logger.error(str(exc), operation=args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
