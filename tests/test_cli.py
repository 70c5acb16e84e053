from pathlib import Path

import pytest

from tdguest.cli import build_config_from_args, build_parser, main
from tdguest.launch import TdLauncher
from tdguest.models import LaunchConfig


def test_help_exits_zero(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["create", "-h"])

    assert excinfo.value.code == 0
    assert "-o FILE" in capsys.readouterr().out


def test_bad_output_name_exits_non_zero(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)

    code = main(["--no-color", "--tmp-dir", str(tmp_path), "create", "-o", "guest.img"])

    assert code == 1
    assert "ERROR: The output file should be qcow2 format" in capsys.readouterr().err


def test_flags_override_config_file_and_environment(tmp_path: Path) -> None:
    (tmp_path / "setup-tdx-config").write_text(
        "GUEST_USER=file-user\nGUEST_HOSTNAME=file-host\nTDX_SETUP_INTEL_KERNEL=1\n",
        encoding="utf-8",
    )
    args = build_parser().parse_args(
        ["--tmp-dir", str(tmp_path), "create", "-u", "cli-user", "-s", "20", "-f", "-d", "/sbin"],
    )

    config = build_config_from_args(args, {"GUEST_PASSWORD": "env-pass"}, cwd=tmp_path)

    assert config.user == "cli-user"
    assert config.hostname == "file-host"
    assert config.password == "env-pass"
    assert config.output == "tdx-guest-ubuntu-24.04-intel.qcow2"
    assert config.size_gb == 20
    assert config.force_recreate is True
    assert config.binary_dest_dir == "/sbin"
    assert config.staging_dir == tmp_path
    assert config.paths.setup_log == tmp_path / "tdx-guest-setup.txt"


def test_run_applies_environment_then_flags(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    launched: list[LaunchConfig] = []

    def fake_launch(self: TdLauncher, config: LaunchConfig) -> str:
        launched.append(config)
        return "ssh"

    monkeypatch.setattr(TdLauncher, "launch", fake_launch)
    monkeypatch.setenv("VM_IMG", str(tmp_path / "env.qcow2"))
    monkeypatch.setenv("SSH_PORT", "2200")
    monkeypatch.setenv("DEVICE_ARGS", "-device vhost-vsock-pci,guest-cid=5")

    code = main(["--tmp-dir", str(tmp_path), "run", "--ssh-port", "2300"])

    assert code == 0
    (config,) = launched
    assert config.vm_img == tmp_path / "env.qcow2"
    assert config.ssh_port == 2300
    assert config.device_args == ("-device", "vhost-vsock-pci,guest-cid=5")
    assert config.paths.pid_file == tmp_path / "tdx-demo-td-pid.pid"


def test_clean_terminates_td(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "tdx-demo-td-pid.pid").write_text("31337", encoding="utf-8")
    (tmp_path / "tdx-guest-vm.log").write_text("log", encoding="utf-8")
    killed: list[int] = []
    monkeypatch.setattr("tdguest.cleanup.os.kill", lambda pid, sig: killed.append(pid))
    monkeypatch.setattr("tdguest.cleanup.time.sleep", lambda _: None)

    assert main(["--tmp-dir", str(tmp_path), "clean"]) == 0

    assert killed == [31337]
    assert list(tmp_path.iterdir()) == []


def test_unwritable_setup_log_exits_non_zero(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "tdx-guest-setup.txt").mkdir()

    code = main(["--no-color", "--tmp-dir", str(tmp_path), "create", "-o", "x.qcow2"])

    err = capsys.readouterr().err
    assert code == 1
    assert "ERROR: Cannot write the setup log." in err
    assert "Hint: " in err
