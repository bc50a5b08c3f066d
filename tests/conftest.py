import os

import pytest

import build_kernel

DTBS = ["bcm2711-rpi-4-b.dtb", "bcm2711-rpi-400.dtb", "bcm2711-rpi-cm4.dtb", "bcm2837-rpi-3-b.dtb"]


def _enable(config_path, option):
    lines = []
    if os.path.exists(config_path):
        with open(config_path) as f:
            for line in f:
                if line.startswith(option + "=") or line.strip() == "# %s is not set" % option:
                    continue
                lines.append(line)
    lines.append("%s=y\n" % option)
    with open(config_path, "w") as f:
        f.writelines(lines)


def make_tree(kernel_dir):
    os.makedirs(os.path.join(kernel_dir, ".git"))
    os.makedirs(os.path.join(kernel_dir, "scripts"))
    with open(os.path.join(kernel_dir, "scripts", "config"), "w") as f:
        f.write("#!/bin/sh\n")


def make_outputs(kernel_dir):
    boot = os.path.join(kernel_dir, "arch", "arm64", "boot")
    dts = os.path.join(boot, "dts", "broadcom")
    os.makedirs(dts, exist_ok=True)
    with open(os.path.join(boot, "Image"), "wb") as f:
        f.write(b"ARM64 kernel image")
    for dtb in DTBS:
        with open(os.path.join(dts, dtb), "wb") as f:
            f.write(b"\xd0\x0d\xfe\xed" + dtb.encode())


class FakeToolchain:
    """Stands in for git, scripts/config and make by touching the tree."""

    def __init__(self):
        self.calls = []
        self.failing = {}

    def fail(self, *cmd, returncode=2):
        self.failing[tuple(cmd)] = returncode

    def __call__(self, cmd, cwd=None, env=None, fatal=True, stdout=None):
        self.calls.append((list(cmd), cwd, env))

        for prefix, returncode in self.failing.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                if fatal:
                    build_kernel.abort("Command failed (exit %d): %s" % (returncode, " ".join(cmd)))
                return returncode

        if cmd[:2] == ["git", "clone"]:
            make_tree(cmd[-1])
        elif len(cmd) == 3 and cmd[1] == "--enable":
            _enable(os.path.join(cwd, ".config"), cmd[2])
        elif cmd[0] == "make" and "Image" in cmd:
            make_outputs(cwd)
        return 0

    def commands(self):
        return [cmd for cmd, _, _ in self.calls]


@pytest.fixture
def toolchain(monkeypatch):
    fake = FakeToolchain()
    monkeypatch.setattr(build_kernel, "run", fake)
    return fake


@pytest.fixture
def all_tools(monkeypatch):
    monkeypatch.setattr(build_kernel.shutil, "which", lambda tool: "/usr/bin/" + tool)
