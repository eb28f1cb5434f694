from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Optional

import pytest

import firecracker_mcp_server as fm


class FakeClock:
    """Advances instantly on sleep; records every requested interval."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


# ── Fake capabilities (no root, no KVM) ──────────────────────────────────


class FakeDevices:
    def __init__(self, events: list[str], fail: bool = False) -> None:
        self.events = events
        self.fail = fail
        self.live: set[str] = set()

    async def create_device(self, sandbox_id: int) -> str:
        tap = f"tap{sandbox_id}"
        self.events.append(f"create_device:{tap}")
        # Device exists but was never enslaved: a partial allocation
        self.live.add(tap)
        if self.fail:
            raise fm.AllocationError(f"Failed to create TAP device {tap}")
        return tap

    async def destroy_device(self, device_name: str) -> None:
        self.events.append(f"destroy_device:{device_name}")
        self.live.discard(device_name)


class FakeStager:
    def __init__(self, events: list[str], fail: bool = False) -> None:
        self.events = events
        self.fail = fail
        self.staged: dict[int, list[fm.Mount]] = {}

    async def stage(self, sandbox_id, ip, credential_dir, mounts) -> str:
        self.events.append(f"stage:{sandbox_id}")
        image = fm._image_path(sandbox_id)
        Path(image).write_bytes(b"rootfs")
        if self.fail:
            raise fm.AllocationError("Staging step failed (mount -o): no loop device")
        self.staged[sandbox_id] = [m for m in mounts if os.path.exists(m.host_path)]
        return image

    async def discard(self, image_path: str) -> None:
        self.events.append(f"discard:{os.path.basename(image_path)}")
        try:
            os.unlink(image_path)
        except FileNotFoundError:
            pass


class FakeHypervisor:
    """Spawns a real placeholder process so teardown can be checked."""

    def __init__(self, events: list[str], fail: Optional[str] = None) -> None:
        self.events = events
        self.fail = fail
        self.processes: list[asyncio.subprocess.Process] = []

    async def boot(self, sb: fm.Sandbox):
        self.events.append(f"boot:{sb.sandbox_id}")
        proc = await asyncio.create_subprocess_exec(
            "sleep",
            "60",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        sb.process = proc
        self.processes.append(proc)
        if self.fail == "socket":
            raise fm.AllocationError(f"Firecracker socket did not appear at {sb.socket_path}")
        Path(sb.socket_path).touch()
        if self.fail == "boot":
            raise fm.BootError("Firecracker API /actions rejected (400): bad config")
        return proc, sb.socket_path

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        self.events.append(f"terminate:{proc.pid}")
        if proc.returncode is None:
            proc.kill()
        await proc.wait()


class FakeBridge:
    def __init__(
        self,
        events: list[str],
        output: str = "ok\n",
        exit_code: int = 0,
        fail: Optional[str] = None,
        changed: Optional[list[str]] = None,
        guest_files: Optional[dict[str, dict[str, str]]] = None,
    ) -> None:
        self.events = events
        self.output = output
        self.exit_code = exit_code
        self.fail = fail
        self.changed = changed or []
        self.guest_files = guest_files or {}
        self.gate: Optional[asyncio.Event] = None
        self.tasks: list[str] = []
        self.written_back: list[fm.Mount] = []

    async def await_ready(self, ip: str, timeout=None) -> None:
        self.events.append(f"ready:{ip}")
        if self.fail == "ready":
            raise fm.ReadinessTimeout(f"SSH did not become available at {ip} within 30s")

    async def execute(self, ip: str, task: str, timeout: float):
        self.events.append(f"execute:{ip}")
        self.tasks.append(task)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail == "timeout":
            raise fm.ExecutionTimeout(f"Task timed out after {timeout:.0f}s")
        if self.fail == "crash":
            raise RuntimeError("ssh vanished")
        return self.output, self.exit_code

    async def collect_changed_paths(self, ip: str, mounts) -> list[str]:
        self.events.append(f"changed:{ip}")
        return list(self.changed)

    async def write_back(self, ip: str, mounts) -> list:
        self.events.append(f"write_back:{ip}")
        synced = []
        for mount in mounts:
            if mount.read_only or not os.path.isdir(mount.host_path):
                continue
            for name, content in self.guest_files.get(mount.guest_path, {}).items():
                Path(mount.host_path, name).write_text(content)
            synced.append(mount)
        self.written_back.extend(synced)
        return synced


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.tmp_path = tmp_path
        self.events: list[str] = []
        self.clock = FakeClock()
        self.devices = FakeDevices(self.events)
        self.stager = FakeStager(self.events)
        self.hypervisor = FakeHypervisor(self.events)
        self.bridge = FakeBridge(self.events)

    def manager(self, **kwargs) -> fm.SandboxManager:
        return fm.SandboxManager(
            devices=self.devices,
            stager=self.stager,
            hypervisor=self.hypervisor,
            bridge=self.bridge,
            clock=self.clock,
            keypair=fm.SSHKeypair(str(self.tmp_path / "keys" / "agent")),
            **kwargs,
        )

    def leftovers(self) -> list[str]:
        """Anything a finished run should have removed."""
        runtime = Path(fm.RUNTIME_DIR)
        found = [p.name for p in runtime.glob("fc-*")]
        found.extend(sorted(self.devices.live))
        found.extend(
            f"pid:{p.pid}" for p in self.hypervisor.processes if p.returncode is None
        )
        return found


@pytest.fixture
def runtime_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    paths = {
        "runtime": tmp_path / "runtime",
        "groups": tmp_path / "groups",
        "data": tmp_path / "data",
        "project": tmp_path / "project",
    }
    for p in paths.values():
        p.mkdir()
    monkeypatch.setattr(fm, "RUNTIME_DIR", str(paths["runtime"]))
    monkeypatch.setattr(fm, "GROUPS_DIR", str(paths["groups"]))
    monkeypatch.setattr(fm, "DATA_DIR", str(paths["data"]))
    monkeypatch.setattr(fm, "PROJECT_ROOT", str(paths["project"]))
    monkeypatch.setattr(fm, "OWNER_PROFILES", {})
    return paths


@pytest.fixture
def harness(runtime_dirs, tmp_path: Path) -> Harness:
    return Harness(tmp_path)


# ── Fake ssh / scp: the "guest" is the local machine ─────────────────────


_FAKE_SSH_SCRIPT = """#!/usr/bin/env python3
import os
import subprocess
import sys

args = sys.argv[1:]
i = 0
while i < len(args) and args[i] in ("-i", "-o"):
    i += 2
host = args[i]
remote = " ".join(args[i + 1:])

log_path = os.environ.get("FAKE_SSH_LOG")
if log_path:
    with open(log_path, "a") as f:
        f.write(remote.replace("\\n", " ") + "\\n")

# Refuse the first N connections, like a guest that is still booting
refusals = os.environ.get("FAKE_SSH_REFUSALS_FILE")
if refusals and os.path.exists(refusals):
    with open(refusals) as f:
        left = int(f.read().strip() or 0)
    if left > 0:
        with open(refusals, "w") as f:
            f.write(str(left - 1))
        print(f"ssh: connect to host {host} port 22: Connection refused", file=sys.stderr)
        sys.exit(255)

sys.exit(subprocess.run(["sh", "-c", remote]).returncode)
"""


_FAKE_SCP_SCRIPT = """#!/usr/bin/env python3
import os
import subprocess
import sys

args = sys.argv[1:]
paths = []
i = 0
while i < len(args):
    if args[i] in ("-i", "-o"):
        i += 2
        continue
    if args[i] == "-r":
        i += 1
        continue
    paths.append(args[i])
    i += 1
src, dst = paths
if "@" in src and ":" in src:
    src = src.split(":", 1)[1]
if os.environ.get("FAKE_SCP_FAIL") and os.environ["FAKE_SCP_FAIL"] in src:
    print(f"scp: {src}: No such file or directory", file=sys.stderr)
    sys.exit(1)
sys.exit(subprocess.run(["cp", "-R", src, dst]).returncode)
"""


_ENTRY_SCRIPT = """#!/bin/sh
sh -c "$1"
"""


def _write_exe(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_guest(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _write_exe(bin_dir / "ssh", _FAKE_SSH_SCRIPT)
    _write_exe(bin_dir / "scp", _FAKE_SCP_SCRIPT)

    guest_dir = tmp_path / "guest"
    guest_dir.mkdir()
    entry = _write_exe(guest_dir / "run-task.sh", _ENTRY_SCRIPT)
    task_file = guest_dir / "task.txt"
    ssh_log = tmp_path / "ssh.log"

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_SSH_LOG", str(ssh_log))
    monkeypatch.setattr(fm, "GUEST_ENTRY_SCRIPT", str(entry))
    monkeypatch.setattr(fm, "GUEST_TASK_FILE", str(task_file))

    return {
        "tmp_path": tmp_path,
        "bin_dir": bin_dir,
        "guest_dir": guest_dir,
        "task_file": task_file,
        "ssh_log": ssh_log,
    }


@pytest.fixture
def bridge(fake_guest) -> tuple[fm.SSHBridge, FakeClock]:
    clock = FakeClock()
    keypair = fm.SSHKeypair(str(fake_guest["tmp_path"] / "agent_key"))
    return fm.SSHBridge(keypair, clock=clock), clock
