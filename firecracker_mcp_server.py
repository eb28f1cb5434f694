#!/usr/bin/env python3
"""MCP server running one-shot tasks inside ephemeral Firecracker microVMs.

Every task gets a fresh VM with its own kernel, disk and network identity:

    allocate id → create TAP → stage rootfs → boot VM → SSH task → write back → teardown

Teardown always runs, whatever step failed.
"""

import asyncio
import contextlib
import importlib
import ipaddress
import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol, Union

import httpx
from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only, stdout carries MCP) ───────────────────────────

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("firecracker-mcp")

# ── Config ───────────────────────────────────────────────────────────────

FIRECRACKER_BIN = os.environ.get("FIRECRACKER_BIN", "/usr/local/bin/firecracker")
KERNEL_PATH = os.environ.get("FIRECRACKER_KERNEL", "/opt/firecracker/vmlinux.bin")
BASE_ROOTFS_PATH = os.environ.get(
    "FIRECRACKER_ROOTFS", "/opt/firecracker/agent-rootfs.ext4"
)
KVM_DEVICE = "/dev/kvm"

# Per-sandbox disk images, control sockets and scratch mount points
RUNTIME_DIR = os.environ.get("FIRECRACKER_RUNTIME_DIR", "/tmp")

BRIDGE_NAME = "fcbr0"
SUBNET = "172.16.0.0/24"
DNS_SERVER = "8.8.8.8"

VM_VCPUS = 2
VM_MEM_MIB = 1024

SOCKET_WAIT_TIMEOUT = 5.0
SOCKET_POLL_INTERVAL = 0.1
CONTROL_CALL_TIMEOUT = 5.0
TERMINATE_TIMEOUT = 5.0

SSH_BOOT_TIMEOUT = 30.0
SSH_POLL_INTERVAL = 0.5
SSH_CONNECT_TIMEOUT = 2
SSH_PROBE_TIMEOUT = 5.0
UPLOAD_TIMEOUT = 10.0
CHANGED_FILES_TIMEOUT = 10.0
CHANGED_FILES_LIMIT = 50
WRITE_BACK_TIMEOUT = 60.0

DEFAULT_TASK_TIMEOUT = 600.0  # 10 minutes
MAX_OUTPUT = 10 * 1024 * 1024

# Guest layout (baked into the base rootfs)
GUEST_USER = "agent"
GUEST_OWNER = "1000:1000"
GUEST_HOME = "/home/agent"
GUEST_ENTRY_SCRIPT = "/home/agent/run-task.sh"
GUEST_TASK_FILE = "/tmp/task.txt"
GUEST_CREDENTIALS_NAME = ".credentials"
GUEST_GATEWAY_KEY_FILE = "/home/agent/.ai-gateway-key"
GATEWAY_KEY_ENV = "AI_GATEWAY_KEY"

# The guest agent prints this once it considers the task done
TASK_COMPLETE_MARKER = "TASK_COMPLETE"

SSH_KEY_PATH = os.path.expanduser("~/.ssh/firecracker_agent")

# State dir (XDG-friendly)
_STATE_DIR = os.path.expanduser("~/.local/state/firecracker-mcp")
GROUPS_DIR = os.path.join(_STATE_DIR, "groups")
DATA_DIR = os.path.join(_STATE_DIR, "data")
PROJECT_ROOT = os.getcwd()
LOG_TAIL_CHARS = 2000

# Per-owner overrides, e.g. {"main": {"timeout": 1800}}
OWNER_PROFILES: dict[str, dict] = {}

# Optional "package.module:function" mount allowlist validator
MOUNT_VALIDATOR_ENV = "MOUNT_VALIDATOR"


# ── Errors ───────────────────────────────────────────────────────────────


class SandboxError(RuntimeError):
    kind = "sandbox"


class CapacityError(SandboxError):
    kind = "capacity"


class InfrastructureMissing(SandboxError):
    kind = "infrastructure_missing"


class AllocationError(SandboxError):
    kind = "allocation"


class BootError(SandboxError):
    kind = "boot"


class ReadinessTimeout(SandboxError):
    kind = "readiness_timeout"


class ExecutionTimeout(SandboxError):
    kind = "execution_timeout"


class ExecutionFailure(SandboxError):
    kind = "execution_failure"


class OutputLimitExceeded(SandboxError):
    kind = "output_limit"


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


async def _run(
    cmd: list[str], timeout: float = 30.0, input_data: Optional[bytes] = None
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input=input_data), timeout=timeout
        )
    except (asyncio.TimeoutError, asyncio.CancelledError):
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _sq(s: str) -> str:
    return "'" + s.replace("'", "'\\''") + "'"


_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _validate_owner_id(owner_id: str) -> bool:
    return bool(_OWNER_ID_RE.match(owner_id or ""))


def _device_name(sandbox_id: int) -> str:
    return f"tap{sandbox_id}"


def _image_path(sandbox_id: int) -> str:
    return os.path.join(RUNTIME_DIR, f"fc-vm-{sandbox_id}.ext4")


def _socket_path(sandbox_id: int) -> str:
    return os.path.join(RUNTIME_DIR, f"fc-{sandbox_id}.socket")


def _mount_point(sandbox_id: int) -> str:
    return os.path.join(RUNTIME_DIR, f"fc-mount-{sandbox_id}")


def _generate_mac(sandbox_id: int) -> str:
    return f"AA:FC:00:00:{(sandbox_id >> 8) & 0xFF:02X}:{sandbox_id & 0xFF:02X}"


def _network_config(ip: str, gateway: str, prefix: int) -> str:
    return (
        "[Match]\n"
        "Name=eth0\n"
        "\n"
        "[Network]\n"
        f"Address={ip}/{prefix}\n"
        f"Gateway={gateway}\n"
        f"DNS={DNS_SERVER}\n"
    )


def _boot_args(ip: str, gateway: str, netmask: str) -> str:
    return " ".join(
        [
            "console=ttyS0",
            "reboot=k",
            "panic=1",
            "pci=off",
            f"ip={ip}::{gateway}:{netmask}::eth0:off",
            f"nameserver={DNS_SERVER}",
        ]
    )


# ── Clock ────────────────────────────────────────────────────────────────


class Clock:
    """Time source for the polling loops; tests swap in a fake."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


async def _poll_until(
    probe: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
    clock: Clock,
) -> bool:
    """Call probe until it returns True or timeout elapses. Probe runs at least once."""
    deadline = clock.monotonic() + timeout
    while True:
        if await probe():
            return True
        if clock.monotonic() >= deadline:
            return False
        await clock.sleep(interval)


# ── Data model ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Mount:
    host_path: str
    guest_path: str
    read_only: bool = False

    @classmethod
    def coerce(cls, value: Union["Mount", dict]) -> "Mount":
        """Accept a Mount or a dict in snake_case or allowlist (camelCase) form."""
        if isinstance(value, Mount):
            return value
        host = value.get("host_path") or value.get("hostPath")
        guest = (
            value.get("guest_path")
            or value.get("guestPath")
            or value.get("container_path")
            or value.get("containerPath")
        )
        if not host or not guest:
            raise ValueError(f"Mount needs a host and guest path: {value!r}")
        read_only = value.get(
            "read_only", value.get("readOnly", value.get("readonly", False))
        )
        return cls(host_path=str(host), guest_path=str(guest), read_only=bool(read_only))


@dataclass(frozen=True)
class TaskResult:
    output: str
    files_changed: tuple[str, ...]
    exit_code: int
    duration_ms: int
    error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "output": self.output,
            "files_changed": list(self.files_changed),
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "error_kind": self.error_kind,
        }


@dataclass
class Sandbox:
    sandbox_id: int
    owner_id: str
    ip: str
    device_name: str
    image_path: str
    socket_path: str
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    started_at: float = field(default_factory=time.time)
    killed: bool = False
    _released: set = field(default_factory=set, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)
    _retired: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @classmethod
    def for_slot(cls, sandbox_id: int, owner_id: str, ip: str) -> "Sandbox":
        return cls(
            sandbox_id=sandbox_id,
            owner_id=owner_id,
            ip=ip,
            device_name=_device_name(sandbox_id),
            image_path=_image_path(sandbox_id),
            socket_path=_socket_path(sandbox_id),
        )

    def runtime_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    def claim_release(self, resource: str) -> bool:
        """True the first time a resource class is released, False after."""
        if resource in self._released:
            return False
        self._released.add(resource)
        return True


# ── Network identity ─────────────────────────────────────────────────────


class IdentityAllocator:
    """Hands out sandbox ids and the private address derived from each.

    Host address 1 is the bridge and the broadcast address is never used,
    so sandbox n gets host address n + 1.
    """

    def __init__(self, subnet: str = SUBNET):
        self._network = ipaddress.ip_network(subnet)
        self._lock = threading.Lock()
        self._next = 1
        self._live: set[int] = set()

    @property
    def capacity(self) -> int:
        return self._network.num_addresses - 3

    @property
    def bridge_address(self) -> str:
        return str(self._network[1])

    @property
    def netmask(self) -> str:
        return str(self._network.netmask)

    @property
    def prefixlen(self) -> int:
        return self._network.prefixlen

    def address_for(self, sandbox_id: int) -> str:
        if not 1 <= sandbox_id <= self.capacity:
            raise ValueError(f"Sandbox id {sandbox_id} outside 1..{self.capacity}")
        return str(self._network[sandbox_id + 1])

    def allocate(self, owner_id: str) -> tuple[int, str]:
        capacity = self.capacity
        with self._lock:
            for offset in range(capacity):
                candidate = (self._next - 1 + offset) % capacity + 1
                if candidate in self._live:
                    continue
                self._live.add(candidate)
                self._next = candidate % capacity + 1
                return candidate, self.address_for(candidate)
        raise CapacityError(
            f"Maximum sandbox count exceeded ({capacity} concurrent sandboxes)"
        )

    def release(self, sandbox_id: int) -> None:
        with self._lock:
            self._live.discard(sandbox_id)

    def live_ids(self) -> set[int]:
        with self._lock:
            return set(self._live)


# ── SSH keypair ──────────────────────────────────────────────────────────


class SSHKeypair:
    """Host keypair used for every guest; generated once on first use."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or SSH_KEY_PATH
        self._lock = asyncio.Lock()

    def _complete(self) -> bool:
        return os.path.exists(self.path) and os.path.exists(f"{self.path}.pub")

    async def ensure(self) -> str:
        if self._complete():
            return self.path
        async with self._lock:
            if self._complete():
                return self.path
            if os.path.exists(self.path):
                await self._derive_public_key()
                return self.path
            os.makedirs(os.path.dirname(self.path), mode=0o700, exist_ok=True)
            log.info("Generating SSH keypair for VM communication...")
            code, _, stderr = await self._keygen(
                [
                    "-t",
                    "ed25519",
                    "-f",
                    self.path,
                    "-N",
                    "",
                    "-C",
                    "firecracker-agent",
                ]
            )
            if code != 0:
                raise InfrastructureMissing(f"ssh-keygen failed: {stderr.strip()}")
            log.info(f"SSH keypair generated at {self.path}")
        return self.path

    async def _derive_public_key(self) -> None:
        log.warning(f"Public key missing for {self.path}, deriving it")
        code, stdout, stderr = await self._keygen(["-y", "-f", self.path])
        if code != 0 or not stdout.strip():
            raise InfrastructureMissing(
                f"Could not derive public key from {self.path}: {stderr.strip()}"
            )
        with open(f"{self.path}.pub", "w") as f:
            f.write(stdout.strip() + "\n")

    async def _keygen(self, args: list[str]) -> tuple[int, str, str]:
        try:
            return await _run(["ssh-keygen", *args], timeout=30)
        except (OSError, asyncio.TimeoutError) as e:
            raise InfrastructureMissing(f"ssh-keygen failed: {e!r}") from e

    async def public_key(self) -> str:
        await self.ensure()
        with open(f"{self.path}.pub") as f:
            return f.read().strip()


# ── Startup checks ───────────────────────────────────────────────────────


async def verify_firecracker_setup(keypair: Optional[SSHKeypair] = None) -> None:
    """Fail fast when the host cannot run microVMs at all."""
    if not os.access(KVM_DEVICE, os.R_OK | os.W_OK):
        raise InfrastructureMissing(
            f"Cannot access {KVM_DEVICE}. Ensure your user is in the 'kvm' group: "
            "sudo usermod -aG kvm $USER"
        )
    if not os.path.isfile(FIRECRACKER_BIN):
        raise InfrastructureMissing(
            f"Firecracker not found at {FIRECRACKER_BIN}. Install from "
            "https://github.com/firecracker-microvm/firecracker/releases"
        )
    if not os.path.isfile(KERNEL_PATH):
        raise InfrastructureMissing(
            f"Kernel not found at {KERNEL_PATH}. Download a Firecracker-compatible vmlinux."
        )
    if not os.path.isfile(BASE_ROOTFS_PATH):
        raise InfrastructureMissing(f"Agent rootfs not found at {BASE_ROOTFS_PATH}")
    try:
        code, _, _ = await _run(["ip", "link", "show", BRIDGE_NAME], timeout=5)
    except (OSError, asyncio.TimeoutError) as e:
        raise InfrastructureMissing(f"Cannot inspect network bridge: {e}") from e
    if code != 0:
        raise InfrastructureMissing(f"Network bridge {BRIDGE_NAME} not found")

    await (keypair or SSHKeypair()).ensure()
    log.info("Firecracker setup verified")


# ── Capability interfaces ────────────────────────────────────────────────


class NetworkDeviceManager(Protocol):
    async def create_device(self, sandbox_id: int) -> str: ...

    async def destroy_device(self, device_name: str) -> None: ...


class ImageStager(Protocol):
    async def stage(
        self,
        sandbox_id: int,
        ip: str,
        credential_dir: Optional[str],
        mounts: list[Mount],
    ) -> str: ...

    async def discard(self, image_path: str) -> None: ...


MountValidator = Callable[[list[dict], str, bool], list]


def load_mount_validator(target: Optional[str] = None) -> Optional[MountValidator]:
    """Resolve a "package.module:function" validator, if one is configured."""
    target = target if target is not None else os.environ.get(MOUNT_VALIDATOR_ENV, "")
    if not target:
        return None
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"{MOUNT_VALIDATOR_ENV} must look like 'module:function', got {target!r}")
    return getattr(importlib.import_module(module_name), attr)


# ── TAP devices ──────────────────────────────────────────────────────────


class TapDeviceManager:
    """Point-to-point TAP device per sandbox, enslaved to the shared bridge."""

    def __init__(self, bridge: Optional[str] = None):
        self.bridge = bridge or BRIDGE_NAME

    async def create_device(self, sandbox_id: int) -> str:
        tap = _device_name(sandbox_id)

        # Names are derived, so a crashed earlier run can leave one behind
        try:
            code, _, _ = await _run(["ip", "link", "show", tap], timeout=10)
        except (OSError, asyncio.TimeoutError) as e:
            raise AllocationError(f"Cannot inspect TAP device {tap}: {e!r}") from e
        if code == 0:
            log.warning(f"Removing stale TAP device {tap}")
            await self.destroy_device(tap)

        steps = [
            ["sudo", "ip", "tuntap", "add", "dev", tap, "mode", "tap"],
            ["sudo", "ip", "link", "set", tap, "up"],
            ["sudo", "ip", "link", "set", tap, "master", self.bridge],
        ]
        for cmd in steps:
            try:
                code, _, stderr = await _run(cmd, timeout=10)
            except (OSError, asyncio.TimeoutError) as e:
                raise AllocationError(f"Failed to create TAP device {tap}: {e}") from e
            if code != 0:
                raise AllocationError(
                    f"Failed to create TAP device {tap} ({' '.join(cmd[1:])}): "
                    f"{stderr.strip()}"
                )
        log.info(f"Created TAP device {tap}")
        return tap

    async def destroy_device(self, device_name: str) -> None:
        try:
            code, _, _ = await _run(
                ["sudo", "ip", "link", "delete", device_name], timeout=10
            )
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Could not delete TAP device {device_name}: {e}")
            return
        if code == 0:
            log.info(f"Destroyed TAP device {device_name}")
        else:
            log.info(f"TAP device {device_name} already gone")


# ── Rootfs staging ───────────────────────────────────────────────────────


class RootfsStager:
    """Clones the base rootfs and seeds it before boot."""

    def __init__(
        self,
        keypair: SSHKeypair,
        base_image: Optional[str] = None,
        gateway: str = "",
        prefixlen: int = 24,
    ):
        self.keypair = keypair
        self.base_image = base_image
        self.gateway = gateway or IdentityAllocator().bridge_address
        self.prefixlen = prefixlen

    async def stage(
        self,
        sandbox_id: int,
        ip: str,
        credential_dir: Optional[str],
        mounts: list[Mount],
    ) -> str:
        image = _image_path(sandbox_id)
        base = self.base_image or BASE_ROOTFS_PATH
        try:
            code, _, stderr = await _run(
                ["cp", "--sparse=always", base, image], timeout=300
            )
        except (OSError, asyncio.TimeoutError) as e:
            await self.discard(image)
            raise AllocationError(f"Could not copy base rootfs: {e!r}") from e
        if code != 0:
            await self.discard(image)
            raise AllocationError(f"Could not copy base rootfs: {stderr.strip()}")

        try:
            async with self._mounted(image, _mount_point(sandbox_id)) as root:
                await self._inject_ssh_key(root)
                await self._inject_credentials(root, credential_dir)
                await self._inject_gateway_key(root)
                await self._copy_mounts(root, mounts)
                await self._write_network_config(root, ip)
        except BaseException:
            await self.discard(image)
            raise
        return image

    async def discard(self, image_path: str) -> None:
        try:
            os.unlink(image_path)
        except FileNotFoundError:
            pass

    @contextlib.asynccontextmanager
    async def _mounted(self, image: str, mount_point: str):
        os.makedirs(mount_point, exist_ok=True)
        try:
            await self._sudo(["mount", "-o", "loop", image, mount_point], timeout=60)
            try:
                yield mount_point
            finally:
                try:
                    code, _, stderr = await _run(["sudo", "umount", mount_point], timeout=60)
                    if code != 0:
                        log.warning(f"umount {mount_point} failed: {stderr.strip()}")
                except (OSError, asyncio.TimeoutError) as e:
                    log.warning(f"umount {mount_point} failed: {e}")
        finally:
            # rmdir only: never recurse into a mount point that failed to unmount
            try:
                os.rmdir(mount_point)
            except OSError as e:
                log.warning(f"Could not remove {mount_point}: {e}")

    async def _sudo(
        self, cmd: list[str], timeout: float = 60.0, input_data: Optional[bytes] = None
    ) -> str:
        try:
            code, stdout, stderr = await _run(
                ["sudo", *cmd], timeout=timeout, input_data=input_data
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise AllocationError(f"Staging step failed ({cmd[0]}): {e}") from e
        if code != 0:
            raise AllocationError(
                f"Staging step failed ({' '.join(cmd[:2])}): {stderr.strip()}"
            )
        return stdout

    async def _write(self, path: str, content: str, mode: str = "644") -> None:
        await self._sudo(["tee", path], input_data=content.encode())
        await self._sudo(["chmod", mode, path])

    def _guest(self, root: str, guest_path: str) -> str:
        target = os.path.normpath(os.path.join(root, guest_path.lstrip("/")))
        if target != root and not target.startswith(root.rstrip("/") + "/"):
            raise AllocationError(f"Guest path escapes the rootfs: {guest_path}")
        return target

    async def _inject_ssh_key(self, root: str) -> None:
        ssh_dir = self._guest(root, f"{GUEST_HOME}/.ssh")
        pub_key = await self.keypair.public_key()
        await self._sudo(["mkdir", "-p", ssh_dir])
        await self._write(os.path.join(ssh_dir, "authorized_keys"), pub_key + "\n", "600")
        await self._sudo(["chmod", "700", ssh_dir])
        await self._sudo(["chown", "-R", GUEST_OWNER, ssh_dir])

    async def _inject_credentials(self, root: str, credential_dir: Optional[str]) -> None:
        if not credential_dir or not os.path.isdir(credential_dir):
            log.info(f"No credential directory at {credential_dir}, skipping")
            return
        target = self._guest(root, f"{GUEST_HOME}/{GUEST_CREDENTIALS_NAME}")
        await self._sudo(["mkdir", "-p", target])
        await self._sudo(["cp", "-r", f"{credential_dir}/.", f"{target}/"], timeout=120)
        await self._sudo(["chown", "-R", GUEST_OWNER, target])

    async def _inject_gateway_key(self, root: str) -> None:
        gateway_key = os.environ.get(GATEWAY_KEY_ENV)
        if not gateway_key:
            return
        key_file = self._guest(root, GUEST_GATEWAY_KEY_FILE)
        await self._write(key_file, gateway_key + "\n", "600")
        await self._sudo(["chown", GUEST_OWNER, key_file])

    async def _copy_mounts(self, root: str, mounts: list[Mount]) -> None:
        for mount in mounts:
            if not os.path.exists(mount.host_path):
                log.info(f"Skipping non-existent mount: {mount.host_path}")
                continue
            target = self._guest(root, mount.guest_path)
            await self._sudo(["mkdir", "-p", target])
            await self._sudo(["cp", "-a", f"{mount.host_path}/.", f"{target}/"], timeout=300)
            await self._sudo(["chown", "-R", GUEST_OWNER, target])

    async def _write_network_config(self, root: str, ip: str) -> None:
        network_dir = self._guest(root, "/etc/systemd/network")
        await self._sudo(["mkdir", "-p", network_dir])
        await self._write(
            os.path.join(network_dir, "10-eth0.network"),
            _network_config(ip, self.gateway, self.prefixlen),
        )
        await self._write(
            self._guest(root, "/etc/resolv.conf"), f"nameserver {DNS_SERVER}\n"
        )


# ── Firecracker control plane ────────────────────────────────────────────


class FirecrackerController:
    """One firecracker process per sandbox, configured over its API socket."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        allocator: Optional[IdentityAllocator] = None,
        transport_factory: Optional[Callable[[str], httpx.AsyncBaseTransport]] = None,
    ):
        self.clock = clock or Clock()
        self._network = allocator or IdentityAllocator()
        self._transport_factory = transport_factory or (
            lambda sock: httpx.AsyncHTTPTransport(uds=sock)
        )

    async def boot(self, sb: Sandbox) -> tuple[asyncio.subprocess.Process, str]:
        proc, sock = await self.spawn(sb)
        await self.configure(sock, sb.sandbox_id, sb.ip, sb.image_path, sb.device_name)
        return proc, sock

    async def spawn(self, sb: Sandbox) -> tuple[asyncio.subprocess.Process, str]:
        sock = sb.socket_path
        with contextlib.suppress(FileNotFoundError):
            os.unlink(sock)

        try:
            proc = await asyncio.create_subprocess_exec(
                FIRECRACKER_BIN,
                "--api-sock",
                sock,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise AllocationError(f"Could not start Firecracker: {e}") from e
        # Recorded before the wait so teardown always sees it
        sb.process = proc

        async def _socket_ready() -> bool:
            return proc.returncode is not None or os.path.exists(sock)

        appeared = await _poll_until(
            _socket_ready, SOCKET_WAIT_TIMEOUT, SOCKET_POLL_INTERVAL, self.clock
        )
        if proc.returncode is not None:
            raise AllocationError(
                f"Firecracker exited with code {proc.returncode} before creating {sock}"
            )
        if not appeared:
            await self.terminate(proc)
            raise AllocationError(f"Firecracker socket did not appear at {sock}")
        return proc, sock

    async def configure(
        self, sock: str, sandbox_id: int, ip: str, image_path: str, device_name: str
    ) -> None:
        calls = [
            (
                "/boot-source",
                {
                    "kernel_image_path": KERNEL_PATH,
                    "boot_args": _boot_args(
                        ip, self._network.bridge_address, self._network.netmask
                    ),
                },
            ),
            (
                "/drives/rootfs",
                {
                    "drive_id": "rootfs",
                    "path_on_host": image_path,
                    "is_root_device": True,
                    "is_read_only": False,
                },
            ),
            (
                "/network-interfaces/eth0",
                {
                    "iface_id": "eth0",
                    "guest_mac": _generate_mac(sandbox_id),
                    "host_dev_name": device_name,
                },
            ),
            ("/machine-config", {"vcpu_count": VM_VCPUS, "mem_size_mib": VM_MEM_MIB}),
            ("/actions", {"action_type": "InstanceStart"}),
        ]
        async with httpx.AsyncClient(
            transport=self._transport_factory(sock),
            base_url="http://localhost",
            timeout=CONTROL_CALL_TIMEOUT,
        ) as client:
            for endpoint, body in calls:
                try:
                    resp = await client.put(endpoint, json=body)
                except httpx.HTTPError as e:
                    raise BootError(f"Firecracker API {endpoint} failed: {e}") from e
                if resp.is_error:
                    raise BootError(
                        f"Firecracker API {endpoint} rejected ({resp.status_code}): "
                        f"{resp.text.strip()}"
                    )
        log.info(f"VM {sandbox_id} started ({ip}, {device_name})")

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        try:
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning(f"Firecracker pid {proc.pid} did not exit after SIGKILL")


# ── SSH bridge ───────────────────────────────────────────────────────────


class SSHBridge:
    """Runs the task inside a booted guest and brings its results home."""

    def __init__(self, keypair: SSHKeypair, clock: Optional[Clock] = None):
        self.keypair = keypair
        self.clock = clock or Clock()

    def _ssh_opts(self) -> list[str]:
        return [
            "-i",
            self.keypair.path,
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
        ]

    def _ssh(self, ip: str, remote_cmd: str) -> list[str]:
        return ["ssh", *self._ssh_opts(), f"{GUEST_USER}@{ip}", remote_cmd]

    async def await_ready(self, ip: str, timeout: Optional[float] = None) -> None:
        timeout = SSH_BOOT_TIMEOUT if timeout is None else timeout

        async def _probe() -> bool:
            try:
                code, stdout, _ = await _run(
                    self._ssh(ip, "echo ready"), timeout=SSH_PROBE_TIMEOUT
                )
            except (OSError, asyncio.TimeoutError):
                return False
            return code == 0 and "ready" in stdout

        if not await _poll_until(_probe, timeout, SSH_POLL_INTERVAL, self.clock):
            raise ReadinessTimeout(
                f"SSH did not become available at {ip} within {timeout:.0f}s"
            )

    async def execute(self, ip: str, task: str, timeout: float) -> tuple[str, int]:
        # Upload over stdin so the task text never passes through a shell
        try:
            code, _, stderr = await _run(
                self._ssh(ip, f"cat > {_sq(GUEST_TASK_FILE)}"),
                timeout=UPLOAD_TIMEOUT,
                input_data=task.encode(),
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise ExecutionFailure(f"Task upload to {ip} failed: {e}") from e
        if code != 0:
            raise ExecutionFailure(f"Task upload to {ip} failed: {stderr.strip()}")

        remote = f'bash {_sq(GUEST_ENTRY_SCRIPT)} "$(cat {_sq(GUEST_TASK_FILE)})"'
        proc = await asyncio.create_subprocess_exec(
            *self._ssh(ip, remote),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(self._capture(proc), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise ExecutionTimeout(f"Task timed out after {timeout:.0f}s")
        except (OutputLimitExceeded, asyncio.CancelledError):
            await self._kill(proc)
            raise

        exit_code = proc.returncode or 0
        out = stdout.decode(errors="replace")
        if exit_code == 0:
            return out, 0
        return out + "\n" + stderr.decode(errors="replace"), exit_code

    async def _capture(self, proc: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
        """Read stdout and stderr against one shared byte budget."""
        limit = MAX_OUTPUT
        total = 0

        async def _drain(stream: asyncio.StreamReader) -> bytes:
            nonlocal total
            chunks = []
            while True:
                chunk = await stream.read(65536)
                if not chunk:
                    return b"".join(chunks)
                total += len(chunk)
                if total > limit:
                    raise OutputLimitExceeded(
                        f"Task output exceeded {_humanize_bytes(limit)}"
                    )
                chunks.append(chunk)

        drains = [
            asyncio.ensure_future(_drain(proc.stdout)),
            asyncio.ensure_future(_drain(proc.stderr)),
        ]
        try:
            stdout, stderr = await asyncio.gather(*drains)
        finally:
            for d in drains:
                d.cancel()
            # Collect the sibling so its exception is never left unretrieved
            await asyncio.gather(*drains, return_exceptions=True)
        await proc.wait()
        return stdout, stderr

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        await proc.wait()

    async def collect_changed_paths(self, ip: str, mounts: list[Mount]) -> list[str]:
        """Best effort: git diff where there is a work tree, else an mtime scan."""
        dirs = [m.guest_path.rstrip("/") or "/" for m in mounts if not m.read_only]
        if not dirs:
            return []
        task_file = _sq(GUEST_TASK_FILE)
        script = (
            f"for d in {' '.join(_sq(d) for d in dirs)}; do "
            '[ -d "$d" ] || continue; '
            'if git -C "$d" rev-parse --is-inside-work-tree >/dev/null 2>&1; then '
            'git -C "$d" diff --name-only --relative 2>/dev/null | sed "s|^|$d/|"; '
            f'else find "$d" -newer {task_file} -type f 2>/dev/null | head -{CHANGED_FILES_LIMIT}; '
            "fi; done; true"
        )
        try:
            code, stdout, _ = await _run(self._ssh(ip, script), timeout=CHANGED_FILES_TIMEOUT)
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Changed-file scan on {ip} failed: {e}")
            return []
        if code != 0:
            return []
        seen: dict[str, None] = {}
        for line in stdout.splitlines():
            line = line.strip()
            if line:
                seen.setdefault(os.path.normpath(line), None)
        return list(seen)

    async def write_back(self, ip: str, mounts: list[Mount]) -> list[Mount]:
        synced = []
        for mount in mounts:
            if mount.read_only:
                continue
            if not os.path.isdir(mount.host_path):
                # Never staged, so nothing of the host's to update
                continue
            cmd = [
                "scp",
                *self._ssh_opts(),
                "-r",
                f"{GUEST_USER}@{ip}:{mount.guest_path.rstrip('/')}/.",
                f"{mount.host_path.rstrip('/')}/",
            ]
            try:
                code, _, stderr = await _run(cmd, timeout=WRITE_BACK_TIMEOUT)
            except (OSError, asyncio.TimeoutError) as e:
                log.warning(f"Failed to sync {mount.guest_path} back: {e}")
                continue
            if code != 0:
                log.warning(f"Failed to sync {mount.guest_path} back: {stderr.strip()}")
                continue
            log.info(f"Synced {mount.guest_path} → {mount.host_path}")
            synced.append(mount)
        return synced


# ── Sandbox manager ──────────────────────────────────────────────────────


class SandboxManager:
    """Runs tasks in one-shot microVMs, at most one live VM per owner."""

    def __init__(
        self,
        devices: Optional[NetworkDeviceManager] = None,
        stager: Optional[ImageStager] = None,
        hypervisor: Optional[FirecrackerController] = None,
        bridge: Optional[SSHBridge] = None,
        allocator: Optional[IdentityAllocator] = None,
        mount_validator: Optional[MountValidator] = None,
        clock: Optional[Clock] = None,
        keypair: Optional[SSHKeypair] = None,
    ):
        self.clock = clock or Clock()
        self.keypair = keypair or SSHKeypair()
        self.allocator = allocator or IdentityAllocator()
        self.devices = devices or TapDeviceManager()
        self.stager = stager or RootfsStager(
            self.keypair,
            gateway=self.allocator.bridge_address,
            prefixlen=self.allocator.prefixlen,
        )
        self.hypervisor = hypervisor or FirecrackerController(
            clock=self.clock, allocator=self.allocator
        )
        self.bridge = bridge or SSHBridge(self.keypair, clock=self.clock)
        self.mount_validator = mount_validator
        self._sandboxes: dict[str, Sandbox] = {}
        self._owner_locks: dict[str, asyncio.Lock] = {}
        self._owner_pending: dict[str, int] = {}
        self._closing = False

    # ── Task entry point ─────────────────────────────────────────────

    async def run_task(
        self,
        owner_id: str,
        task: str,
        mounts: Optional[list] = None,
        credential_dir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> TaskResult:
        """
        Run one task in a fresh microVM and tear it down afterwards.

        Per-task failures come back as a TaskResult with a non-zero exit
        code and an "Error: ..." output; this never raises for them.
        """
        if not _validate_owner_id(owner_id):
            return TaskResult(
                output=f"Error: invalid owner id {owner_id!r}",
                files_changed=(),
                exit_code=1,
                duration_ms=0,
                error_kind="invalid_request",
            )
        try:
            staged = [Mount.coerce(m) for m in mounts or []]
        except (ValueError, AttributeError) as e:
            return TaskResult(
                output=f"Error: {e}",
                files_changed=(),
                exit_code=1,
                duration_ms=0,
                error_kind="invalid_request",
            )
        timeout = self._task_timeout(owner_id, timeout)

        lock = self._owner_locks.setdefault(owner_id, asyncio.Lock())
        # Holder plus waiters; the lock is dropped once nobody needs it
        self._owner_pending[owner_id] = self._owner_pending.get(owner_id, 0) + 1
        try:
            if lock.locked():
                log.info(f"VM already running for {owner_id}, waiting...")
            async with lock:
                if self._closing:
                    log.info(f"Refusing VM for {owner_id}: shutting down")
                    return _error_result(
                        SandboxError("Server is shutting down"),
                        time.perf_counter(),
                        "shutdown",
                    )
                result = await self._run_admitted(
                    owner_id, task, staged, credential_dir, timeout
                )
        finally:
            self._owner_pending[owner_id] -= 1
            if not self._owner_pending[owner_id]:
                del self._owner_pending[owner_id]
                self._owner_locks.pop(owner_id, None)
        self._write_run_log(owner_id, result)
        return result

    def _task_timeout(self, owner_id: str, timeout: Optional[float]) -> float:
        if timeout:
            return float(timeout)
        profile = OWNER_PROFILES.get(owner_id, {})
        return float(profile.get("timeout", DEFAULT_TASK_TIMEOUT))

    async def _run_admitted(
        self,
        owner_id: str,
        task: str,
        mounts: list[Mount],
        credential_dir: Optional[str],
        timeout: float,
    ) -> TaskResult:
        t0 = time.perf_counter()
        try:
            sandbox_id, ip = self.allocator.allocate(owner_id)
        except CapacityError as e:
            log.warning(f"Cannot admit {owner_id}: {e}")
            return _error_result(e, t0)

        sb = Sandbox.for_slot(sandbox_id, owner_id, ip)
        log.info(f"Starting VM {sandbox_id} for {owner_id} ({ip})")

        async with contextlib.AsyncExitStack() as teardown:
            self._sandboxes[owner_id] = sb
            # Names are derived from the id, so every release can be armed
            # before its resource exists. Unwinds bottom-up.
            teardown.push_async_callback(self._release_slot, sb)
            teardown.push_async_callback(self._release_socket, sb)
            teardown.push_async_callback(self._release_image, sb)
            teardown.push_async_callback(self._release_device, sb)
            teardown.push_async_callback(self._release_process, sb)

            sb._task = asyncio.ensure_future(
                self._drive(sb, task, mounts, credential_dir, timeout, t0)
            )
            try:
                return await sb._task
            except asyncio.CancelledError:
                if not sb.killed:
                    raise
                log.info(f"VM {sandbox_id} was killed")
                return _error_result(SandboxError("Sandbox was killed"), t0, "killed")
            except SandboxError as e:
                log.warning(f"VM {sandbox_id} error: {e}")
                return _error_result(e, t0)
            except Exception as e:
                log.exception(f"VM {sandbox_id} failed unexpectedly")
                return _error_result(e, t0, "internal")

    async def _drive(
        self,
        sb: Sandbox,
        task: str,
        mounts: list[Mount],
        credential_dir: Optional[str],
        timeout: float,
        t0: float,
    ) -> TaskResult:
        sb.device_name = await self.devices.create_device(sb.sandbox_id)
        sb.image_path = await self.stager.stage(
            sb.sandbox_id, sb.ip, credential_dir, mounts
        )
        await self.hypervisor.boot(sb)

        log.info(f"Waiting for SSH on {sb.ip}...")
        await self.bridge.await_ready(sb.ip)
        log.info(f"VM {sb.sandbox_id} booted in {_elapsed_ms(t0)}ms")

        log.info(f"Dispatching task to VM {sb.sandbox_id}")
        output, exit_code = await self.bridge.execute(sb.ip, task, timeout)
        files_changed = await self.bridge.collect_changed_paths(sb.ip, mounts)
        await self.bridge.write_back(sb.ip, mounts)

        duration_ms = _elapsed_ms(t0)
        log.info(
            f"VM {sb.sandbox_id} task completed (exit={exit_code}, {duration_ms}ms)"
        )
        return TaskResult(
            output=output,
            files_changed=tuple(files_changed),
            exit_code=exit_code,
            duration_ms=duration_ms,
        )

    # ── Teardown ─────────────────────────────────────────────────────

    async def _release_process(self, sb: Sandbox):
        proc, sb.process = sb.process, None
        if proc is None or not sb.claim_release("process"):
            return
        try:
            await self.hypervisor.terminate(proc)
        except Exception as e:
            log.warning(f"Teardown: could not stop Firecracker for VM {sb.sandbox_id}: {e}")

    async def _release_device(self, sb: Sandbox):
        if not sb.claim_release("device"):
            return
        try:
            await self.devices.destroy_device(sb.device_name)
        except Exception as e:
            log.warning(f"Teardown: could not destroy {sb.device_name}: {e}")

    async def _release_image(self, sb: Sandbox):
        if not sb.claim_release("image"):
            return
        try:
            await self.stager.discard(sb.image_path)
        except Exception as e:
            log.warning(f"Teardown: could not delete {sb.image_path}: {e}")

    async def _release_socket(self, sb: Sandbox):
        if not sb.claim_release("socket"):
            return
        try:
            os.unlink(sb.socket_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"Teardown: could not delete {sb.socket_path}: {e}")

    async def _release_slot(self, sb: Sandbox):
        if not sb.claim_release("slot"):
            return
        if self._sandboxes.get(sb.owner_id) is sb:
            del self._sandboxes[sb.owner_id]
        self.allocator.release(sb.sandbox_id)
        sb._retired.set()
        log.info(f"VM {sb.sandbox_id} cleaned up")

    # ── Observation & control ────────────────────────────────────────

    def list_active_sandboxes(self) -> list[dict]:
        return [
            {
                "owner_id": sb.owner_id,
                "sandbox_id": sb.sandbox_id,
                "ip": sb.ip,
                "started_at": sb.started_at,
                "runtime_ms": sb.runtime_ms(),
            }
            for sb in self._sandboxes.values()
        ]

    async def kill_sandbox(self, owner_id: str) -> bool:
        """Stop the owner's live sandbox and wait until it is fully torn down."""
        sb = self._sandboxes.get(owner_id)
        if sb is None:
            return False
        log.info(f"Killing VM {sb.sandbox_id} ({owner_id})")
        sb.killed = True
        if sb._task is not None and not sb._task.done():
            sb._task.cancel()
        await sb._retired.wait()
        return True

    async def shutdown_all(self):
        # Requests still queued on an owner lock are refused once admitted
        self._closing = True
        live = list(self._sandboxes)
        log.info(f"Cleaning up {len(live)} active VMs...")
        await asyncio.gather(*(self.kill_sandbox(owner) for owner in live))
        log.info("All VMs cleaned up")

    # ── Run log ──────────────────────────────────────────────────────

    def _write_run_log(self, owner_id: str, result: TaskResult):
        now = datetime.now(timezone.utc)
        logs_dir = os.path.join(GROUPS_DIR, owner_id, "logs")
        log_file = os.path.join(
            logs_dir, f"firecracker-{now.strftime('%Y-%m-%dT%H-%M-%S-%fZ')}.log"
        )
        lines = [
            "=== Firecracker VM Run Log ===",
            f"Timestamp: {now.isoformat()}",
            f"Owner: {owner_id}",
            f"Duration: {result.duration_ms}ms",
            f"Exit Code: {result.exit_code}",
            f"Error: {result.error_kind or 'none'}",
            f"Files Changed: {', '.join(result.files_changed) or 'none'}",
            "",
            "=== Output ===",
            result.output[-LOG_TAIL_CHARS:],
        ]
        try:
            os.makedirs(logs_dir, exist_ok=True)
            with open(log_file, "w") as f:
                f.write("\n".join(lines))
        except OSError as e:
            log.warning(f"Could not write run log for {owner_id}: {e}")

    # ── Mount policy ─────────────────────────────────────────────────

    def validate_mounts(
        self, requested: list, owner_name: str, is_privileged: bool
    ) -> list[Mount]:
        """Only mounts the allowlist validator hands back are ever staged."""
        if not requested:
            return []
        if self.mount_validator is None:
            log.warning(
                f"No mount validator configured; dropping {len(requested)} "
                f"requested mount(s) for {owner_name}"
            )
            return []
        as_dicts = [
            {
                "hostPath": m.host_path,
                "containerPath": m.guest_path,
                "readonly": m.read_only,
            }
            if isinstance(m, Mount)
            else dict(m)
            for m in requested
        ]
        approved = self.mount_validator(as_dicts, owner_name, is_privileged)
        return [Mount.coerce(m) for m in approved]

    # ── Agent compatibility layer ────────────────────────────────────

    def build_mounts(
        self,
        owner_id: str,
        is_main: bool,
        additional_mounts: Optional[list] = None,
        owner_name: Optional[str] = None,
    ) -> list[Mount]:
        mounts = []
        if is_main:
            mounts.append(Mount(PROJECT_ROOT, "/mnt/project", read_only=False))

        group_dir = os.path.join(GROUPS_DIR, owner_id)
        os.makedirs(group_dir, exist_ok=True)
        mounts.append(Mount(group_dir, "/workspace/group", read_only=False))

        if not is_main:
            global_dir = os.path.join(GROUPS_DIR, "global")
            if os.path.isdir(global_dir):
                mounts.append(Mount(global_dir, "/workspace/global", read_only=True))

        mounts.extend(
            self.validate_mounts(additional_mounts or [], owner_name or owner_id, is_main)
        )
        return mounts

    async def run_agent(
        self,
        owner_id: str,
        prompt: str,
        is_main: bool = False,
        additional_mounts: Optional[list] = None,
        owner_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Run the guest agent for an owner and map the outcome to a status dict."""
        if not _validate_owner_id(owner_id):
            return {"status": "error", "result": None, "error": f"invalid owner id {owner_id!r}"}
        try:
            mounts = self.build_mounts(owner_id, is_main, additional_mounts, owner_name)
            credential_dir = os.path.join(
                DATA_DIR, "sessions", owner_id, GUEST_CREDENTIALS_NAME
            )
            os.makedirs(credential_dir, exist_ok=True)
        except (OSError, ValueError) as e:
            log.error(f"Agent setup for {owner_id} failed: {e}")
            return {"status": "error", "result": None, "error": f"VM error: {e}"}

        log.info(
            f"Spawning Firecracker VM agent for {owner_name or owner_id} "
            f"({len(mounts)} mounts, main={is_main})"
        )
        result = await self.run_task(owner_id, prompt, mounts, credential_dir, timeout)

        if result.exit_code != 0 and TASK_COMPLETE_MARKER not in result.output:
            log.error(
                f"VM agent error for {owner_id} "
                f"(exit={result.exit_code}, {result.duration_ms}ms)"
            )
            return {
                "status": "error",
                "result": None,
                "error": f"VM exited with code {result.exit_code}: {result.output[-200:]}",
            }

        output = result.output
        marker_idx = output.find(TASK_COMPLETE_MARKER)
        if marker_idx != -1:
            output = output[:marker_idx].strip()
        log.info(
            f"VM agent completed for {owner_id} ({result.duration_ms}ms, "
            f"{len(result.files_changed)} files changed)"
        )
        return {"status": "success", "result": output or None}


def _elapsed_ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)


def _error_result(err: BaseException, t0: float, kind: Optional[str] = None) -> TaskResult:
    return TaskResult(
        output=f"Error: {str(err) or type(err).__name__}",
        files_changed=(),
        exit_code=1,
        duration_ms=_elapsed_ms(t0),
        error_kind=kind or getattr(err, "kind", "internal"),
    )


# ── MCP Server ───────────────────────────────────────────────────────────

manager = SandboxManager(mount_validator=load_mount_validator())


@contextlib.asynccontextmanager
async def _lifespan(server: FastMCP):
    await verify_firecracker_setup(manager.keypair)
    try:
        yield {}
    finally:
        await manager.shutdown_all()


mcp_server = FastMCP(
    "firecracker",
    instructions=(
        "Runs tasks inside ephemeral Firecracker microVMs. Each run_task call boots "
        "a fresh VM for the given owner, copies the requested mounts in, runs the "
        "task, copies writable mounts back and destroys the VM. Only one VM runs per "
        "owner at a time; a second call for the same owner waits for the first. "
        "Use run_agent to run the guest agent with the owner's standard mounts, "
        "status to list live VMs and kill to stop one."
    ),
    lifespan=_lifespan,
)


@mcp_server.tool()
async def run_task(
    owner: str,
    task: str,
    mounts: Optional[list[dict]] = None,
    credential_dir: str = "",
    timeout: float = 0,
) -> str:
    """
    Run a task in a fresh microVM.

    Args:
        owner: Owner id; at most one VM runs per owner at a time.
        task: Task text handed to the guest entry script.
        mounts: Directories to copy in, as {"hostPath", "containerPath", "readonly"}.
            Checked against the mount allowlist before staging.
        credential_dir: Host directory of session credentials to inject (optional).
        timeout: Task timeout in seconds (0 = owner default).

    Returns:
        Task output with exit code, changed files and duration.
    """
    approved = manager.validate_mounts(mounts or [], owner, False)
    result = await manager.run_task(
        owner, task, approved, credential_dir or None, timeout or None
    )
    return _format_result(result)


@mcp_server.tool()
async def run_agent(
    owner: str,
    prompt: str,
    is_main: bool = False,
    additional_mounts: Optional[list[dict]] = None,
) -> str:
    """
    Run the guest agent for an owner with its standard workspace mounts.

    Args:
        owner: Owner id (also the workspace folder name).
        prompt: Prompt for the guest agent.
        is_main: Main owner gets the project root mounted read-write.
        additional_mounts: Extra mounts, subject to the allowlist.

    Returns:
        Agent result, or the error.
    """
    out = await manager.run_agent(owner, prompt, is_main, additional_mounts)
    if out["status"] == "error":
        return f"Error: {out['error']}"
    return out["result"] or "(no output)"


@mcp_server.tool()
async def status() -> str:
    """
    List live microVMs.

    Returns:
        One line per VM: owner, id, address and runtime.
    """
    live = manager.list_active_sandboxes()
    if not live:
        return "No active VMs"
    lines = []
    for info in live:
        lines.append(
            f"{info['owner_id']:16s}  vm {info['sandbox_id']:<3d}  {info['ip']:15s}  "
            f"up {info['runtime_ms'] / 1000:.0f}s"
        )
    return "\n".join(lines)


@mcp_server.tool()
async def kill(owner: str) -> str:
    """
    Stop an owner's running microVM and release all its resources.

    Args:
        owner: Owner id whose VM should be stopped.

    Returns:
        Confirmation or error.
    """
    if await manager.kill_sandbox(owner):
        return f"Killed VM for '{owner}'"
    return f"Error: no active VM for '{owner}'"


# ── Result formatter ─────────────────────────────────────────────────────


def _format_result(result: TaskResult) -> str:
    parts = []
    if result.output:
        parts.append(result.output.rstrip("\n"))
    if result.exit_code != 0:
        parts.append(f"[exit code {result.exit_code}]")
    if result.files_changed:
        parts.append(f"[files changed: {', '.join(result.files_changed)}]")
    parts.append(f"({result.duration_ms}ms)")
    return "\n".join(parts)


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
