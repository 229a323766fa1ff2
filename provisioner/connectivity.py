# provisioner/connectivity.py
"""
Reachability checks for freshly launched instances.

A port check tries several independent mechanisms in order, so a missing tool
or a sandbox that forbids one kind of socket does not read as "port closed".
Each mechanism answers True/False, or raises ``ProbeError`` when it could not
run at all.
"""
import logging
import socket
import subprocess
from dataclasses import dataclass, field

import paramiko

from provisioner.utils import SSHClient, DEFAULT_SSH_USER

log = logging.getLogger(__name__)

PING_REACHABLE = "reachable"
PING_UNKNOWN = "unknown"


class ProbeError(Exception):
    """A probe mechanism could not be executed."""


@dataclass
class ProbeResult:
    """
    ``ok`` is the answer; ``error`` is set only when no mechanism could run,
    which callers treat as a hard failure instead of "not ready yet".
    """

    ok: bool
    error: str | None = None
    strategy: str | None = None
    attempts: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class RemoteCommandResult:
    output: str
    error: str | None = None
    returncode: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def tcp_connect(host, port, timeout):
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except PermissionError as e:
        raise ProbeError(f"socket connect not permitted: {e}")
    except (socket.timeout, OSError):
        return False
    sock.close()
    return True


def ssh_handshake(host, port, timeout):
    """Open a transport and complete the SSH protocol handshake."""
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except PermissionError as e:
        raise ProbeError(f"socket connect not permitted: {e}")
    except (socket.timeout, OSError):
        return False

    transport = paramiko.Transport(sock)
    try:
        transport.banner_timeout = timeout
        transport.start_client(timeout=timeout)
        log.debug("SSH banner from %s:%s: %s", host, port, transport.remote_version)
        return True
    except (paramiko.SSHException, EOFError, OSError):
        return False
    finally:
        transport.close()


def netcat(host, port, timeout):
    try:
        result = subprocess.run(
            ["nc", "-z", "-w", str(int(timeout)), host, str(port)],
            capture_output=True,
            text=True,
            timeout=timeout + 5,
        )
    except FileNotFoundError:
        raise ProbeError("nc not installed")
    except subprocess.TimeoutExpired:
        return False
    return result.returncode == 0


DEFAULT_STRATEGIES = (
    ("tcp", tcp_connect),
    ("ssh-handshake", ssh_handshake),
    ("netcat", netcat),
)


class ConnectivityProbe:
    def __init__(self, strategies=DEFAULT_STRATEGIES, ssh_user: str = DEFAULT_SSH_USER):
        self.strategies = list(strategies)
        self.ssh_user = ssh_user

    def check_port(self, host: str, port: int = 22, timeout: float = 5) -> ProbeResult:
        """Try each strategy in order; the first success wins."""
        if not host:
            return ProbeResult(ok=False, error="no host given")

        attempts = []
        errors = []
        for name, strategy in self.strategies:
            try:
                if strategy(host, port, timeout):
                    attempts.append(f"{name}: open")
                    return ProbeResult(ok=True, strategy=name, attempts=attempts)
                attempts.append(f"{name}: closed")
            except ProbeError as e:
                attempts.append(f"{name}: unavailable ({e})")
                errors.append(f"{name}: {e}")

        if errors and len(errors) == len(self.strategies):
            return ProbeResult(ok=False, error="; ".join(errors), attempts=attempts)
        return ProbeResult(ok=False, attempts=attempts)

    def is_port_open(self, host: str, port: int = 22, timeout: float = 5) -> bool:
        return self.check_port(host, port, timeout).ok

    def run_remote_command(
        self,
        host: str,
        key_path: str,
        command: str,
        user: str | None = None,
        timeout: int = 30,
    ) -> RemoteCommandResult:
        """Single attempt at running ``command`` on ``host``; never retries."""
        client = SSHClient(host, key_path=key_path, user=user or self.ssh_user, timeout=timeout)
        try:
            result = client.run_command(command)
        except RuntimeError as e:
            return RemoteCommandResult(output="", error=str(e))
        return RemoteCommandResult(output=result.stdout or "", returncode=result.returncode)

    def ping(self, host: str, timeout: int = 2) -> str:
        """
        One ICMP echo. Many networks drop ICMP, so anything but a reply is
        reported as unknown rather than unreachable.
        """
        try:
            result = subprocess.run(
                ["ping", "-c", "1", "-W", str(timeout), host],
                capture_output=True,
                text=True,
                timeout=timeout + 5,
            )
        except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired) as e:
            log.info("Ping of %s inconclusive: %s", host, e)
            return PING_UNKNOWN
        if result.returncode == 0:
            return PING_REACHABLE
        log.info("Ping of %s got no reply (ICMP may be blocked)", host)
        return PING_UNKNOWN
