# provisioner/utils.py
import logging
import subprocess

log = logging.getLogger(__name__)

DEFAULT_SSH_USER = "ec2-user"


def best_effort(label, fn, *args, **kwargs):
    """
    Run ``fn`` and log instead of raising on failure.

    Used for side effects that must never decide the outcome of the calling
    operation (billing hooks, config backfill, diagnostics).
    """
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        log.warning("%s failed (non-fatal): %s", label, e)
        return None


class SSHClient:
    """
    SSH client for remote command execution on newly provisioned instances.
    Uses subprocess with the ssh command; one process per command.

    Host keys are neither checked nor recorded: instances are brand new and
    have no known host key yet (first-contact trust).
    """

    def __init__(
        self,
        host: str,
        key_path: str,
        user: str = DEFAULT_SSH_USER,
        port: int = 22,
        connect_timeout: int = 10,
        timeout: int = 30,
    ):
        """
        Args:
            host: public DNS name or IP of the instance
            key_path: path to the private key file (mode 0600)
            user: login account (default: ec2-user)
            port: SSH port (default: 22)
            connect_timeout: ssh ConnectTimeout in seconds
            timeout: overall command timeout in seconds
        """
        self.host = host
        self.key_path = key_path
        self.user = user
        self.port = port
        self.connect_timeout = connect_timeout
        self.timeout = timeout

    def build_command(self, command: str) -> list[str]:
        ssh_options = [
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "BatchMode=yes",
            "-o", "LogLevel=ERROR",
            "-i", self.key_path,
            "-p", str(self.port),
        ]
        return ["ssh", *ssh_options, f"{self.user}@{self.host}", command]

    def run_command(self, command: str, check: bool = True) -> subprocess.CompletedProcess:
        """
        Execute a remote command once.

        Raises RuntimeError when ssh is missing, times out, or (with ``check``)
        exits non-zero.
        """
        ssh_cmd = self.build_command(command)
        log.debug("Executing SSH command on %s@%s: %s", self.user, self.host, command)

        try:
            result = subprocess.run(
                ssh_cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"SSH command timed out after {self.timeout} seconds")
        except FileNotFoundError:
            raise RuntimeError("SSH command not found. Ensure OpenSSH client is installed.")

        if result.returncode != 0 and check:
            error_msg = result.stderr.strip() if result.stderr else "Unknown error"
            raise RuntimeError(f"SSH command failed (exit code {result.returncode}): {error_msg}")

        if result.stdout:
            log.debug("Command output: %s", result.stdout[:200])
        return result
