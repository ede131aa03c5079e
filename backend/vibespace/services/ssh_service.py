# backend/vibespace/services/ssh_service.py
"""
SSH execution layer.

Connections are ephemeral: each command or stream opens its own paramiko
session and closes it when done. paramiko is blocking, so every call is
pushed to a worker thread to keep the event loop free for other builds.
"""
import asyncio
import codecs
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import paramiko

from vibespace.services.errors import PollTimeoutError, SSHConnectionError
from vibespace.utils.callbacks import maybe_await

logger = logging.getLogger(__name__)

DEFAULT_KEY_CANDIDATES = ("~/.ssh/id_ed25519", "~/.ssh/id_ecdsa", "~/.ssh/id_rsa")
PUBLIC_KEY_CANDIDATES = ("~/.ssh/id_ed25519.pub", "~/.ssh/id_rsa.pub", "~/.ssh/id_ecdsa.pub")
READ_CHUNK = 32768

ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Command = Union[str, Sequence[str]]
OutputCallback = Callable[[str, str], Any]


@dataclass
class SSHTarget:
    """Where and as whom to connect."""
    host: str
    port: int = 22
    username: str = "root"
    private_key_path: Optional[str] = None
    password: Optional[str] = None


@dataclass
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def find_public_key() -> Optional[str]:
    """Contents of the first local SSH public key found, or None."""
    for candidate in PUBLIC_KEY_CANDIDATES:
        path = os.path.expanduser(candidate)
        if os.path.isfile(path):
            with open(path) as f:
                if key := f.read().strip():
                    return key
    return None


def build_command(command: Command, working_dir: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> str:
    """Render an argv (or raw shell string) with a working directory and exported env vars."""
    cmd = command if isinstance(command, str) else shlex.join(command)
    parts: List[str] = []
    for name, value in (env or {}).items():
        if not ENV_NAME_RE.match(name):
            raise ValueError(f"Invalid environment variable name: {name!r}")
        parts.append(f"export {name}={shlex.quote(str(value))};")
    if working_dir:
        parts.append(f"cd {shlex.quote(working_dir)} &&")
    parts.append(cmd)
    return " ".join(parts)


class SSHStream:
    """PTY-backed bidirectional byte stream over one SSH channel."""

    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel):
        self._client = client
        self._channel = channel

    @property
    def closed(self) -> bool:
        return self._channel.closed

    async def read(self, size: int = READ_CHUNK) -> bytes:
        """Next chunk of output; b'' once the remote side has closed."""
        return await asyncio.to_thread(self._channel.recv, size)

    async def write(self, data: Union[str, bytes]) -> None:
        if isinstance(data, str):
            data = data.encode()
        await asyncio.to_thread(self._channel.sendall, data)

    async def resize(self, cols: int, rows: int) -> None:
        await asyncio.to_thread(self._channel.resize_pty, width=cols, height=rows)

    async def close(self) -> None:
        self._channel.close()
        self._client.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk

    async def __aenter__(self) -> "SSHStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class SSHService:
    """Runs commands and opens interactive streams over SSH."""

    def __init__(self, private_key_path: Optional[str] = None, connect_timeout: float = 30.0):
        self.private_key_path = private_key_path
        self.connect_timeout = connect_timeout

    def resolve_private_key(self, explicit: Optional[str] = None) -> Optional[str]:
        """First existing key: explicit, configured, then ed25519 / ecdsa / rsa defaults."""
        for candidate in (explicit, self.private_key_path, *DEFAULT_KEY_CANDIDATES):
            if candidate and os.path.isfile(os.path.expanduser(candidate)):
                return os.path.expanduser(candidate)
        return None

    def _connect(self, target: SSHTarget) -> paramiko.SSHClient:
        kwargs: Dict[str, Any] = {
            "hostname": target.host,
            "port": target.port,
            "username": target.username,
            "timeout": self.connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if key_path := self.resolve_private_key(target.private_key_path):
            kwargs["key_filename"] = key_path
        elif target.password:
            kwargs["password"] = target.password
        else:
            raise SSHConnectionError("No SSH private key found and no password provided")

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(**kwargs)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise SSHConnectionError(
                f"SSH connection to {target.username}@{target.host}:{target.port} failed: {e}"
            ) from e
        return client

    def _execute_blocking(
        self,
        target: SSHTarget,
        command: str,
        stdin: Optional[str],
        emit: Optional[Callable[[str, str], None]],
        timeout: Optional[float],
    ) -> ExecResult:
        client = self._connect(target)
        try:
            channel = client.get_transport().open_session()
            channel.exec_command(command)
            if stdin is not None:
                channel.sendall(stdin.encode())
                channel.shutdown_write()

            decoders = {
                "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
                "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            }
            output: Dict[str, List[str]] = {"stdout": [], "stderr": []}

            def collect(kind: str, raw: bytes) -> None:
                text = decoders[kind].decode(raw)
                if text:
                    output[kind].append(text)
                    if emit:
                        emit(kind, text)

            start = time.monotonic()
            while True:
                progressed = False
                if channel.recv_ready():
                    collect("stdout", channel.recv(READ_CHUNK))
                    progressed = True
                if channel.recv_stderr_ready():
                    collect("stderr", channel.recv_stderr(READ_CHUNK))
                    progressed = True
                if progressed:
                    continue
                if channel.exit_status_ready():
                    break
                elapsed = time.monotonic() - start
                if timeout is not None and elapsed > timeout:
                    channel.close()
                    raise PollTimeoutError(f"command on {target.host}", elapsed)
                time.sleep(0.05)

            exit_code = channel.recv_exit_status()
            while channel.recv_ready():
                collect("stdout", channel.recv(READ_CHUNK))
            while channel.recv_stderr_ready():
                collect("stderr", channel.recv_stderr(READ_CHUNK))
            for kind in ("stdout", "stderr"):
                tail = decoders[kind].decode(b"", final=True)
                if tail:
                    output[kind].append(tail)
            return ExecResult(
                exit_code=exit_code,
                stdout="".join(output["stdout"]),
                stderr="".join(output["stderr"]),
            )
        finally:
            client.close()

    async def execute(
        self,
        target: SSHTarget,
        command: Command,
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        stdin: Optional[str] = None,
        on_output: Optional[OutputCallback] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """
        Run a command and capture its output.

        Args:
            target: Connection descriptor
            command: argv list, or a raw shell string
            working_dir: Directory to cd into first
            env: Extra environment variables, exported before the command
            stdin: Text written to the command's stdin, then EOF
            on_output: Called with (stream_kind, text) as output arrives
            timeout: Seconds before the command is abandoned

        Returns:
            ExecResult with exit code, stdout and stderr. A non-zero exit is
            not an exception here; callers decide.
        """
        full_command = build_command(command, working_dir, env)
        logger.debug(f"SSH {target.username}@{target.host}: {full_command[:200]}")

        if on_output is None:
            return await asyncio.to_thread(self._execute_blocking, target, full_command, stdin, None, timeout)

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def emit(kind: str, text: str) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, (kind, text))

        def run() -> ExecResult:
            try:
                return self._execute_blocking(target, full_command, stdin, emit, timeout)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        task = asyncio.ensure_future(asyncio.to_thread(run))
        try:
            while (item := await queue.get()) is not None:
                await maybe_await(on_output(*item))
        finally:
            # the worker thread cannot be interrupted; wait for it to close its connection
            await asyncio.gather(task, return_exceptions=True)
        return task.result()

    async def run_script(
        self,
        target: SSHTarget,
        script: str,
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[OutputCallback] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Feed a bash script through stdin (``bash -s``)."""
        return await self.execute(
            target, ["bash", "-s"], working_dir="/", env=env, stdin=script, on_output=on_output, timeout=timeout
        )

    async def wait_for_ssh(self, target: SSHTarget, attempts: int = 30, interval: float = 2) -> None:
        """Retry ``echo ready`` until the host accepts SSH."""
        start = time.monotonic()
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                result = await self.execute(target, ["echo", "ready"], timeout=10)
                if result.ok and "ready" in result.stdout:
                    logger.info(f"SSH ready on {target.host} after {attempt} attempt(s)")
                    return
            except (SSHConnectionError, PollTimeoutError) as e:
                last_error = e
                logger.debug(f"SSH not ready on {target.host} (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                await asyncio.sleep(interval)
        detail = str(last_error) if last_error else "probe did not answer"
        raise PollTimeoutError(f"SSH on {target.host}", time.monotonic() - start, detail)

    def _open_stream_blocking(self, target: SSHTarget, command: str, cols: int, rows: int) -> SSHStream:
        client = self._connect(target)
        try:
            channel = client.get_transport().open_session()
            channel.get_pty(term="xterm-256color", width=cols, height=rows)
            channel.exec_command(command)
        except paramiko.SSHException as e:
            client.close()
            raise SSHConnectionError(f"Could not open stream on {target.host}: {e}") from e
        return SSHStream(client, channel)

    async def open_stream(
        self,
        target: SSHTarget,
        command: Optional[Command] = None,
        cols: int = 80,
        rows: int = 24,
        working_dir: Optional[str] = "/workspace",
        env: Optional[Dict[str, str]] = None,
    ) -> SSHStream:
        """Open an interactive PTY session running ``command`` (a login shell by default)."""
        full_command = build_command(command or ["/bin/bash", "-l"], working_dir, env)
        return await asyncio.to_thread(self._open_stream_blocking, target, full_command, cols, rows)

    # --- Hypervisor host helpers (pct) ---

    async def pct_exec(
        self,
        host: SSHTarget,
        vmid: int,
        script: str,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Run a script inside a container through ``pct exec`` on the hypervisor host."""
        return await self.execute(
            host, ["pct", "exec", str(vmid), "--", "bash", "-s"], stdin=script, timeout=timeout
        )

    async def trigger_dhcp(self, host: SSHTarget, vmid: int, interface: str = "eth0") -> None:
        result = await self.pct_exec(host, vmid, f"dhclient {shlex.quote(interface)}", timeout=30)
        if not result.ok:
            logger.warning(f"dhclient in container {vmid} exited {result.exit_code}: {result.stderr.strip()}")

    async def push_authorized_key(self, host: SSHTarget, vmid: int, public_key: str) -> None:
        """Append a public key to root's authorized_keys inside a container."""
        script = (
            "mkdir -p /root/.ssh && chmod 700 /root/.ssh\n"
            f"grep -qxF {shlex.quote(public_key)} /root/.ssh/authorized_keys 2>/dev/null"
            f" || echo {shlex.quote(public_key)} >> /root/.ssh/authorized_keys\n"
            "chmod 600 /root/.ssh/authorized_keys\n"
        )
        result = await self.pct_exec(host, vmid, script, timeout=30)
        if not result.ok:
            raise SSHConnectionError(f"Could not install SSH key in container {vmid}: {result.stderr.strip()}")
