"""Centralized command execution.

Every subprocess ServerPilot (or a plugin) starts goes through
:class:`ExecutionEngine`.  Commands are looked up by exact key in a
:class:`CommandRegistry`; callers can only append extra arguments, which are
passed as separate argv elements.  No shell is ever involved.

    "docker:ps"  ->  docker ps -a --format {{json .}}
    "df"         ->  df -B1 /
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Exit codes reported when no real exit status exists.
EXIT_NOT_REGISTERED = 1
EXIT_SPAWN_FAILED = 127
EXIT_TIMEOUT = 124


@dataclass(frozen=True)
class CommandDef:
    """An executable and the arguments that always precede caller arguments."""

    bin: str
    args: tuple[str, ...] = ()

    def argv(self, extra_args: Iterable[str] = ()) -> list[str]:
        return [self.bin, *self.args, *(str(a) for a in extra_args)]


@dataclass(frozen=True)
class ExecResult:
    ok: bool
    stdout: str
    stderr: str
    code: int


# ─── Host command table ─────────────────────────────────────────────────

BUILTIN_COMMANDS: dict[str, CommandDef] = {
    # System info (read-only)
    "cat:proc/stat": CommandDef("cat", ("/proc/stat",)),
    "cat:proc/loadavg": CommandDef("cat", ("/proc/loadavg",)),
    "cat:proc/cpuinfo": CommandDef("cat", ("/proc/cpuinfo",)),
    "cat:proc/uptime": CommandDef("cat", ("/proc/uptime",)),
    "cat:proc/net/dev": CommandDef("cat", ("/proc/net/dev",)),
    "cat:proc/version": CommandDef("cat", ("/proc/version",)),
    "hostname": CommandDef("hostname"),
    "uname": CommandDef("uname"),
    "uptime": CommandDef("uptime"),
    "lscpu": CommandDef("lscpu"),
    "ip:addr": CommandDef("ip", ("addr",)),
    "ip:link": CommandDef("ip", ("-s", "link")),
    "free": CommandDef("free", ("-b",)),
    "df": CommandDef("df", ("-B1", "/")),
    "timedatectl": CommandDef("timedatectl"),
    # Systemd services
    "systemctl:is-active": CommandDef("systemctl", ("is-active",)),
    "systemctl:status": CommandDef("systemctl", ("status",)),
    "systemctl:start": CommandDef("systemctl", ("start",)),
    "systemctl:stop": CommandDef("systemctl", ("stop",)),
    "systemctl:restart": CommandDef("systemctl", ("restart",)),
    # Docker read-only
    "docker:ps": CommandDef("docker", ("ps", "-a", "--format", "{{json .}}")),
    "docker:images": CommandDef("docker", ("images", "--format", "{{json .}}")),
    "docker:volumes": CommandDef("docker", ("volume", "ls", "--format", "{{json .}}")),
    "docker:networks": CommandDef("docker", ("network", "ls", "--format", "{{json .}}")),
    "docker:logs": CommandDef("docker", ("logs",)),
    # Docker container lifecycle
    "docker:start": CommandDef("docker", ("start",)),
    "docker:stop": CommandDef("docker", ("stop",)),
    "docker:restart": CommandDef("docker", ("restart",)),
    "docker:rm": CommandDef("docker", ("rm", "-f")),
    # System configuration
    "hostnamectl:set-hostname": CommandDef("hostnamectl", ("set-hostname",)),
    "timedatectl:set-timezone": CommandDef("timedatectl", ("set-timezone",)),
}

# Keys every plugin may run regardless of its own namespace.  Reads only.
READ_ONLY_KEYS: frozenset[str] = frozenset(
    {
        "cat:proc/stat",
        "cat:proc/loadavg",
        "cat:proc/cpuinfo",
        "cat:proc/uptime",
        "cat:proc/net/dev",
        "cat:proc/version",
        "hostname",
        "uname",
        "uptime",
        "lscpu",
        "free",
        "df",
        "timedatectl",
        "docker:ps",
        "docker:images",
        "docker:volumes",
        "docker:networks",
        "docker:logs",
        "systemctl:is-active",
        "systemctl:status",
    }
)


class CommandRegistry:
    """Exact-key command table: host built-ins plus plugin registrations."""

    def __init__(self, builtins: Mapping[str, CommandDef] | None = None):
        self._builtins = dict(BUILTIN_COMMANDS if builtins is None else builtins)
        self._plugin_commands: dict[str, CommandDef] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CommandDef | None:
        with self._lock:
            return self._builtins.get(key) or self._plugin_commands.get(key)

    def is_builtin(self, key: str) -> bool:
        return key in self._builtins

    def register(self, key: str, definition: CommandDef) -> bool:
        """Add a plugin command.  Built-in keys can never be replaced."""
        if key in self._builtins:
            logger.warning("Refusing to override built-in command '%s'", key)
            return False
        with self._lock:
            self._plugin_commands[key] = definition
        return True

    def unregister(self, key: str) -> None:
        with self._lock:
            self._plugin_commands.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted({*self._builtins, *self._plugin_commands})

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None


def _not_registered(key: str) -> ExecResult:
    return ExecResult(False, "", f"Command not registered: {key}", EXIT_NOT_REGISTERED)


def _spawn_failed(definition: CommandDef, error: OSError) -> ExecResult:
    message = f"Failed to start '{definition.bin}': {error.strerror or error}"
    return ExecResult(False, "", message, EXIT_SPAWN_FAILED)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        data = data.decode(errors="replace")
    return data.strip()


class ExecutionEngine:
    """Run registered commands with an argument vector, never a shell."""

    def __init__(
        self,
        registry: CommandRegistry | None = None,
        sync_timeout: float = 10.0,
        async_timeout: float = 15.0,
    ):
        self.registry = registry if registry is not None else CommandRegistry()
        self.sync_timeout = sync_timeout
        self.async_timeout = async_timeout

    def run_sync(
        self, key: str, extra_args: Iterable[str] = (), timeout: float | None = None
    ) -> ExecResult:
        """Run *key* and block until it exits or *timeout* seconds pass."""
        definition = self.registry.get(key)
        if definition is None:
            return _not_registered(key)

        argv = definition.argv(extra_args)
        timeout = self.sync_timeout if timeout is None else timeout
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Command '%s' timed out after %ss", key, timeout)
            return ExecResult(
                False,
                _decode(e.stdout),
                f"Command '{key}' timed out after {timeout:g}s",
                EXIT_TIMEOUT,
            )
        except OSError as e:
            logger.warning("Command '%s' could not start: %s", key, e)
            return _spawn_failed(definition, e)

        return ExecResult(
            proc.returncode == 0, _decode(proc.stdout), _decode(proc.stderr), proc.returncode
        )

    async def run_async(
        self, key: str, extra_args: Iterable[str] = (), timeout: float | None = None
    ) -> ExecResult:
        """Run *key* without blocking the event loop."""
        definition = self.registry.get(key)
        if definition is None:
            return _not_registered(key)

        argv = definition.argv(extra_args)
        timeout = self.async_timeout if timeout is None else timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Command '%s' could not start: %s", key, e)
            return _spawn_failed(definition, e)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            logger.warning("Command '%s' timed out after %ss", key, timeout)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return ExecResult(
                False, "", f"Command '{key}' timed out after {timeout:g}s", EXIT_TIMEOUT
            )

        code = proc.returncode if proc.returncode is not None else EXIT_SPAWN_FAILED
        return ExecResult(code == 0, _decode(stdout), _decode(stderr), code)
