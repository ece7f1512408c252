"""
Docker sandbox lifecycle.

Each session gets a private, locked-down container that stays alive with
`sleep infinity`; the assistant process is started inside it separately by the
terminal bridge. The user's workspace directory is bind-mounted at /workspace
and the backend credential is injected through a short-lived env file so it
never appears in the host process table.

Containers are named claudebox-<session_id[:12]> and labelled app=claudebox so
orphans left by a crashed broker can be reconciled on the next start.
"""

import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from claudebox.lib.errors import ErrorCode, ProvisioningError

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "app=claudebox"
CONTAINER_PREFIX = "claudebox-"
WORKSPACE_MOUNT = "/workspace"

# Seconds allowed for `docker run -d` to return a container id
START_TIMEOUT = 60.0

_NOT_FOUND_MARKERS = ("No such container", "is not running")


@dataclass(frozen=True)
class SandboxHandle:
    """A running sandbox container."""

    name: str
    container_id: str
    session_id: str
    workspace: Path

    @property
    def target(self) -> str:
        """Identifier to address the container with."""
        return self.container_id or self.name


@dataclass
class SandboxConfig:
    """Resource and lifecycle limits for sandbox containers."""

    image: str = "claude-env"
    memory: str = "1g"
    cpus: str = "1.0"
    pids_limit: int = 256
    network_enabled: bool = True
    stop_timeout: int = 10
    kill_timeout: float = 5.0


def container_name(session_id: str) -> str:
    """Container name for a session."""
    return f"{CONTAINER_PREFIX}{session_id[:12]}"


def _is_not_found(stderr: str) -> bool:
    return any(marker in stderr for marker in _NOT_FOUND_MARKERS)


class DockerSandbox:
    """Manages one Docker container per session."""

    # Re-check Docker availability every 60 seconds
    _CACHE_TTL = 60

    def __init__(self, config: SandboxConfig, api_key: str | None = None):
        self.config = config
        self.api_key = api_key
        self._docker_available: bool | None = None
        self._checked_at: float = 0

    @classmethod
    def from_settings(cls, settings) -> "DockerSandbox":
        config = SandboxConfig(
            image=settings.sandbox_image,
            memory=settings.sandbox_memory,
            cpus=settings.sandbox_cpus,
            pids_limit=settings.sandbox_pids_limit,
            network_enabled=settings.sandbox_network_enabled,
            stop_timeout=settings.sandbox_stop_timeout,
            kill_timeout=settings.sandbox_kill_timeout,
        )
        return cls(config, api_key=settings.anthropic_api_key)

    async def _docker(self, *args: str, timeout: float) -> tuple[int, str, str]:
        """Run a docker CLI command, killing it if it exceeds the timeout.

        Returns (returncode, stdout, stderr). A timeout yields returncode -1.
        """
        proc = await asyncio.create_subprocess_exec(
            "docker", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
            return -1, "", f"docker {args[0]} timed out after {timeout}s"
        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def is_available(self) -> bool:
        """Check if Docker is installed and running (cached with TTL)."""
        if (self._docker_available is not None
                and (time.time() - self._checked_at) < self._CACHE_TTL):
            return self._docker_available

        if not shutil.which("docker"):
            logger.warning("Docker not found in PATH")
            self._docker_available = False
            self._checked_at = time.time()
            return False

        try:
            returncode, _, _ = await self._docker("info", timeout=5.0)
            self._docker_available = returncode == 0
            self._checked_at = time.time()
            if not self._docker_available:
                logger.warning("Docker daemon not running")
            return self._docker_available
        except OSError:
            logger.warning("Docker check failed")
            self._docker_available = False
            self._checked_at = time.time()
            return False

    async def image_exists(self) -> bool:
        """Check if the sandbox image is available locally."""
        if not await self.is_available():
            return False
        try:
            returncode, _, _ = await self._docker(
                "image", "inspect", self.config.image, timeout=10.0
            )
            return returncode == 0
        except OSError:
            return False

    def _build_run_args(
        self,
        session_id: str,
        user_id: str,
        workspace: Path,
        env_file: str,
    ) -> list[str]:
        """Build the docker run arguments for a session container."""
        # Session ids end up in the container name
        if not re.match(r"^[a-zA-Z0-9_-]+$", session_id):
            raise ProvisioningError(
                f"Invalid session id format: {session_id[:20]}", session_id=session_id
            )

        config = self.config
        args = [
            "run", "-d",
            "--init",  # tini as PID 1, reaps zombies and forwards signals
            "--pull", "never",
            "--name", container_name(session_id),
            "--memory", config.memory,
            "--memory-swap", config.memory,  # no swap
            "--cpus", config.cpus,
            "--pids-limit", str(config.pids_limit),
            # Security hardening
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--tmpfs", "/tmp:size=256m",
            "--label", SANDBOX_LABEL,
            "--label", f"session_id={session_id}",
            "--label", f"user_id={user_id}",
            "-v", f"{workspace}:{WORKSPACE_MOUNT}:rw",
            "-w", WORKSPACE_MOUNT,
            "--env-file", env_file,
        ]

        if not config.network_enabled:
            args.extend(["--network", "none"])

        args.extend([config.image, "sleep", "infinity"])
        return args

    def _write_env_file(self, session_id: str) -> str:
        """Write the container environment to a private temp file."""
        env_lines = [f"CLAUDEBOX_SESSION_ID={session_id}"]
        if self.api_key:
            env_lines.append(f"ANTHROPIC_API_KEY={self.api_key}")
        else:
            logger.warning("No backend API key configured; the assistant will fail auth")

        fd, path = tempfile.mkstemp(suffix=".env", prefix="claudebox-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write("\n".join(env_lines) + "\n")
            os.chmod(path, 0o600)
        except OSError:
            os.unlink(path)
            raise
        return path

    async def start(self, session_id: str, user_id: str, workspace: Path) -> SandboxHandle:
        """Provision a sandbox container for a session.

        Raises ProvisioningError with a readable reason on any failure.
        """
        if not await self.is_available():
            raise ProvisioningError(
                "Docker is not available on the broker host",
                code=ErrorCode.DOCKER_UNAVAILABLE,
                session_id=session_id,
            )

        try:
            workspace.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningError(
                f"Failed to prepare workspace: {e.strerror or e}", session_id=session_id
            ) from e

        env_file = None
        try:
            env_file = self._write_env_file(session_id)
            args = self._build_run_args(session_id, user_id, workspace, env_file)
            returncode, stdout, stderr = await self._docker(*args, timeout=START_TIMEOUT)
        except OSError as e:
            logger.error(f"Failed to launch docker for {session_id[:8]}: {e}")
            raise ProvisioningError(f"Failed to start sandbox: {e}", session_id=session_id) from e
        finally:
            # docker run has read the env file once it returns
            if env_file:
                try:
                    os.unlink(env_file)
                except OSError:
                    pass

        name = container_name(session_id)
        if returncode != 0:
            reason = self._describe_run_failure(stderr)
            logger.error(f"Sandbox {name} failed to start: {stderr.strip()}")
            # A timed-out run may still have created the container
            await self._remove_container(name)
            raise ProvisioningError(f"Failed to start sandbox: {reason}", session_id=session_id)

        container_id = stdout.strip().splitlines()[-1] if stdout.strip() else ""
        logger.info(f"Started sandbox {name} ({container_id[:12]}) for user {user_id}")
        return SandboxHandle(
            name=name,
            container_id=container_id,
            session_id=session_id,
            workspace=workspace,
        )

    def _describe_run_failure(self, stderr: str) -> str:
        """Turn docker run stderr into a short reason."""
        if "No such image" in stderr or "Unable to find image" in stderr:
            return f"image '{self.config.image}' not found"
        if "Conflict" in stderr and "already in use" in stderr:
            return "a container for this session already exists"
        if "mount" in stderr.lower() or "bind source path" in stderr:
            return "workspace mount failed"
        if "memory" in stderr.lower() or "resources" in stderr.lower():
            return "insufficient resources"
        lines = [line for line in stderr.strip().splitlines() if line.strip()]
        return lines[-1] if lines else "unknown docker error"

    async def stop(self, handle: SandboxHandle) -> bool:
        """Stop and remove a sandbox.

        Idempotent: a container that is already gone counts as stopped.
        Bounded: a graceful stop is followed by a force-remove, each with its
        own timeout. Returns False only if the container could not be removed.
        """
        await self._stop_container(handle.name)
        removed = await self._remove_container(handle.name)
        if removed:
            logger.info(f"Stopped sandbox {handle.name}")
        return removed

    async def _stop_container(self, name: str) -> None:
        """Stop a running container with the configured grace period."""
        grace = self.config.stop_timeout
        try:
            returncode, _, stderr = await self._docker(
                "stop", "-t", str(grace), name, timeout=grace + 5
            )
        except OSError as e:
            logger.warning(f"docker stop {name} failed to run: {e}")
            return
        if returncode != 0 and not _is_not_found(stderr):
            logger.warning(f"docker stop {name} failed: {stderr.strip()}")

    async def _remove_container(self, name: str) -> bool:
        """Force-remove a container. Missing containers count as removed."""
        try:
            returncode, _, stderr = await self._docker(
                "rm", "-f", name, timeout=self.config.kill_timeout
            )
        except OSError as e:
            logger.warning(f"docker rm {name} failed to run: {e}")
            return False
        if returncode == 0 or _is_not_found(stderr):
            return True
        logger.warning(f"docker rm -f {name} failed: {stderr.strip()}")
        return False

    async def inspect(self, handle: SandboxHandle) -> str | None:
        """Get container status via docker inspect. Returns None if not found."""
        try:
            returncode, stdout, _ = await self._docker(
                "inspect", "-f", "{{.State.Status}}", handle.target, timeout=10.0
            )
        except OSError:
            return None
        if returncode != 0:
            return None
        return stdout.strip()

    async def reconcile(self, active_session_ids: set[str] | None = None) -> int:
        """Remove claudebox containers that no active session owns.

        Run at server startup, when no session is active yet, to clean up
        sandboxes orphaned by a previous crash. Returns the number removed.
        """
        if not await self.is_available():
            return 0

        active = active_session_ids or set()
        returncode, stdout, _ = await self._docker(
            "ps", "-a",
            "--filter", f"label={SANDBOX_LABEL}",
            "--format", "{{json .}}",
            timeout=15.0,
        )
        if returncode != 0:
            logger.warning("Failed to list claudebox containers for reconcile")
            return 0

        orphans: list[str] = []
        for line in stdout.strip().split("\n"):
            if not line:
                continue
            try:
                container = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse container JSON: {line[:100]}")
                continue
            name = container.get("Names", "")
            if not name.startswith(CONTAINER_PREFIX):
                continue
            prefix = name[len(CONTAINER_PREFIX):]
            if not any(sid.startswith(prefix) for sid in active):
                orphans.append(name)

        if not orphans:
            return 0

        results = await asyncio.gather(
            *[self._remove_container(name) for name in orphans],
            return_exceptions=True,
        )
        removed = sum(1 for r in results if r is True)
        logger.info(f"Removed {removed}/{len(orphans)} orphaned sandbox container(s)")
        return removed

    def health_info(self) -> dict:
        """Return Docker health info for the detailed health endpoint."""
        return {
            "available": self._docker_available,
            "image": self.config.image,
        }
