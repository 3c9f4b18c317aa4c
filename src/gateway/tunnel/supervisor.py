"""cloudflared tunnel process supervision.

Runs cloudflared as an async subprocess and tracks it through an
explicit state machine. A dedicated reader task consumes the merged
stdout/stderr line by line and advances the state when the readiness
marker appears:

- persistent mode: "Registered tunnel connection"; the public URL is the
  first ingress hostname of the cloudflared config file.
- quick mode: the first https://<random>.trycloudflare.com URL printed.

start() waits a bounded time for readiness. On timeout it returns None
and the state stays starting; callers poll status(). An unexpected exit
moves the supervisor to failed and nothing restarts the process.

Source:
- src/gateway/tunnel/models.py (TunnelState, TunnelStatus)
- src/gateway/notifications/emitter.py (NotificationEmitter)
"""

import asyncio
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import yaml

from src.gateway.notifications.emitter import NotificationEmitter, NullNotificationEmitter
from src.gateway.notifications.models import Notification, NotificationType
from src.gateway.tunnel.models import (
    TunnelMode,
    TunnelProcessError,
    TunnelState,
    TunnelStatus,
)

logger = logging.getLogger(__name__)


READY_MARKER = "Registered tunnel connection"
QUICK_URL_PATTERN = re.compile(r"https://(?!api\.)[-a-z0-9]+\.trycloudflare\.com")


def read_config_hostname(config_path: Path) -> str:
    """Return the first ingress hostname of a cloudflared config file.

    Raises:
        TunnelProcessError: If the file cannot be read or has no
            ingress rule with a hostname.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise TunnelProcessError(f"Cannot read tunnel config {config_path}: {e}") from e

    ingress = config.get("ingress") if isinstance(config, dict) else None
    for rule in ingress or []:
        if isinstance(rule, dict) and rule.get("hostname"):
            return str(rule["hostname"])

    raise TunnelProcessError(f"No ingress hostname in tunnel config {config_path}")


class TunnelSupervisor:
    """Manages the lifecycle of one cloudflared process.

    Attributes:
        cloudflared_path: cloudflared executable.
        local_base_url: Local gateway address exposed by quick tunnels.
        config_path: cloudflared config file for persistent tunnels.
        tunnel_name: Optional named tunnel passed to `cloudflared tunnel run`.
        ready_timeout: Seconds start() waits for readiness.
        stop_timeout: Seconds stop() waits after terminate before kill.
    """

    def __init__(
        self,
        cloudflared_path: str,
        local_base_url: str,
        config_path: str,
        tunnel_name: Optional[str] = None,
        ready_timeout: float = 15.0,
        stop_timeout: float = 5.0,
        emitter: Optional[NotificationEmitter] = None,
    ):
        self.cloudflared_path = cloudflared_path
        self.local_base_url = local_base_url
        self.config_path = Path(config_path).expanduser()
        self.tunnel_name = tunnel_name
        self.ready_timeout = ready_timeout
        self.stop_timeout = stop_timeout
        self.emitter = emitter or NullNotificationEmitter()

        self._state_lock = threading.Lock()
        self._start_lock = asyncio.Lock()
        self._status = TunnelStatus(state=TunnelState.STOPPED)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    @property
    def is_active(self) -> bool:
        return self.status().is_active

    @property
    def public_url(self) -> Optional[str]:
        return self.status().public_url

    @property
    def state(self) -> TunnelState:
        return self.status().state

    def status(self) -> TunnelStatus:
        with self._state_lock:
            return self._status

    async def start(self, mode: TunnelMode = TunnelMode.PERSISTENT) -> Optional[str]:
        """Start the tunnel, or join a start already in progress.

        Args:
            mode: Persistent (config file) or quick (trycloudflare.com).

        Returns:
            The public URL once active, or None if the tunnel failed or
            did not become ready within ready_timeout.
        """
        async with self._start_lock:
            current = self.status()
            if current.state == TunnelState.ACTIVE:
                return current.public_url
            if current.state != TunnelState.STARTING:
                await self._spawn(TunnelMode(mode))
            ready = self._ready

        try:
            await asyncio.wait_for(ready.wait(), timeout=self.ready_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Tunnel not ready after %.1fs, still starting",
                self.ready_timeout,
            )
            return None

        return self.public_url

    async def start_quick(self) -> Optional[str]:
        return await self.start(TunnelMode.QUICK)

    async def stop(self) -> None:
        """Stop the tunnel process and return to stopped."""
        async with self._start_lock:
            process, reader = self._process, self._reader_task
            self._process = None
            self._reader_task = None

            if process is not None and process.returncode is None:
                await self._terminate(process)

            if reader is not None and not reader.done():
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass

            if self.state != TunnelState.STOPPED:
                await self._set_status(TunnelState.STOPPED)
            self._ready.set()

    async def close(self) -> None:
        await self.stop()

    def _build_command(self, mode: TunnelMode) -> List[str]:
        if mode == TunnelMode.QUICK:
            return [
                self.cloudflared_path,
                "tunnel",
                "--no-autoupdate",
                "--url",
                self.local_base_url,
            ]
        command = [
            self.cloudflared_path,
            "tunnel",
            "--no-autoupdate",
            "--config",
            str(self.config_path),
            "run",
        ]
        if self.tunnel_name:
            command.append(self.tunnel_name)
        return command

    async def _spawn(self, mode: TunnelMode) -> None:
        self._ready = asyncio.Event()

        expected_url = None
        try:
            if mode == TunnelMode.PERSISTENT:
                if not self.config_path.is_file():
                    raise TunnelProcessError(
                        f"Tunnel config not found: {self.config_path}"
                    )
                expected_url = f"https://{read_config_hostname(self.config_path)}"

            command = self._build_command(mode)
            await self._set_status(TunnelState.STARTING, mode=mode)
            logger.info(
                "Starting cloudflared",
                extra={"mode": mode.value, "command": " ".join(command)},
            )
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except TunnelProcessError as e:
            await self._fail(str(e), mode)
            return
        except OSError as e:
            await self._fail(f"Failed to start cloudflared: {e}", mode)
            return

        self._process = process
        with self._state_lock:
            self._status = TunnelStatus(
                state=self._status.state,
                mode=mode,
                pid=process.pid,
                changed_at=self._status.changed_at,
            )
        self._reader_task = asyncio.create_task(
            self._read_output(process, mode, expected_url)
        )

    async def _read_output(
        self,
        process: asyncio.subprocess.Process,
        mode: TunnelMode,
        expected_url: Optional[str],
    ) -> None:
        async for line in self._read_stream(process.stdout):
            logger.debug("cloudflared: %s", line)
            if self.state != TunnelState.STARTING:
                continue
            url = self._detect_ready(line, mode, expected_url)
            if url:
                await self._set_status(
                    TunnelState.ACTIVE, mode=mode, public_url=url, pid=process.pid
                )
                self._ready.set()

        exit_code = await process.wait()
        if process is not self._process:
            # stop() already took ownership
            return

        self._process = None
        await self._fail(f"cloudflared exited unexpectedly with code {exit_code}", mode)

    def _detect_ready(
        self,
        line: str,
        mode: TunnelMode,
        expected_url: Optional[str],
    ) -> Optional[str]:
        if mode == TunnelMode.QUICK:
            match = QUICK_URL_PATTERN.search(line)
            return match.group(0) if match else None
        if READY_MARKER in line:
            return expected_url
        return None

    async def _read_stream(self, stream: Optional[asyncio.StreamReader]):
        if stream is None:
            return

        while True:
            raw_line = await stream.readline()
            if not raw_line:
                break
            yield raw_line.decode("utf-8", errors="replace").rstrip("\n")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "cloudflared did not exit after %.1fs, killing",
                self.stop_timeout,
            )
            process.kill()
            await process.wait()

    async def _fail(self, error: str, mode: TunnelMode) -> None:
        logger.error("Tunnel failed: %s", error, extra={"mode": mode.value})
        await self._set_status(TunnelState.FAILED, mode=mode, error=error)
        self._ready.set()

    async def _set_status(
        self,
        state: TunnelState,
        mode: Optional[TunnelMode] = None,
        public_url: Optional[str] = None,
        error: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> None:
        with self._state_lock:
            previous = self._status.state
            self._status = TunnelStatus(
                state=state,
                mode=mode,
                public_url=public_url,
                error=error,
                pid=pid,
                changed_at=datetime.now(timezone.utc),
            )

        if previous != state:
            logger.info(
                "Tunnel state changed: %s -> %s",
                previous.value,
                state.value,
                extra={"public_url": public_url},
            )
        await self.emitter.emit(
            Notification(
                type=NotificationType.TUNNEL_STATE_CHANGED,
                subject_id="tunnel",
                details={
                    "from_state": previous.value,
                    "to_state": state.value,
                    "public_url": public_url,
                    "error": error,
                },
            )
        )
