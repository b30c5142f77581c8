"""Tutor platform control: stop/start services, exec into containers."""

from typing import List

from .._utils import logger
from ..config import TutorConfig
from ..exceptions import CommandError, ExportError
from .process import CommandResult, run_command


class TutorServices:
    """Thin wrapper over `tutor local` and the docker compose project behind it."""

    def __init__(self, config: TutorConfig):
        self.config = config

    def tutor(self, *args: str) -> List[str]:
        return [self.config.tutor_bin, "local", *args]

    def compose(self, *args: str) -> List[str]:
        cmd = ["docker", "compose"]
        for compose_file in self.config.compose_files:
            cmd += ["-f", compose_file]
        cmd += ["--project-name", self.config.compose_project]
        return cmd + list(args)

    def exec_in(self, service: str, *args: str) -> List[str]:
        """`tutor local exec` without a TTY, so stdin/stdout stay binary-safe."""
        cmd = self.tutor("exec")
        if self.config.no_tty_flag:
            cmd.append(self.config.no_tty_flag)
        return cmd + [service, *args]

    async def stop(self) -> bool:
        """Stop platform services. Best-effort: failures are logged.

        Returns:
            True if the stop command succeeded
        """
        services = self.config.services
        logger.info(f"Stopping {' '.join(services)} ...")
        try:
            await run_command(self.tutor("stop", *services))
        except (CommandError, OSError) as e:
            logger.warning(f"Failed to stop services: {e}")
            return False
        return True

    async def start(self) -> bool:
        """Start platform services. Best-effort: failures are logged.

        Falls back to `docker compose start` when the Tutor CLI is unusable.

        Returns:
            True if services were started by either route
        """
        services = self.config.services
        logger.info(f"Starting {' '.join(services)} ...")

        if await self._tutor_available():
            command = self.tutor("start", "-d", *services)
        else:
            logger.warning("Tutor CLI unusable; starting services with docker compose")
            command = self.compose("start", *services)

        try:
            await run_command(command)
        except (CommandError, OSError) as e:
            logger.error(f"Failed to start services: {e}")
            return False
        return True

    async def ensure_running(self) -> None:
        """Start the Tutor stack if `tutor local status` reports a problem."""
        try:
            result = await run_command(self.tutor("status"), check=False)
            running = result.returncode == 0
        except OSError:
            running = False
        if not running:
            logger.warning("Tutor appears not running; starting containers ...")
            await run_command(self.tutor("start", "-d"))

    async def container_id(self, service: str) -> str:
        """Resolve a compose service to its container id.

        Raises:
            ExportError: If the service has no running container
        """
        result = await run_command(self.compose("ps", "-q", service))
        container_id = result.text.strip().splitlines()[0] if result.text.strip() else ""
        if not container_id:
            raise ExportError(f"Could not determine {service} container id.")
        return container_id

    async def copy_from(self, container_id: str, source: str, destination: str) -> CommandResult:
        return await run_command(["docker", "cp", f"{container_id}:{source}", destination])

    async def _tutor_available(self) -> bool:
        try:
            result = await run_command([self.config.tutor_bin, "--version"], check=False)
        except OSError:
            return False
        return result.returncode == 0
