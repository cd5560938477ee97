"""Command-line contract of the installed agent binary."""

import subprocess
from pathlib import Path
from typing import List, Optional

import structlog

logger = structlog.get_logger()


class AgentBinary:
    """Thin wrapper over the agent binary's fixed CLI surface.

    Only ``version`` and ``frontend --config`` are used; the binary's own
    behaviour beyond exit status is opaque.
    """

    def __init__(self, path: Path, timeout: float = 10.0):
        self.path = Path(path)
        self.timeout = timeout

    def exists(self) -> bool:
        return self.path.is_file()

    def frontend_command(self, config_path: Path) -> List[str]:
        """Arguments the service descriptor launches."""
        return [str(self.path), "frontend", "--config", str(config_path)]

    def version(self) -> Optional[str]:
        """Return the trimmed output of ``<binary> version``, or None."""
        if not self.exists():
            return None
        try:
            proc = subprocess.run(
                [str(self.path), "version"],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not query agent version", binary=str(self.path), error=str(e))
            return None
        if proc.returncode != 0:
            logger.warning("Agent version command failed", binary=str(self.path), exit_code=proc.returncode)
            return None
        return proc.stdout.strip() or None
