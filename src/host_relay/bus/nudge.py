"""Out-of-band wake command that brings the host to the foreground."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess

logger = logging.getLogger(__name__)


class WakeCommandError(RuntimeError):
    """Wake command template cannot be rendered."""


def build_wake_args(
    template: str,
    *,
    project_name: str,
    project_id: str,
    os_name: str | None = None,
) -> str | list[str]:
    """Render the template; argv on POSIX, a command line string on Windows."""

    stripped = template.strip()
    if not stripped:
        raise WakeCommandError("Wake command template is empty.")
    try:
        if (os_name or os.name) == "nt":
            return stripped.format(
                project_name=subprocess.list2cmdline([project_name]),
                project_id=project_id,
            )
        rendered = stripped.format(
            project_name=shlex.quote(project_name),
            project_id=shlex.quote(project_id),
        )
    except (KeyError, IndexError) as error:
        raise WakeCommandError(f"Unsupported wake command placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise WakeCommandError("Wake command template rendered empty command.")
    return argv


class WakeNudger:
    """Run the configured wake command; an empty template makes every nudge a no-op."""

    def __init__(
        self,
        template: str,
        *,
        project_name: str,
        project_id: str,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.template = template
        self.project_name = project_name
        self.project_id = project_id
        self.timeout_seconds = timeout_seconds
        self.attempts = 0

    @property
    def enabled(self) -> bool:
        return bool(self.template.strip())

    def nudge(self) -> bool:
        if not self.enabled:
            return False
        self.attempts += 1
        try:
            args = build_wake_args(
                self.template,
                project_name=self.project_name,
                project_id=self.project_id,
            )
            completed = subprocess.run(  # noqa: S603
                args,
                shell=isinstance(args, str),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Wake command timed out after %.1fs", self.timeout_seconds)
            return False
        except (OSError, WakeCommandError) as error:
            logger.warning("Wake command failed: %s", error)
            return False
        if completed.returncode != 0:
            logger.warning(
                "Wake command exited with %d: %s",
                completed.returncode,
                completed.stderr.strip(),
            )
            return False
        logger.debug("Wake command succeeded (attempt %d)", self.attempts)
        return True
