"""Runtime configuration for the host runtime and the external client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

FAILURE_POLICIES = ("continue", "abort")


@dataclass(slots=True)
class QueueSettings:
    """Command queue and archive settings."""

    queue_dir: Path = Path(".host-relay/commands")
    archive_dir: Path = Path(".host-relay/commands/processed")
    pattern: str = "*.json"
    sweep_interval_seconds: float = 1.0
    watch: bool = True


@dataclass(slots=True)
class ExecutorSettings:
    """Batch execution settings."""

    failure_policy: str = "continue"


@dataclass(slots=True)
class LedgerSettings:
    """Compilation ledger settings."""

    ledger_path: Path = Path(".host-relay/compilation/current-status.json")
    no_compile_grace_seconds: float = 5.0


@dataclass(slots=True)
class RuntimeSettings:
    """Host tick loop settings."""

    tick_interval_seconds: float = 0.1


@dataclass(slots=True)
class ClientSettings:
    """External client polling budget and wake nudge settings."""

    timeout_seconds: float = 45.0
    poll_interval_seconds: float = 0.5
    grace_seconds: float = 3.0
    max_nudge_retries: int = 2
    nudge_retry_seconds: float = 10.0
    wake_command: str = ""
    wake_timeout_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    project_root: Path = Path()
    state_dir: Path = Path(".host-relay")
    queue: QueueSettings = field(default_factory=QueueSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    client: ClientSettings = field(default_factory=ClientSettings)

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> Settings:
        """Load settings from environment; relative paths resolve against the project root."""

        root = (project_root or Path(os.getenv("HOST_RELAY_PROJECT_ROOT", "."))).resolve()
        state_dir = _under(root, os.getenv("HOST_RELAY_STATE_DIR", ".host-relay"))
        queue_dir = _under(root, os.getenv("HOST_RELAY_QUEUE_DIR", str(state_dir / "commands")))
        return cls(
            project_root=root,
            state_dir=state_dir,
            queue=QueueSettings(
                queue_dir=queue_dir,
                archive_dir=_under(
                    root,
                    os.getenv("HOST_RELAY_ARCHIVE_DIR", str(queue_dir / "processed")),
                ),
                pattern=os.getenv("HOST_RELAY_QUEUE_PATTERN", "*.json"),
                sweep_interval_seconds=float(
                    os.getenv("HOST_RELAY_SWEEP_INTERVAL_SECONDS", "1.0"),
                ),
                watch=_env_bool("HOST_RELAY_WATCH", default=True),
            ),
            executor=ExecutorSettings(
                failure_policy=os.getenv("HOST_RELAY_FAILURE_POLICY", "continue").strip().lower(),
            ),
            ledger=LedgerSettings(
                ledger_path=_under(
                    root,
                    os.getenv(
                        "HOST_RELAY_LEDGER_PATH",
                        str(state_dir / "compilation" / "current-status.json"),
                    ),
                ),
                no_compile_grace_seconds=float(
                    os.getenv("HOST_RELAY_NO_COMPILE_GRACE_SECONDS", "5"),
                ),
            ),
            runtime=RuntimeSettings(
                tick_interval_seconds=float(os.getenv("HOST_RELAY_TICK_INTERVAL_SECONDS", "0.1")),
            ),
            client=ClientSettings(
                timeout_seconds=float(os.getenv("HOST_RELAY_CLIENT_TIMEOUT_SECONDS", "45")),
                poll_interval_seconds=float(
                    os.getenv("HOST_RELAY_CLIENT_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                grace_seconds=float(os.getenv("HOST_RELAY_CLIENT_GRACE_SECONDS", "3")),
                max_nudge_retries=int(os.getenv("HOST_RELAY_CLIENT_MAX_NUDGE_RETRIES", "2")),
                nudge_retry_seconds=float(
                    os.getenv("HOST_RELAY_CLIENT_NUDGE_RETRY_SECONDS", "10"),
                ),
                wake_command=os.getenv("HOST_RELAY_WAKE_COMMAND", "").strip(),
                wake_timeout_seconds=float(os.getenv("HOST_RELAY_WAKE_TIMEOUT_SECONDS", "5")),
            ),
        )

    @property
    def project_id_path(self) -> Path:
        return self.state_dir / "project-id"

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.executor.failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                "HOST_RELAY_FAILURE_POLICY must be one of "
                f"{', '.join(FAILURE_POLICIES)}: {self.executor.failure_policy!r}",
            )
        if self.queue.sweep_interval_seconds <= 0:
            raise ValueError("HOST_RELAY_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.runtime.tick_interval_seconds <= 0:
            raise ValueError("HOST_RELAY_TICK_INTERVAL_SECONDS must be > 0.")
        if self.ledger.no_compile_grace_seconds < 0:
            raise ValueError("HOST_RELAY_NO_COMPILE_GRACE_SECONDS must be >= 0.")
        if self.client.timeout_seconds <= 0:
            raise ValueError("HOST_RELAY_CLIENT_TIMEOUT_SECONDS must be > 0.")
        if self.client.poll_interval_seconds <= 0:
            raise ValueError("HOST_RELAY_CLIENT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.client.grace_seconds < 0:
            raise ValueError("HOST_RELAY_CLIENT_GRACE_SECONDS must be >= 0.")
        if self.client.max_nudge_retries < 0:
            raise ValueError("HOST_RELAY_CLIENT_MAX_NUDGE_RETRIES must be >= 0.")
        if self.queue.archive_dir.resolve() == self.queue.queue_dir.resolve():
            raise ValueError("Archive directory must differ from the queue directory.")


def _under(root: Path, value: str) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    return root / path


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
