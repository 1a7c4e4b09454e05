"""BeeGFS status source backed by ``beegfs-ctl --serverstats``.

Runs the BeeGFS admin tool once per cycle and parses its per-second history
table. Throughput and request counts are reported by the tool as per-second
deltas, so this source keeps running totals to expose them as counters.
"""

import re
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from .base import SourceProtocolError, SourceUnavailable
from .types import ClusterSnapshot, EntityKind, EntityRecord

logger = structlog.get_logger(__name__)

DEFAULT_COMMAND = "beegfs-ctl"
DEFAULT_NODE_TYPE = "storage"
DEFAULT_TIMEOUT = 10.0
DEFAULT_HISTORY = 10

# time_index write_KiB read_KiB reqs qlen bsy
STATS_LINE_RE = re.compile(
    r"\s+([0-9]+)\s+([0-9]+)\s+([0-9]+)\s+([0-9]+)\s+([0-9]+)\s+([0-9]+)",
)

# Granularity at which a running command checks for cancellation
_POLL_STEP = 0.2


@dataclass(frozen=True)
class StatsLine:
    """One row of the ``beegfs-ctl --serverstats`` history table."""

    time_index: int
    written_kib: int
    read_kib: int
    requests: int
    queue_len: int
    busy_pct: int


def parse_serverstats(output: str) -> list[StatsLine]:
    """Extract stats rows from ``beegfs-ctl --serverstats`` output.

    Header and separator lines are ignored. Rows are returned ordered by
    time index.

    Args:
        output: Captured stdout of the command.

    Returns:
        Parsed rows, oldest first.
    """
    rows = []
    for line in output.splitlines():
        match = STATS_LINE_RE.search(line)
        if match is None:
            continue
        rows.append(StatsLine(*(int(group) for group in match.groups())))
    return sorted(rows, key=lambda row: row.time_index)


class BeegfsCtlSource:
    """Cluster status source that shells out to ``beegfs-ctl``.

    Every fetch runs ``beegfs-ctl --serverstats`` for the configured node
    type and turns the history table into a single node entity. Rows already
    seen in a previous fetch (same or older time index) are not counted
    again, so overlapping history windows never inflate the totals.

    The command is killed when it exceeds ``timeout`` or when
    ``cancel_event`` is set while it runs.
    """

    def __init__(
        self,
        node_type: str = DEFAULT_NODE_TYPE,
        config_file: str | Path | None = None,
        history: int = DEFAULT_HISTORY,
        timeout: float = DEFAULT_TIMEOUT,
        command: str = DEFAULT_COMMAND,
        cancel_event: threading.Event | None = None,
    ):
        """Initialize the source.

        Args:
            node_type: BeeGFS node type to query (``storage`` or ``meta``).
            config_file: Optional BeeGFS client config passed as ``--cfgFile``.
            history: Seconds of history requested per run.
            timeout: Upper bound in seconds for one command run.
            command: Executable to run.
            cancel_event: Event that aborts a running command when set.

        Raises:
            ValueError: If timeout or history is not positive.
            FileNotFoundError: If config_file is given but doesn't exist.
        """
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)
        if history < 1:
            msg = "history must be at least 1"
            raise ValueError(msg)

        if config_file is not None and not Path(config_file).is_file():
            msg = f"Config file '{config_file}' not found"
            raise FileNotFoundError(msg)

        self.node_type = node_type
        self._config_file = config_file
        self._history = history
        self._timeout = timeout
        self._command = command
        self._cancel_event = cancel_event

        self._totals = {"written_kib": 0, "read_kib": 0, "requests": 0}
        self._last_time_index: int | None = None

    @property
    def args(self) -> list[str]:
        """Command line used for each fetch."""
        args = [
            self._command,
            "--serverstats",
            f"--nodetype={self.node_type}",
            f"--history={self._history}",
        ]
        if self._config_file is not None:
            args.append(f"--cfgFile={self._config_file}")
        return args

    def _kill(self, proc: subprocess.Popen) -> None:
        proc.kill()
        proc.communicate()

    def _run(self) -> str:
        """Run the command and return its stdout.

        Raises:
            SourceUnavailable: If the command cannot be started, times out,
                is cancelled or exits with a non-zero status.
        """
        args = self.args
        logger.debug("Running command", command=" ".join(args))
        try:
            proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            msg = f"Failed to run {self._command}: {exc}"
            raise SourceUnavailable(msg) from exc

        deadline = time.monotonic() + self._timeout
        while True:
            if self._cancel_event is not None and self._cancel_event.is_set():
                self._kill(proc)
                msg = f"{self._command} cancelled"
                raise SourceUnavailable(msg)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._kill(proc)
                msg = f"{self._command} timed out after {self._timeout}s"
                raise SourceUnavailable(msg)

            try:
                stdout, stderr = proc.communicate(timeout=min(_POLL_STEP, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        if proc.returncode != 0:
            msg = (
                f"{self._command} exited with status {proc.returncode}: "
                f"{stderr.strip()}"
            )
            raise SourceUnavailable(msg)
        return stdout

    def fetch(self) -> ClusterSnapshot:
        """Run ``beegfs-ctl`` and build a snapshot from its output.

        Returns:
            Snapshot with one node entity for the configured node type.

        Raises:
            SourceUnavailable: If the command could not produce output.
            SourceProtocolError: If the output contains no stats rows.
        """
        rows = parse_serverstats(self._run())
        if not rows:
            msg = "beegfs-ctl output contained no serverstats rows"
            raise SourceProtocolError(msg)

        for row in rows:
            if self._last_time_index is not None and row.time_index <= self._last_time_index:
                continue
            self._totals["written_kib"] += row.written_kib
            self._totals["read_kib"] += row.read_kib
            self._totals["requests"] += row.requests

        newest = rows[-1]
        if self._last_time_index is None or newest.time_index > self._last_time_index:
            self._last_time_index = newest.time_index

        logger.debug(
            "Parsed serverstats",
            rows=len(rows),
            written_kib=newest.written_kib,
            read_kib=newest.read_kib,
            requests=newest.requests,
            queue_len=newest.queue_len,
            busy_pct=newest.busy_pct,
        )

        record = EntityRecord(
            entity_kind=EntityKind.NODE,
            entity_id=self.node_type,
            counters={
                **self._totals,
                "queue_len": newest.queue_len,
                "busy_pct": newest.busy_pct,
            },
            labels={"node_type": self.node_type},
        )
        return ClusterSnapshot(entities=[record], source=" ".join(self.args))
