"""
Periodic background consolidation.

``ConsolidationScheduler`` runs ``engine.consolidate()`` on a fixed
interval as a detached asyncio task. Each consolidation step is isolated:
a failing step is recorded in the ``ConsolidationReport`` and the
remaining steps still run.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple

from ..telemetry import get_logger

logger = get_logger(__name__)

Step = Tuple[str, Callable[[], Awaitable[Any]]]


@dataclass
class StepOutcome:
    """Result of one consolidation step."""

    name: str
    state: Literal["succeeded", "failed"]
    duration_ms: float
    result: Any = None
    error: Optional[str] = None


@dataclass
class ConsolidationReport:
    """Per-step outcomes of one consolidation pass."""

    engine: str
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    steps: List[StepOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(s.state == "succeeded" for s in self.steps)

    @property
    def failed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.state == "failed"]

    def step(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.steps:
            if outcome.name == name:
                return outcome
        return None

    def to_dict(self) -> dict:
        return asdict(self)


async def run_steps(engine_name: str, steps: List[Step]) -> ConsolidationReport:
    """
    Run consolidation steps in order, isolating failures.

    Args:
        engine_name: Name recorded on the report
        steps: (name, zero-arg coroutine function) pairs

    Returns:
        ConsolidationReport with one outcome per step
    """
    report = ConsolidationReport(engine=engine_name)
    for name, fn in steps:
        start = time.perf_counter()
        try:
            result = await fn()
            report.steps.append(
                StepOutcome(name, "succeeded", (time.perf_counter() - start) * 1000, result=result)
            )
        except Exception as e:
            logger.error("consolidation_step_failed", engine=engine_name, step=name, error=str(e))
            report.steps.append(
                StepOutcome(name, "failed", (time.perf_counter() - start) * 1000, error=str(e))
            )
    report.finished_at = time.time()
    return report


class ConsolidationScheduler:
    """
    Detached asyncio task calling ``engine.consolidate()`` every interval.

    Usage:
        >>> scheduler = ConsolidationScheduler(engine, interval_seconds=3600)
        >>> scheduler.start()
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(self, engine: Any, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.last_report: Optional[ConsolidationReport] = None
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop (no-op if already running)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("consolidation_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("consolidation_stopped", runs=self.runs)

    async def run_once(self) -> ConsolidationReport:
        report = await self.engine.consolidate()
        self.last_report = report
        self.runs += 1
        return report

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                logger.error("consolidation_run_failed", error=str(e))

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "last_ok": self.last_report.ok if self.last_report else None,
        }
