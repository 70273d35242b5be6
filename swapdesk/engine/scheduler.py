"""Settlement scheduler: the trigger boundary for the batch passes.

Each pass (``monitor``, ``execute``, ``resolve``, ``winner_trades``) is
safe to invoke more often than its schedule and concurrently with itself;
the engines' conditional writes make overlapping runs harmless. The
scheduler either runs passes once (cron / HTTP trigger) or keeps a local
loop that fires each pass on its own interval.
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from swapdesk.config import SchedulerConfig
from swapdesk.observability.logger import get_logger
from swapdesk.observability.metrics import metrics
from swapdesk.services import Services

log = get_logger(__name__)

PASS_ORDER = ("monitor", "execute", "resolve", "winner_trades")
_HISTORY_LIMIT = 200


@dataclass
class PassResult:
    name: str
    started_at: float
    duration_secs: float = 0.0
    report: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    status: str = "pending"  # "ok" | "error"

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


class SettlementScheduler:
    def __init__(self, services: Services, config: SchedulerConfig | None = None):
        self._services = services
        self._config = config or services.config.scheduler
        self._running = False
        self._last_run: dict[str, float] = {}
        self._history: list[PassResult] = []
        self._passes: dict[str, Callable[[], Awaitable[Any]]] = {
            "monitor": services.orders.monitor_orders,
            "execute": services.orders.execute_orders,
            "resolve": services.predictions.resolve_expired_pools,
            "winner_trades": services.predictions.execute_winner_trades,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[PassResult]:
        return list(self._history)

    def interval_for(self, name: str) -> int:
        return {
            "monitor": self._config.monitor_interval_secs,
            "execute": self._config.execute_interval_secs,
            "resolve": self._config.resolve_interval_secs,
            "winner_trades": self._config.winner_trades_interval_secs,
        }[name]

    # ── Trigger boundary ─────────────────────────────────────────────

    async def run_pass(self, name: str) -> PassResult:
        """Run one pass. Whole-pass failures are captured on the result."""
        if name not in self._passes:
            raise ValueError(f"unknown pass: {name} (expected one of {', '.join(PASS_ORDER)})")
        result = PassResult(name=name, started_at=time.time())
        start = time.monotonic()
        try:
            report = await self._passes[name]()
            result.report = report.to_dict()
            result.status = "ok"
        except Exception as e:
            result.status = "error"
            result.error = str(e)
            metrics.incr("scheduler.pass_errors", pass_name=name)
            log.error("scheduler.pass_failed", pass_name=name, error=str(e))
        result.duration_secs = round(time.monotonic() - start, 3)
        metrics.record_pass(name, result.report, result.duration_secs, result.status)
        self._last_run[name] = time.monotonic()
        self._history.append(result)
        if len(self._history) > _HISTORY_LIMIT:
            self._history = self._history[-_HISTORY_LIMIT:]
        return result

    async def run_once(self, names: tuple[str, ...] = PASS_ORDER) -> list[PassResult]:
        return [await self.run_pass(name) for name in names]

    # ── Local loop ───────────────────────────────────────────────────

    def due_passes(self, now: float) -> list[str]:
        return [
            name for name in PASS_ORDER
            if now - self._last_run.get(name, float("-inf")) >= self.interval_for(name)
        ]

    def seconds_until_next(self, now: float) -> float:
        waits = [
            self.interval_for(name) - (now - self._last_run.get(name, float("-inf")))
            for name in PASS_ORDER
        ]
        return max(min(waits), 0.0)

    async def start(self) -> None:
        self._running = True
        log.info(
            "scheduler.starting",
            intervals={name: self.interval_for(name) for name in PASS_ORDER},
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread

        while self._running:
            for name in self.due_passes(time.monotonic()):
                if not self._running:
                    break
                await self.run_pass(name)
            if self._running:
                await asyncio.sleep(max(self.seconds_until_next(time.monotonic()), 1.0))

        log.info("scheduler.stopped", passes_run=len(self._history))

    def stop(self) -> None:
        log.info("scheduler.stop_requested")
        self._running = False

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("scheduler.signal_received", signal=sig.name)
        self.stop()

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "passes_run": len(self._history),
            "last": {
                r.name: r.to_dict() for r in self._history
            },
        }
