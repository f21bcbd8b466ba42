from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from bityield.config import Settings
from bityield.errors import DataValidationError
from bityield.models import AggregatedYieldData
from bityield.services.aggregator import ProtocolAggregator
from bityield.services.cache import ALL_OPPORTUNITIES_KEY, Cache, protocol_key

logger = logging.getLogger(__name__)

ALERT_AFTER_FAILURES = 3


class YieldUpdater:
    """Refreshes the yield cache on a timer so readers rarely hit a cold cache."""

    def __init__(self, aggregator: ProtocolAggregator, cache: Cache, settings: Settings):
        self.aggregator = aggregator
        self.cache = cache
        self.settings = settings
        self.interval = settings.REFRESH_INTERVAL_SECONDS

        self.update_count = 0
        self.error_count = 0
        self.consecutive_failures = 0
        self.last_update: Optional[int] = None
        self.last_error: Optional[str] = None

        self._updating = False
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def updating(self) -> bool:
        return self._updating

    async def start(self) -> None:
        if self.running:
            logger.warning("Yield updater already running")
            return
        self._stopping.clear()
        # Warm the cache before the first interval elapses
        await self.update()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stopping.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Yield updater stopped")

    async def _run_loop(self) -> None:
        logger.info(f"Yield updater started (interval={self.interval}s)")
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                break
            await self.update()

    async def update(self) -> bool:
        """Run one refresh cycle. Returns False if skipped or failed."""
        if self._updating:
            logger.info("Update already in progress, skipping")
            return False
        self._updating = True
        start = time.perf_counter()
        try:
            data = await self.aggregator.fetch_all_opportunities()
            self.validate_data(data)

            await self.cache.set(ALL_OPPORTUNITIES_KEY, data)
            for p in data.protocols:
                await self.cache.set(protocol_key(p.protocol.value), p)

            self.check_anomalies(data)

            self.update_count += 1
            self.last_update = data.updated_at
            self.consecutive_failures = 0
            self.last_error = None
            elapsed = (time.perf_counter() - start) * 1000.0
            logger.info(
                f"Yield update #{self.update_count} complete in {elapsed:.0f}ms: "
                f"{data.total_opportunities} opportunities, tvl={data.total_tvl:.0f}"
            )
            return True
        except Exception as e:
            self.error_count += 1
            self.consecutive_failures += 1
            self.last_error = str(e)
            logger.error(f"Yield update failed ({self.consecutive_failures} in a row): {e}")
            if self.consecutive_failures > ALERT_AFTER_FAILURES:
                logger.critical(
                    f"ALERT: yield updater has failed {self.consecutive_failures} consecutive times, "
                    f"last update at {self.last_update}"
                )
            return False
        finally:
            self._updating = False

    def validate_data(self, data: AggregatedYieldData) -> None:
        if not data.protocols:
            raise DataValidationError("No protocol data received")

        failed = [p for p in data.protocols if not p.success]
        if len(failed) == len(data.protocols):
            raise DataValidationError("All protocols failed to fetch data")
        if failed:
            names = ", ".join(f"{p.protocol.value} ({p.error})" for p in failed)
            logger.warning(f"Some protocols failed: {names}")

        if data.total_opportunities == 0:
            raise DataValidationError("No yield opportunities found")

        limit = self.settings.MAX_APY_THRESHOLD
        for opp in data.all_opportunities():
            if opp.apy < 0 or opp.apy > limit:
                logger.warning(f"Invalid APY {opp.apy:.2f}% for {opp.protocol.value}/{opp.pool_id}")

    def check_anomalies(self, data: AggregatedYieldData) -> None:
        high_apy = self.settings.MAX_APY_THRESHOLD * 0.5
        low_tvl = self.settings.MIN_TVL_FOR_RECOMMENDATION * 0.1
        for opp in data.all_opportunities():
            if opp.apy > high_apy:
                logger.warning(f"Unusually high APY {opp.apy:.2f}% for {opp.protocol.value}/{opp.pool_id}")
            if opp.tvl < low_tvl:
                logger.warning(f"Very low TVL ${opp.tvl:.0f} for {opp.protocol.value}/{opp.pool_id}")

    async def trigger_update(self) -> bool:
        logger.info("Manual yield update triggered")
        return await self.update()

    def get_stats(self) -> Dict[str, Any]:
        next_update = self.last_update + self.interval * 1000 if self.last_update and self.running else None
        return {
            "running": self.running,
            "updating": self._updating,
            "update_count": self.update_count,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_update": self.last_update,
            "last_error": self.last_error,
            "next_update": next_update,
            "interval_seconds": self.interval,
        }
