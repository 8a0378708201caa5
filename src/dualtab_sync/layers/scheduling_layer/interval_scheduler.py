"""
定期同期スケジューラー
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

MIN_SYNC_INTERVAL = 1       # 分
MAX_SYNC_INTERVAL = 1440    # 分（24時間）
DEFAULT_SYNC_INTERVAL = 30  # 分


class IntervalScheduler:
    """クランプ付きの再起動可能な定期タイマー

    コールバックは独立したタスクとして起動するため、stop()や再起動で
    実行中の同期が中断されることはない。重複実行の抑止は呼び出し先の責務。
    """

    def __init__(self,
                 callback: Callable[[], Awaitable[None]],
                 min_interval_minutes: float = MIN_SYNC_INTERVAL,
                 max_interval_minutes: float = MAX_SYNC_INTERVAL,
                 unit_seconds: float = 60.0):
        self.callback = callback
        self.min_interval_minutes = min_interval_minutes
        self.max_interval_minutes = max_interval_minutes
        self.unit_seconds = unit_seconds

        self.interval_minutes: float = DEFAULT_SYNC_INTERVAL
        self.tick_count = 0
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    def clamp(self, interval_minutes: float) -> float:
        """間隔を許容範囲に収める"""
        return max(self.min_interval_minutes, min(interval_minutes, self.max_interval_minutes))

    def start(self, interval_minutes: float = DEFAULT_SYNC_INTERVAL):
        """開始（既存タイマーは置き換え）"""
        self.stop()

        clamped = self.clamp(interval_minutes)
        if clamped != interval_minutes:
            logger.info(f"Sync interval {interval_minutes} min clamped to {clamped} min")
        self.interval_minutes = clamped

        self._task = asyncio.create_task(self._run(clamped * self.unit_seconds))
        logger.info(f"Auto sync scheduler started: every {clamped} min")

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Auto sync scheduler stopped")

    def update_interval(self, interval_minutes: float):
        """間隔変更（実行中なら再起動、停止中なら値のみ保持）"""
        if self.is_running():
            self.start(interval_minutes)
        else:
            self.interval_minutes = self.clamp(interval_minutes)

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self, period_seconds: float):
        while True:
            await asyncio.sleep(period_seconds)
            self.tick_count += 1
            task = asyncio.create_task(self._invoke())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _invoke(self):
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"Scheduled sync callback failed: {e}")

    async def wait_idle(self):
        """実行中のコールバック完了を待つ"""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
