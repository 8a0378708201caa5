"""
スケジューリング層 - 定期同期とイベント駆動の自動同期
"""

from .interval_scheduler import IntervalScheduler, MIN_SYNC_INTERVAL, MAX_SYNC_INTERVAL
from .event_debouncer import EventDebouncer

__all__ = ['IntervalScheduler', 'MIN_SYNC_INTERVAL', 'MAX_SYNC_INTERVAL', 'EventDebouncer']
