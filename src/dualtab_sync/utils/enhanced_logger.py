"""
強化ログシステム - 同期操作の構造化ログと操作メトリクス
"""

import json
import logging
import sys
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Optional

import structlog

# 平均所要時間の計算に使う直近サンプル数
DURATION_SAMPLES = 50


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class OperationContext:
    """実行中の操作（log_operation_startが返す）"""
    operation: str
    started_at: datetime = field(default_factory=datetime.now)
    context: Dict[str, Any] = field(default_factory=dict)

    def elapsed(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()


@dataclass
class OperationStats:
    """操作種別ごとの集計"""
    successes: int = 0
    failures: Counter = field(default_factory=Counter)
    durations: Deque[float] = field(default_factory=lambda: deque(maxlen=DURATION_SAMPLES))

    @property
    def total(self) -> int:
        return self.successes + sum(self.failures.values())

    def average_duration(self) -> Optional[float]:
        return sum(self.durations) / len(self.durations) if self.durations else None


class SyncMetrics:
    """同期操作メトリクス（操作種別 x 成否 x エラータイプ）"""

    def __init__(self):
        self.operations: Dict[str, OperationStats] = {}
        self.started_at = datetime.now()

    def record(self, operation: str, duration: float, success: bool, error_type: Optional[str] = None):
        stats = self.operations.setdefault(operation, OperationStats())
        stats.durations.append(duration)
        if success:
            stats.successes += 1
        else:
            stats.failures[error_type or "Unknown"] += 1

    def summary(self) -> Dict[str, Any]:
        successes = sum(stats.successes for stats in self.operations.values())
        total = sum(stats.total for stats in self.operations.values())

        return {
            'uptime_seconds': (datetime.now() - self.started_at).total_seconds(),
            'total_operations': total,
            'success_rate_percent': (successes / total * 100) if total else 100.0,
            'avg_duration_seconds': {
                name: stats.average_duration()
                for name, stats in self.operations.items() if stats.durations
            },
            'errors_by_type': {
                f"{name}:{error_type}": count
                for name, stats in self.operations.items()
                for error_type, count in stats.failures.items()
            },
        }


class EnhancedLogger:
    """構造化ログ（structlog）と標準ログの二系統出力"""

    def __init__(self,
                 name: str = "dualtab_sync",
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True):
        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.metrics = SyncMetrics() if metrics_enabled else None

        self._configure_structlog()
        self._configure_stdlib()

    def _configure_structlog(self):
        structlog.configure(
            processors=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                self._add_logger_name,
                structlog.processors.JSONRenderer(ensure_ascii=False),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, self.log_level.value)),
            logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
            cache_logger_on_first_use=False,
        )
        self.structured_logger = structlog.get_logger(self.name)

    def _add_logger_name(self, logger, method_name, event_dict):
        event_dict['logger'] = self.name
        return event_dict

    def _configure_stdlib(self):
        """レイヤーモジュールの logging.getLogger(__name__) もこのハンドラーに流れる"""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.log_level.value))

        # 再設定時はハンドラーを差し替える
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        handlers = [logging.StreamHandler(sys.stdout)]
        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.log_file, encoding='utf-8'))

        for handler in handlers:
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[BaseException] = None, **kwargs):
        """エラーログ（例外はタイプとメッセージに展開）"""
        if error is not None:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        method = level.value.lower()
        getattr(self.structured_logger, method)(message, **kwargs)

        if kwargs:
            message = f"{message} | {json.dumps(kwargs, ensure_ascii=False, default=str)}"
        getattr(self.logger, method)(message)

    def log_operation_start(self, operation: str, **context) -> OperationContext:
        """操作開始ログ"""
        started = OperationContext(operation=operation, context=context)
        self.debug(f"Operation started: {operation}", operation=operation, **context)
        return started

    def log_operation_end(self, started: OperationContext, success: bool = True,
                          error_type: Optional[str] = None, **context):
        """操作終了ログとメトリクス記録"""
        duration = started.elapsed()
        if self.metrics:
            self.metrics.record(started.operation, duration, success, error_type)

        fields = {**started.context, **context, 'operation': started.operation,
                  'duration_seconds': round(duration, 3)}
        if success:
            self.info(f"Operation completed: {started.operation} ({duration:.2f}s)", **fields)
        else:
            self.warning(f"Operation failed: {started.operation} ({duration:.2f}s)",
                         error_type=error_type, **fields)

    def get_health_status(self) -> Dict[str, Any]:
        """成功率から判定した健全性"""
        if not self.metrics:
            return {'overall_status': "metrics_disabled"}

        summary = self.metrics.summary()
        success_rate = summary['success_rate_percent']
        if success_rate >= 95.0:
            status = "healthy"
        elif success_rate >= 75.0:
            status = "degraded"
        else:
            status = "critical"

        return {'overall_status': status, **summary}


_global_logger: Optional[EnhancedLogger] = None


def get_logger(name: str = "dualtab_sync",
               log_level: LogLevel = LogLevel.INFO,
               log_file: Optional[Path] = None) -> EnhancedLogger:
    """グローバルロガー取得（未設定なら既定値で生成）"""
    global _global_logger

    if _global_logger is None:
        _global_logger = EnhancedLogger(name, log_level, log_file)

    return _global_logger


def setup_logging(config: Optional[Dict[str, Any]] = None) -> EnhancedLogger:
    """LoggingConfig相当の辞書からロガーを再設定"""
    global _global_logger

    config = config or {}
    file_path = config.get('file_path')
    _global_logger = EnhancedLogger(
        name=config.get('name', 'dualtab_sync'),
        log_level=LogLevel(str(config.get('level', 'INFO')).upper()),
        log_file=Path(file_path) if file_path else None,
        metrics_enabled=config.get('metrics_enabled', True),
    )
    return _global_logger


if __name__ == "__main__":
    logger = get_logger("dualtab_sync_demo", LogLevel.DEBUG)

    started = logger.log_operation_start("upload", task_id="upload_demo")
    try:
        raise ConnectionError("WebDAV server unreachable")
    except ConnectionError as e:
        logger.error("Upload failed", error=e, task_id="upload_demo")
    logger.log_operation_end(started, success=False, error_type="NetworkError")

    print(json.dumps(logger.get_health_status(), indent=2, ensure_ascii=False))
