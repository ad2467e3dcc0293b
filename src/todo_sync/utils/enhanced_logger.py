"""
強化ログシステム - 構造化ログ(structlog)と標準ログ、操作メトリクス
"""

import json
import logging
import sys
from collections import defaultdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

ROOT_LOGGER_NAME = "todo_sync"


class _StderrWriter:
    """書き込みのたびに sys.stderr を解決する（差し替えられたストリームに追従）"""

    def write(self, message: str):
        sys.stderr.write(message)

    def flush(self):
        sys.stderr.flush()


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MetricsCollector:
    """操作メトリクス収集"""

    def __init__(self):
        self.successes: Dict[str, int] = defaultdict(int)
        self.errors: Dict[Tuple[str, str], int] = defaultdict(int)
        self.durations: Dict[str, List[float]] = defaultdict(list)
        self.events: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.start_time = datetime.now()

    def record_success(self, operation: str, duration: float = 0.0):
        self.successes[operation] += 1
        self.durations[operation].append(duration)

    def record_error(self, operation: str, error_type: str):
        self.errors[(operation, error_type)] += 1

    def record_event(self, event_name: str, count: int = 1):
        self.events[event_name] += count

    def set_gauge(self, name: str, value: float):
        self.gauges[name] = value

    def get_health_summary(self) -> dict:
        """健全性サマリー"""
        total_successes = sum(self.successes.values())
        total_errors = sum(self.errors.values())
        total_operations = total_successes + total_errors
        success_rate = (total_successes / total_operations * 100) if total_operations > 0 else 100.0

        avg_durations = {
            operation: sum(values) / len(values)
            for operation, values in self.durations.items() if values
        }

        return {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'success_rate_percent': success_rate,
            'total_operations': total_operations,
            'avg_durations': avg_durations,
            'errors_by_type': {
                f"{operation}:{error_type}": count
                for (operation, error_type), count in self.errors.items()
            },
            'events': dict(self.events),
            'gauges': self.gauges.copy(),
        }


class EnhancedLogger:
    """強化ログシステム

    構造化ログはJSON行で標準エラーへ、標準ログはファイル（指定時）へ出力する。
    leafモジュールの logging.getLogger(__name__) は同じ "todo_sync" 配下に伝播する。
    """

    def __init__(self,
                 name: str = ROOT_LOGGER_NAME,
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True,
                 structured: bool = True):

        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.structured = structured

        self.metrics = MetricsCollector() if metrics_enabled else None

        self._setup_structured_logging()
        self._setup_standard_logging()

    def _setup_structured_logging(self):
        """構造化ログの設定"""
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(ensure_ascii=False, default=str),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.log_level.value)
            ),
            logger_factory=structlog.WriteLoggerFactory(file=_StderrWriter()),
            cache_logger_on_first_use=False,
        )
        self.structured_logger = structlog.get_logger(self.name)

    def _setup_standard_logging(self):
        """標準ログの設定（再設定時はハンドラーを入れ替える）"""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.log_level.value))

        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

        if not self.structured:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[Exception] = None, **kwargs):
        """エラーログ（例外があれば型とメッセージを付与）"""
        if error:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        if self.metrics and level in (LogLevel.ERROR, LogLevel.CRITICAL):
            self.metrics.record_error(kwargs.get('operation', 'unknown'),
                                      kwargs.get('error_type', 'unknown'))

        if self.structured:
            getattr(self.structured_logger, level.value.lower())(message, **kwargs)

        log_method = getattr(self.logger, level.value.lower())
        if kwargs:
            log_method(f"{message} | Context: {json.dumps(kwargs, default=str, ensure_ascii=False)}")
        else:
            log_method(message)

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now()
        self.info(f"Operation started: {operation}",
                  operation=operation, status='started', **context)
        return {'start_time': start_time, 'operation': operation, **context}

    def log_operation_end(self, operation_context: dict, success: bool = True, **additional_context):
        """操作終了ログ（所要時間をメトリクスに記録）"""
        start_time = operation_context.get('start_time')
        operation = operation_context.get('operation', 'unknown')
        duration = (datetime.now() - start_time).total_seconds() if start_time else 0.0

        context = {k: v for k, v in operation_context.items() if k not in ('start_time', 'operation')}
        context.update(additional_context)

        if success:
            if self.metrics:
                self.metrics.record_success(operation, duration)
            self.info(f"Operation completed: {operation} ({duration:.2f}s)",
                      operation=operation, status='success', duration_seconds=duration, **context)
        else:
            self.error(f"Operation failed: {operation} ({duration:.2f}s)",
                       operation=operation, status='failed', duration_seconds=duration, **context)

    def get_health_status(self) -> dict:
        """健全性ステータス"""
        if not self.metrics:
            return {"overall_status": "metrics_disabled"}

        health_summary = self.metrics.get_health_summary()
        success_rate = health_summary['success_rate_percent']
        if success_rate >= 98.0:
            status = "healthy"
        elif success_rate >= 90.0:
            status = "warning"
        elif success_rate >= 70.0:
            status = "degraded"
        else:
            status = "critical"

        return {
            "overall_status": status,
            "timestamp": datetime.now().isoformat(),
            **health_summary
        }


# グローバルインスタンス
_global_logger: Optional[EnhancedLogger] = None


def get_logger(name: str = ROOT_LOGGER_NAME,
               log_level: LogLevel = LogLevel.INFO,
               log_file: Optional[Path] = None) -> EnhancedLogger:
    """グローバルロガー取得"""
    global _global_logger

    if _global_logger is None:
        _global_logger = EnhancedLogger(name, log_level, log_file)

    return _global_logger


def setup_logging(config: Optional[dict] = None) -> EnhancedLogger:
    """ログ設定の初期化"""
    config = config or {}

    log_file_path = config.get('file_path')

    global _global_logger
    _global_logger = EnhancedLogger(
        name=config.get('name', ROOT_LOGGER_NAME),
        log_level=LogLevel(str(config.get('level', 'INFO')).upper()),
        log_file=Path(log_file_path) if log_file_path else None,
        metrics_enabled=config.get('metrics_enabled', True),
        structured=config.get('structured', True),
    )

    return _global_logger
