"""
Vision Request Logger

每次图表分析请求写一行 JSON，记录：
- 厂商与模型
- 当前问题（截断）与分析类别
- 是否流式、片段数
- Token 用量（厂商未返回时为空）
- 耗时与失败原因

日志按日期分文件存储在 {VISION_GATEWAY_LOG_DIR}/{provider}/{YYYY-MM-DD}.jsonl
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

from .models import TokenUsage

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 100


@dataclass
class RequestLogEntry:
    """One analysis call as it appears in the request log."""
    provider: str
    model: str
    question: str
    category: str | None
    streamed: bool
    duration_ms: float
    text: str | None = None
    usage: TokenUsage | None = None
    fragments: int = 0
    error: str | None = None
    status_code: int | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def success(self) -> bool:
        return self.error is None and self.text is not None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "provider": self.provider,
            "model": self.model,
            "category": self.category,
            "question_preview": self.question[:PREVIEW_CHARS] or None,
            "streamed": self.streamed,
            "fragments": self.fragments,
            "text_length": len(self.text) if self.text else 0,
            "text_preview": self.text[:PREVIEW_CHARS] if self.text else None,
            "usage": self.usage.to_dict() if self.usage else None,
            "duration_ms": round(self.duration_ms, 2),
            "success": self.success,
            "status_code": self.status_code,
            "error": self.error,
        }


def _enabled_from_env() -> bool:
    return os.getenv("VISION_GATEWAY_LOGGING", "true").lower() in ("true", "1", "yes", "on")


class RequestLogger:
    """请求日志记录器, one per provider."""

    def __init__(self, provider: str, enabled: bool | None = None, log_root: Path | None = None):
        """
        Args:
            provider: Provider name, used as the log sub-directory
            enabled: None reads VISION_GATEWAY_LOGGING (default on)
            log_root: None reads VISION_GATEWAY_LOG_DIR (default "logs")
        """
        self.provider = provider
        self.enabled = _enabled_from_env() if enabled is None else enabled
        self.log_dir = (log_root or Path(os.getenv("VISION_GATEWAY_LOG_DIR", "logs"))) / provider

    def log_file_for(self, day: date) -> Path:
        return self.log_dir / f"{day:%Y-%m-%d}.jsonl"

    def write(self, entry: RequestLogEntry) -> None:
        """Append an entry; write failures are logged and never raised."""
        if not self.enabled:
            return
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file_for(entry.timestamp.date()), "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.warning("Failed to write request log for %s: %s", self.provider, e)

    def read(self, day: date | None = None) -> list[dict]:
        """Entries logged on ``day`` (today by default); unparseable lines are skipped."""
        path = self.log_file_for(day or date.today())
        if not path.exists():
            return []
        entries = []
        with open(path, encoding="utf-8") as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries


# 全局日志记录器缓存
_loggers: dict[str, RequestLogger] = {}


def get_logger(provider: str) -> RequestLogger:
    """获取或创建指定厂商的日志记录器"""
    if provider not in _loggers:
        _loggers[provider] = RequestLogger(provider)
    return _loggers[provider]
