"""
日志系统配置
控制台 + 轮转文件 (wacrm.log / error.log / audit.log)，可切换为 JSON 输出。
群发任务等后台作业通过 get_job_logger 获取带 job_id / session_id 上下文的日志器
"""
import sys
import logging
import json
from datetime import datetime
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, MutableMapping, Tuple

from wacrm.core.config import settings

DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s"
SIMPLE_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

# 访问日志过于嘈杂
_QUIET_LOGGERS = ("aiohttp.access", "uvicorn.access", "httpx", "sqlalchemy.engine", "celery.worker.strategy")


class JSONFormatter(logging.Formatter):
    """每条记录一行 JSON，带上作业上下文字段"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        context = getattr(record, "context", None)
        if context:
            log_data.update(context)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """终端彩色级别"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # 复制一份，颜色码不能带进文件处理器
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{self.COLORS.get(record.levelname, '')}{record.levelname}{self.RESET}"
        return super().format(record)


class AuditLogFilter(logging.Filter):
    """只保留登录、会话生命周期与数据变更相关的记录"""

    AUDIT_KEYWORDS = (
        "login", "logout", "auth", "session", "delete", "create",
        "import", "merge", "broadcast", "backup", "restore",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage().lower()
        return any(keyword in message for keyword in self.AUDIT_KEYWORDS)


class JobLogger(logging.LoggerAdapter):
    """消息前缀 [job_id]，并把 job_id / session_id 作为结构化字段传给 JSONFormatter"""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["context"] = self.extra
        kwargs["extra"] = extra
        return f"[{self.extra['job_id']}] {msg}", kwargs


def get_job_logger(kind: str, job_id: str, **context: Any) -> JobLogger:
    fields: Dict[str, Any] = {"job_id": job_id}
    fields.update(context)
    return JobLogger(logging.getLogger(f"jobs.{kind}"), fields)


def _rotating_file(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(level: str = "INFO", log_to_file: bool = True, json_format: bool = False,
                  log_dir: str = "logs") -> None:
    """
    配置根日志器

    Args:
        level: DEBUG / INFO / WARNING / ERROR
        log_to_file: 是否写 log_dir 下的轮转文件
        json_format: 控制台和主日志文件使用 JSON
        log_dir: 日志目录
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if json_format:
        console_handler.setFormatter(JSONFormatter())
    elif sys.stdout.isatty():
        console_handler.setFormatter(ColoredFormatter(SIMPLE_FORMAT))
    else:
        console_handler.setFormatter(logging.Formatter(SIMPLE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_to_file:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        main_formatter = JSONFormatter() if json_format else logging.Formatter(DETAILED_FORMAT)
        root_logger.addHandler(_rotating_file(directory / "wacrm.log", logging.INFO, main_formatter))
        root_logger.addHandler(_rotating_file(directory / "error.log", logging.ERROR, logging.Formatter(DETAILED_FORMAT)))

        audit_handler = TimedRotatingFileHandler(
            directory / "audit.log", when="midnight", backupCount=30, encoding="utf-8"
        )
        audit_handler.setLevel(logging.INFO)
        audit_handler.setFormatter(logging.Formatter(DETAILED_FORMAT))
        audit_handler.addFilter(AuditLogFilter())
        root_logger.addHandler(audit_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (level={level}, json={json_format}, files={log_to_file})")


def init_logging():
    """API 进程与 Celery worker 启动时调用"""
    setup_logging(
        level=settings.LOG_LEVEL,
        log_to_file=settings.LOG_TO_FILE,
        json_format=settings.JSON_LOGS,
        log_dir=settings.LOG_DIR,
    )
