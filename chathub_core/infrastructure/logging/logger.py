import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from chathub_core.config.settings import settings


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("chathub_core")
    level = logging.DEBUG if settings.debug else logging.INFO
    logger.setLevel(level)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "chathub.log", encoding="utf-8")
    fh.setLevel(level)

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            msg = record.getMessage()
            if settings.log_redact_content:
                msg = (msg or "")[:64]
            payload = {
                "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "name": record.name,
                "msg": msg,
            }
            extra = getattr(record, "extra", None)
            if isinstance(extra, dict):
                payload.update(extra)
            return json.dumps(payload, ensure_ascii=False, default=str)

    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()


def log_event(level: int, message: str, log_ctx: dict, /, **fields) -> None:
    """以结构化字段写日志，log_ctx 一般携带 trace_id 等轮次级上下文。"""

    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
