# logger.py
import logging
import os
import inspect
from typing import Any, Optional
from dotenv import load_dotenv

load_dotenv()
PACKAGE = "untis_mirror_core"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()  # handler 等級，預設 INFO


class _ShortNameFormatter(logging.Formatter):
    """輸出時去掉套件前綴：untis_mirror_core.fetch.orchestrator → fetch.orchestrator"""

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        record.short_name = name[len(PACKAGE) + 1:] if name.startswith(PACKAGE + ".") else name
        return super().format(record)


def get_logger(logger_level: str = "DEBUG") -> logging.Logger:
    # 自動取得呼叫此函數的模組名稱
    caller_frame = inspect.stack()[1]
    module = inspect.getmodule(caller_frame[0])
    name = module.__name__ if module else "unknown"

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, logger_level.upper(), logging.INFO))

    # handler 只掛在套件根 logger，子模組往上傳遞，避免重複輸出
    owner = logging.getLogger(PACKAGE) if name.startswith(PACKAGE) else logger
    if not owner.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        handler.setFormatter(_ShortNameFormatter("[%(levelname)s] [%(short_name)s] %(message)s"))
        owner.addHandler(handler)

    return logger


_LEVEL_NAMES = {"warn": "WARNING", "none": "CRITICAL"}


def set_log_level(level: Optional[str]) -> bool:
    """調整整個套件的日誌等級，接受 debug / info / warn / error / none

    Returns:
        bool: 等級是否有效並已套用
    """
    if not level:
        return False
    key = str(level).strip().lower()
    value = getattr(logging, _LEVEL_NAMES.get(key, key.upper()), None)
    if not isinstance(value, int):
        return False
    for name in list(logging.root.manager.loggerDict):
        if name == PACKAGE or name.startswith(PACKAGE + "."):
            logging.getLogger(name).setLevel(value)
    for handler in logging.getLogger(PACKAGE).handlers:
        handler.setLevel(value)
    return True


def student_tag(student: Optional[Any]) -> str:
    """學生前綴，例如 "[Max] "；沒有學生時回傳空字串"""
    title = getattr(student, "title", None)
    if title is None and isinstance(student, dict):
        title = student.get("title")
    return f"[{str(title).strip()}] " if title else ""
