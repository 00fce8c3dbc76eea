"""錯誤處理包裝工具

- wrap_async: 非同步呼叫，失敗時記錄、轉成使用者警告並回傳預設值（或重新拋出）
- try_or_default: 同步呼叫，失敗時記錄並回傳預設值
- try_or_throw: 同步呼叫，失敗時記錄後重新拋出原始錯誤
- try_or_null: 同步呼叫，失敗時記錄並回傳 None

logger 本身出錯時一律忽略，不可改變原本的控制流程。
"""
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, TypeVar, Union
import logging

from untis_mirror_core.utils.error_handler import convert_rest_error_to_warning, format_error

T = TypeVar("T")

# logging.Logger，或 logger(level, msg) / logger(msg) 形式的函式
LoggerLike = Union[logging.Logger, Callable[..., Any]]


class WarningSet:
    """單一抓取週期的警告集合，以文字內容去重並保留加入順序"""

    def __init__(self, initial: Optional[List[str]] = None):
        self._items: Dict[str, None] = {}
        for msg in initial or []:
            self.add(msg)

    def add(self, msg: Optional[str]) -> bool:
        """加入警告；若為新警告回傳 True"""
        if not msg or msg in self._items:
            return False
        self._items[msg] = None
        return True

    def __contains__(self, msg: object) -> bool:
        return msg in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def to_list(self) -> List[str]:
        return list(self._items)


def _describe_context(context: Optional[Dict[str, Any]]) -> str:
    if not context:
        return ""
    parts = []
    if context.get("data_type"):
        parts.append(str(context["data_type"]))
    if context.get("student_title"):
        parts.append(f'student="{context["student_title"]}"')
    if context.get("server"):
        parts.append(f"server={context['server']}")
    return f"[{' '.join(parts)}] " if parts else ""


def _log_error(err: BaseException, logger: Optional[LoggerLike], context: Optional[Dict[str, Any]] = None) -> None:
    """安全地記錄錯誤；logger 失敗時靜默忽略"""
    if logger is None:
        return
    try:
        msg = f"{_describe_context(context)}{format_error(err)}"
        if isinstance(logger, logging.Logger):
            logger.error(f"❌ {msg}")
            return
        try:
            logger("error", msg)
        except TypeError:
            logger(msg)
    except Exception:
        pass


async def wrap_async(
    fn: Callable[[], Awaitable[T]],
    *,
    logger: Optional[LoggerLike] = None,
    context: Optional[Dict[str, Any]] = None,
    default_value: Any = None,
    warnings: Optional[WarningSet] = None,
    rethrow: bool = False,
) -> Any:
    """執行非同步呼叫，失敗時回傳 default_value

    Args:
        fn: 無參數、回傳 awaitable 的函式
        logger: 記錄錯誤用
        context: data_type / student_title / school / server，用於訊息內容
        default_value: 失敗時的回傳值
        warnings: 收集使用者警告的 WarningSet
        rethrow: 記錄後重新拋出原始錯誤（致命情況）

    Returns:
        fn 的結果，或失敗時的 default_value
    """
    try:
        return await fn()
    except Exception as err:
        _log_error(err, logger, context)
        if rethrow:
            raise
        if warnings is not None:
            try:
                warnings.add(convert_rest_error_to_warning(err, context or {}))
            except Exception:
                pass
        return default_value


def try_or_default(fn: Callable[[], T], default_value: T, logger: Optional[LoggerLike] = None) -> T:
    try:
        return fn()
    except Exception as err:
        _log_error(err, logger)
        return default_value


def try_or_throw(fn: Callable[[], T], logger: Optional[LoggerLike] = None) -> T:
    try:
        return fn()
    except Exception as err:
        _log_error(err, logger)
        raise


def try_or_null(fn: Callable[[], T], logger: Optional[LoggerLike] = None) -> Optional[T]:
    try:
        return fn()
    except Exception as err:
        _log_error(err, logger)
        return None
