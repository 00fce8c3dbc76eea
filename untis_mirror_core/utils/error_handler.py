"""將技術性錯誤轉換成使用者看得懂、可採取行動的警告訊息"""
from typing import Any, Dict, Optional, Sequence
import asyncio

import aiohttp


def format_error(err: Optional[BaseException]) -> str:
    if err is None:
        return "(no error)"
    message = getattr(err, "message", None)
    return str(message or err) or err.__class__.__name__


def _status_of(err: BaseException) -> Optional[int]:
    status = getattr(err, "status", None)
    if status is None:
        response = getattr(err, "response", None)
        status = getattr(response, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def convert_rest_error_to_warning(err: Optional[BaseException], context: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """REST 錯誤 → 使用者警告

    Args:
        err: 捕捉到的例外
        context: student_title / school / server

    Returns:
        警告文字；無法轉換時回傳 None
    """
    if err is None:
        return None
    context = context or {}
    title = context.get("student_title") or "Student"
    school = context.get("school") or "school"
    server = context.get("server") or "server"

    msg = format_error(err).lower()
    status = _status_of(err)

    if status in (401, 403) or "401" in msg or "403" in msg:
        return f'Authentication failed for "{title}": Invalid credentials or insufficient permissions.'

    if isinstance(err, (asyncio.TimeoutError, ConnectionRefusedError, aiohttp.ClientConnectorError)) or "timeout" in msg:
        return f'Cannot connect to WebUntis server "{server}". Check server name and network connection.'

    if status == 503 or "503" in msg:
        return "WebUntis API temporarily unavailable (HTTP 503). Retrying on next fetch..."

    if "school" in msg or "not found" in msg:
        return f'School "{school}" not found or invalid credentials. Check school name and spelling.'

    if status is None:
        return f"Network error connecting to WebUntis: {format_error(err) or 'Unknown error'}"

    if 400 <= status < 500:
        return f'HTTP {status} error for "{title}": {format_error(err)}'

    if status >= 500:
        return f"Server error (HTTP {status}): {format_error(err)}"

    return None


def check_empty_data_warning(items: Sequence[Any], data_type: str, student_title: str, is_expected: bool = True) -> Optional[str]:
    if is_expected and len(items) == 0:
        return f'Student "{student_title}": No {data_type} found in selected date range. Check if student is enrolled.'
    return None
