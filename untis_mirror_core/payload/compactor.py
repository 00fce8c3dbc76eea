"""上游 API 原始資料 → 精簡的前端格式

每種資料類型以一張 schema 表描述：輸出欄位 → FieldDef(來源欄位、備援欄位、轉換函式、預設值)，
由 compact_item 統一解譯。上游欄位名稱變動時只需修改表格。
"""
from __future__ import annotations
import copy
import html
import math
import re
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from untis_mirror_core.utils.logger import get_logger

logger = get_logger(logger_level="INFO")

RawItem = Dict[str, Any]
CompactItem = Dict[str, Any]


class FieldDef(BaseModel):
    """單一輸出欄位的定義"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    source: Optional[str] = None  # 未指定時使用輸出欄位名稱
    fallbacks: Tuple[str, ...] = ()
    transform: Optional[Callable[[Any], Any]] = None
    default: Any = None


Schema = Dict[str, FieldDef]


def compact_item(raw: Any, schema: Schema) -> CompactItem:
    """依 schema 轉換單筆資料；非 dict 輸入回傳空 dict"""
    if not isinstance(raw, dict):
        return {}
    result: CompactItem = {}
    for output_key, field in schema.items():
        value = raw.get(field.source or output_key)
        if value is None:
            for fb in field.fallbacks:
                if raw.get(fb) is not None:
                    value = raw[fb]
                    break
        if value is None:
            # 預設值可能是 list，複製一份避免共用
            result[output_key] = copy.copy(field.default)
        else:
            result[output_key] = field.transform(value) if field.transform else value
    return result


def compact_array(raw_array: Any, schema: Schema) -> List[CompactItem]:
    if not isinstance(raw_array, list):
        return []
    return [compact_item(item, schema) for item in raw_array]


# ---------- 轉換函式 ----------

_BLOCK_TAGS = re.compile(r"<br\s*/?>|</p>|</div>|</li>|</h[1-6]>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]*>")


def sanitize_html(text: Any, allow_markdown: bool = False) -> str:
    """移除所有 HTML 標籤

    換行類標籤（br、/p、/div、/li、/h1-6）先轉成換行；實體先解碼再移除標籤，
    避免 &lt;script&gt; 解碼後重新變成標籤。allow_markdown=False 時移除 _ 與 *。
    """
    if not text:
        return ""
    result = html.unescape(str(text)).replace("\xa0", " ")
    result = _BLOCK_TAGS.sub("\n", result)
    result = _ANY_TAG.sub("", result)
    if not allow_markdown:
        result = re.sub(r"[_*]", "", result)
    result = re.sub(r"[ \t]+", " ", result)
    result = re.sub(r"\n{3,}", "\n\n", result)
    return result.strip()


def _normalize_int(n: int) -> int:
    if 0 <= n % 100 <= 59 and 0 <= n // 100 <= 23:
        return n
    if 0 <= n < 1440:
        return (n // 60) * 100 + n % 60
    return n


def normalize_to_hhmm(value: Any) -> Any:
    """任何時間表示 → HHMM 整數

    - "07:50" → 750
    - 750（已是 HHMM）→ 750
    - 470（午夜起算分鐘數）→ 750
    其他無法判斷的值原樣回傳。
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, float) and not math.isfinite(value):
        return value
    if isinstance(value, (int, float)):
        return _normalize_int(int(value))
    if isinstance(value, str):
        s = value.strip()
        if ":" in s:
            hh_raw, _, mm_raw = s.partition(":")
            hh = re.sub(r"\D", "", hh_raw)
            mm = re.sub(r"\D", "", mm_raw)[:2]
            if hh and mm and 0 <= int(hh) <= 23 and 0 <= int(mm) <= 59:
                return int(hh) * 100 + int(mm)
            return value
        if s.isdigit():
            return _normalize_int(int(s))
    return value


def to_ymd_int(value: Any) -> int:
    """日期 → YYYYMMDD 整數；ISO 字串的時間部分會被忽略"""
    if isinstance(value, date):
        return value.year * 10000 + value.month * 100 + value.day
    s = str(value).split("T", 1)[0]
    digits = re.sub(r"\D", "", s)
    return int(digits) if digits else 0


def format_subject(su: Any) -> Optional[Dict[str, str]]:
    """科目物件或陣列 → {name, longname}"""
    if not su:
        return None
    if isinstance(su, dict):
        return {"name": su.get("name") or "", "longname": su.get("longname") or ""}
    if isinstance(su, list) and su and isinstance(su[0], dict):
        return {"name": su[0].get("name") or "", "longname": su[0].get("longname") or ""}
    return None


def _first_element(v: Any) -> List[Dict[str, Any]]:
    if isinstance(v, list) and v and isinstance(v[0], dict):
        return [{"name": v[0].get("name"), "longname": v[0].get("longname")}]
    return []


def _first_two(v: Any) -> List[Any]:
    return list(v[:2]) if isinstance(v, list) else []


def _copy_list(v: Any) -> List[Any]:
    return list(v) if isinstance(v, list) else []


def _sanitize(v: Any) -> str:
    return sanitize_html(v, False)


def _sanitize_md(v: Any) -> str:
    return sanitize_html(v, True)


def map_rest_status_to_legacy_code(status: Any, subst_text: Any = None) -> str:
    """REST 狀態 → cancelled / irregular / 空字串"""
    s = str(status or "").upper()
    if s in ("CANCELLED", "CANCEL"):
        return "cancelled"
    if s in ("ADDITIONAL", "CHANGED", "SUBSTITUTION", "SUBSTITUTE"):
        return "irregular"
    return "irregular" if subst_text else ""


SCHEMAS: Dict[str, Schema] = {
    "lesson": {
        "date": FieldDef(transform=to_ymd_int, default=0),
        "startTime": FieldDef(transform=normalize_to_hhmm),
        "endTime": FieldDef(transform=normalize_to_hhmm),
        "su": FieldDef(transform=_first_element, default=[]),
        "te": FieldDef(transform=_first_element, default=[]),
        "ro": FieldDef(transform=_first_element, default=[]),
        "cl": FieldDef(transform=_first_element, default=[]),
        "sg": FieldDef(transform=_first_element, default=[]),
        "info": FieldDef(transform=_first_element, default=[]),
        "code": FieldDef(default=""),
        "substText": FieldDef(default=""),
        "lstext": FieldDef(default=""),
        "activityType": FieldDef(default="NORMAL_TEACHING_PERIOD"),
        "status": FieldDef(default="REGULAR"),
        "id": FieldDef(),
        "lessonId": FieldDef(),
    },
    "exam": {
        "examDate": FieldDef(transform=to_ymd_int, default=0),
        "startTime": FieldDef(transform=normalize_to_hhmm),
        "endTime": FieldDef(transform=normalize_to_hhmm),
        "name": FieldDef(transform=_sanitize, default=""),
        "subject": FieldDef(transform=_sanitize, default=""),
        "teachers": FieldDef(transform=_first_two, default=[]),
        "text": FieldDef(transform=_sanitize_md, default=""),
    },
    "homework": {
        "id": FieldDef(),
        "lid": FieldDef(),
        "lessonId": FieldDef(),
        "studentId": FieldDef(),
        "elementIds": FieldDef(transform=_copy_list, default=[]),
        "dueDate": FieldDef(fallbacks=("date",)),
        "completed": FieldDef(),
        "text": FieldDef(fallbacks=("description", "remark"), transform=_sanitize_md, default=""),
        "remark": FieldDef(transform=_sanitize, default=""),
        "su": FieldDef(transform=format_subject),
    },
    "absence": {
        "date": FieldDef(fallbacks=("startDate", "absenceDate", "day"), transform=to_ymd_int, default=0),
        "startTime": FieldDef(fallbacks=("start",), transform=normalize_to_hhmm),
        "endTime": FieldDef(fallbacks=("end",), transform=normalize_to_hhmm),
        "reason": FieldDef(fallbacks=("reasonText", "text"), transform=_sanitize, default=""),
        "excused": FieldDef(source="isExcused", fallbacks=("excused",)),
        "student": FieldDef(),
        "su": FieldDef(transform=_first_element, default=[]),
        "te": FieldDef(transform=_first_element, default=[]),
        "lessonId": FieldDef(fallbacks=("lid", "id")),
    },
    "message": {
        "id": FieldDef(),
        "subject": FieldDef(fallbacks=("title",), transform=_sanitize_md, default=""),
        "text": FieldDef(fallbacks=("content",), transform=_sanitize_md, default=""),
        "isExpanded": FieldDef(default=False),
    },
}


# ---------- 時間表與假日 ----------

def compact_timegrid(units: Any) -> List[Dict[str, Any]]:
    """時間表 → [{name, startTime, endTime}]，時間為 HHMM"""
    if not isinstance(units, list):
        return []
    result = []
    for unit in units:
        if not isinstance(unit, dict):
            continue
        start = normalize_to_hhmm(unit.get("startTime", unit.get("start")))
        end = normalize_to_hhmm(unit.get("endTime", unit.get("end")))
        if start is None and end is None:
            continue
        result.append({
            "name": str(unit.get("name") or unit.get("label") or ""),
            "startTime": start,
            "endTime": end,
        })
    return result


def extract_timegrid_from_timetable(timetable: Any) -> List[Dict[str, Any]]:
    """沒有時間表時，以課表中不重複的開始時間推算時段"""
    if not isinstance(timetable, list):
        return []
    slots: Dict[Any, Any] = {}
    for lesson in timetable:
        if not isinstance(lesson, dict):
            continue
        start = normalize_to_hhmm(lesson.get("startTime"))
        end = normalize_to_hhmm(lesson.get("endTime"))
        if not isinstance(start, int) or start in slots:
            continue
        slots[start] = end
    return [
        {"name": str(i + 1), "startTime": start, "endTime": slots[start]}
        for i, start in enumerate(sorted(slots))
    ]


def compact_holidays(raw_holidays: Any) -> List[Dict[str, Any]]:
    """假日 → [{id, name, longName, startDate, endDate}]，日期為 YYYYMMDD"""
    if not isinstance(raw_holidays, list):
        return []
    result = []
    for h in raw_holidays:
        if not isinstance(h, dict):
            continue
        start = to_ymd_int(h.get("startDate") or h.get("start") or 0)
        end = to_ymd_int(h.get("endDate") or h.get("end") or 0) or start
        if not start:
            logger.debug(f"略過沒有日期的假日：{h.get('name')}")
            continue
        result.append({
            "id": h.get("id"),
            "name": sanitize_html(h.get("name") or h.get("shortName") or ""),
            "longName": sanitize_html(h.get("longName") or h.get("longname") or h.get("name") or ""),
            "startDate": start,
            "endDate": end,
        })
    return result
