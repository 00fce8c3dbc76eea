"""GOT_DATA payload 組裝

將 orchestrator 的原始結果精簡化、建立 holidayByDate 索引、彙整警告，
並在設定開啟時輸出 debug dump。
"""
from __future__ import annotations
import itertools
import json
import os
import platform
import re
import socket
import sys
import time
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, List, Optional

from untis_mirror_core.config import ModuleConfig, Settings, StudentConfig
from untis_mirror_core.fetch.date_range import from_ymd, iter_days, to_ymd
from untis_mirror_core.fetch.models import DateRanges, FetchFlags, FetchResult
from untis_mirror_core.payload.compactor import (
    SCHEMAS,
    compact_array,
    compact_timegrid,
    extract_timegrid_from_timetable,
)
from untis_mirror_core.payload.models import CompactHoliday, GotDataPayload, TimeUnit
from untis_mirror_core.utils.error_handler import check_empty_data_warning
from untis_mirror_core.utils.error_utils import WarningSet, try_or_null
from untis_mirror_core.utils.logger import get_logger, student_tag

logger = get_logger(logger_level="INFO")

REDACTED = "<REDACTED>"
_REDACT_KEY = re.compile(
    r"password$|pass(word)?$|token$|auth$|authToken$|cookie$|jsessionid$|bearer$|accessToken$|refreshToken$|qrcode$",
    re.IGNORECASE,
)
_DUMP_SUFFIX = "_api.json"


def build_holiday_by_date(holidays: List[CompactHoliday], start_ymd: int, end_ymd: int) -> Dict[int, CompactHoliday]:
    """[start, end]（含兩端）每一天 → 包含該日的假日"""
    if not holidays:
        return {}
    index: Dict[int, CompactHoliday] = {}
    for day in iter_days(from_ymd(start_ymd), from_ymd(end_ymd)):
        ymd = to_ymd(day)
        holiday = next((h for h in holidays if h.contains(ymd)), None)
        if holiday is not None:
            index[ymd] = holiday
    return index


def find_active_holiday(holidays: List[CompactHoliday], today_ymd: int) -> Optional[CompactHoliday]:
    return next((h for h in holidays if h.contains(today_ymd)), None)


def _time_units(raw_timegrid: Optional[List[Any]], timetable: List[Any]) -> List[TimeUnit]:
    units = compact_timegrid(raw_timegrid) or extract_timegrid_from_timetable(timetable)
    return [
        TimeUnit(
            name=u["name"],
            start_time=u["startTime"] if isinstance(u["startTime"], int) else None,
            end_time=u["endTime"] if isinstance(u["endTime"], int) else None,
        )
        for u in units
    ]


def build_got_data_payload(
    student: StudentConfig,
    result: FetchResult,
    flags: FetchFlags,
    date_ranges: DateRanges,
    base_now: datetime,
    *,
    raw_timegrid: Optional[List[Any]] = None,
    holidays: Optional[List[CompactHoliday]] = None,
    module: Optional[ModuleConfig] = None,
    fetch_warnings: Optional[WarningSet] = None,
    cycle_warnings: Optional[WarningSet] = None,
    settings: Optional[Settings] = None,
) -> GotDataPayload:
    """組裝單一學生的 GOT_DATA payload

    Args:
        student: 學生設定
        result: orchestrator 抓取結果
        flags: 啟用的資料類型；未啟用的類型不做精簡化
        date_ranges: 抓取區間，timetable 區間用於建立 holidayByDate
        base_now: 基準時間，用於判斷今天是否放假
        raw_timegrid: 上游時間表；沒有時由課表推算
        holidays: 已精簡化的假日清單（整個憑證群組共用）
        module: 模組設定，提供模組層級警告與 dump 開關
        fetch_warnings: 這位學生抓取時產生的警告
        cycle_warnings: 本週期所有學生共用的警告集合，用於跨學生去重
        settings: 執行期設定（dump 目錄、保留份數）

    Returns:
        GotDataPayload: 不含請求者 id 的 payload
    """
    tag = student_tag(student)
    holidays = holidays or []
    cycle_warnings = cycle_warnings if cycle_warnings is not None else WarningSet()

    timetable = compact_array(result.timetable, SCHEMAS["lesson"]) if flags.timetable else []
    exams = compact_array(result.exams, SCHEMAS["exam"]) if flags.exams else []
    homeworks = compact_array(result.homeworks, SCHEMAS["homework"]) if flags.homework else []
    absences = compact_array(result.absences, SCHEMAS["absence"]) if flags.absences else []
    messages = compact_array(result.messages_of_day, SCHEMAS["message"]) if flags.messages_of_day else []

    tt_range = date_ranges.timetable
    holiday_by_date = build_holiday_by_date(holidays, to_ymd(tt_range.start), to_ymd(tt_range.end))
    today_ymd = to_ymd(base_now.date())
    active_holiday = find_active_holiday(holidays, today_ymd)

    # 只放本週期第一次出現的警告，其他學生已帶過的不重複
    new_warnings: List[str] = []

    def add_warning(msg: Optional[str]) -> None:
        if cycle_warnings.add(msg):
            new_warnings.append(msg)

    for msg in module.config_warnings if module else []:
        add_warning(msg)
    for msg in student.config_warnings:
        add_warning(msg)
    for msg in fetch_warnings or []:
        add_warning(msg)

    if active_holiday is not None:
        logger.debug(f"{tag}假日中（{active_holiday.long_name or active_holiday.name}），略過無課程警告")
    elif flags.timetable and tt_range.next_days > 0 and not timetable:
        add_warning(check_empty_data_warning(timetable, "lessons", student.title))

    payload = GotDataPayload(
        title=student.title,
        student_id=student.student_id,
        config=student.payload_config(),
        time_units=_time_units(raw_timegrid, result.timetable),
        timetable_range=timetable,
        exams=exams,
        homeworks=homeworks,
        absences=absences,
        messages_of_day=messages,
        holidays=holidays,
        holiday_by_date=holiday_by_date,
        current_holiday=active_holiday,
        warnings=new_warnings,
    )
    logger.debug(
        f"{tag}✅ payload：{len(timetable)} timetable, {len(exams)} exams, {len(homeworks)} homework, "
        f"{len(absences)} absences, {len(messages)} messages"
    )

    if module is not None and module.dump_backend_payloads:
        write_debug_dump(payload, student, settings or Settings.from_env())

    return payload


def _package_version() -> str:
    try:
        return metadata.version("untis-mirror-core")
    except metadata.PackageNotFoundError:
        return "unknown"


def _dump_meta() -> Dict[str, Any]:
    return {
        "moduleVersion": _package_version(),
        "pythonVersion": sys.version.split()[0],
        "platform": sys.platform,
        "arch": platform.machine(),
        "hostname": try_or_null(socket.gethostname) or "unknown",
        "pid": os.getpid(),
        "fetchedAt": datetime.now(timezone.utc).isoformat(),
    }


def redact(obj: Any) -> Any:
    """回傳遮蔽敏感欄位後的複本，不修改原物件"""
    if isinstance(obj, dict):
        return {k: REDACTED if _REDACT_KEY.search(str(k)) else redact(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [redact(v) for v in obj]
    return obj


def prune_debug_dumps(dump_dir: Path, keep: int) -> List[Path]:
    """只保留最新的 keep 份 dump，回傳被刪除的檔案"""
    dumps = sorted(dump_dir.glob(f"*{_DUMP_SUFFIX}"), key=lambda p: (p.stat().st_mtime, p.name))
    removed = dumps[:-keep] if keep > 0 else dumps
    for path in removed:
        path.unlink(missing_ok=True)
    return removed


def write_debug_dump(payload: GotDataPayload, student: StudentConfig, settings: Settings) -> Optional[Path]:
    """輸出遮蔽過的 payload 供除錯；I/O 錯誤只記錄，不往外拋"""
    tag = student_tag(student)
    try:
        dump_dir = Path(settings.dump_dir)
        dump_dir.mkdir(parents=True, exist_ok=True)
        safe_title = re.sub(r"[^a-zA-Z0-9._-]", "_", student.title or "unknown")
        stem = f"{int(time.time() * 1000)}_{safe_title}"

        body = redact(payload.to_wire())
        ordered = {"meta": _dump_meta(), **body}
        text = json.dumps(ordered, ensure_ascii=False, indent=2)
        # 同一毫秒內同名時加上序號，不覆寫既有檔案
        for n in itertools.count():
            target = dump_dir / f"{stem}{f'_{n}' if n else ''}{_DUMP_SUFFIX}"
            try:
                with open(target, "x", encoding="utf-8") as f:
                    f.write(text)
                break
            except FileExistsError:
                continue
        prune_debug_dumps(dump_dir, settings.dump_retention)
        logger.debug(f"{tag}📝 已寫入 debug dump：{target}")
        return target
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"{tag}❌ 寫入 debug dump 失敗：{e}")
        return None
