"""抓取區間計算

將 widget 設定中的「今天往前/往後幾天」轉成每種資料類型實際的起訖日期。
全部為純函式，不依賴網路或狀態。
"""
from __future__ import annotations
from datetime import date, datetime, timedelta
from typing import Iterator, Optional, Tuple

from untis_mirror_core.config import StudentConfig
from untis_mirror_core.fetch.models import DateRange, DateRanges, FetchFlags

HOMEWORK_UNSET = 999  # 未設定 homework 篩選時的哨兵值
DEFAULT_HOMEWORK_LOOKAHEAD = 28
DEFAULT_EXAMS_DAYS = 21


def to_ymd(d: date) -> int:
    """date → YYYYMMDD 整數"""
    return d.year * 10000 + d.month * 100 + d.day


def from_ymd(ymd: int) -> date:
    """YYYYMMDD 整數 → date；格式錯誤時拋出 ValueError"""
    s = str(int(ymd)).zfill(8)
    return date(int(s[0:4]), int(s[4:6]), int(s[6:8]))


def iter_days(start: date, end: date) -> Iterator[date]:
    """逐日列舉 [start, end]（含兩端）"""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def _first_int(*values, default: int = 0) -> int:
    for value in values:
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return default


def week_view_next_days(base_now: datetime, is_debug: bool = False) -> int:
    """週檢視需要往後抓幾天才能涵蓋目標週的週五

    週五 16:00 之後（非 debug 模式）與週末顯示下一週。
    """
    weekday = base_now.weekday()  # 週一 = 0
    week_offset = 0
    if weekday == 4:
        if not is_debug and base_now.hour >= 16:
            week_offset = 1
    elif weekday in (5, 6):
        week_offset = 1
    start_offset = -weekday + week_offset * 7
    return max(0, start_offset + 4)


def calculate_fetch_ranges(
    student: StudentConfig,
    base_now: datetime,
    flags: Optional[FetchFlags] = None,
    is_debug: bool = False,
) -> DateRanges:
    """計算 timetable / exams / homework / absences 的抓取區間

    Args:
        student: 學生設定
        base_now: 基準時間
        flags: 啟用的資料類型，影響 homework 的最大區間
        is_debug: 是否使用 debugDate（停用週五下午切換下一週）

    Returns:
        DateRanges: 各資料類型的區間
    """
    flags = flags or FetchFlags.from_student(student)
    today = base_now.date()

    past_days = _first_int(student.past_days, default=0)
    next_days = _first_int(student.next_days, student.days_to_show, default=2)

    # Timetable / grid
    if student.wants_widget("grid"):
        grid_next = _first_int(student.grid.next_days, default=4)
        grid_past = _first_int(student.grid.past_days, default=0)
        week_view_days = week_view_next_days(base_now, is_debug) if student.grid.week_view else grid_next
        tt_next = max(0, grid_next, week_view_days, next_days)
        tt_past = max(0, grid_past, past_days)
    else:
        tt_next = max(0, next_days)
        tt_past = max(0, past_days)
    # API 的結束日不含當天，因此多加一天
    timetable = DateRange(
        start=today - timedelta(days=tt_past),
        end=today + timedelta(days=tt_next + 1),
        past_days=tt_past,
        next_days=tt_next,
    )

    # Exams
    exams_next = _first_int(student.exams.next_days, student.exams_days_ahead, student.exams.days_ahead, default=0)
    exams_days = exams_next if 1 <= exams_next <= 360 else DEFAULT_EXAMS_DAYS
    exams_past = _first_int(student.exams.past_days, student.past_days, default=0)
    exams = DateRange(
        start=today - timedelta(days=exams_past),
        end=today + timedelta(days=exams_days),
        past_days=exams_past,
        next_days=exams_days,
    )

    # Absences
    abs_past = _first_int(student.absences.past_days, student.absences_past_days, default=0)
    abs_next = _first_int(student.absences.next_days, student.absences_future_days, default=0)
    absences = DateRange(
        start=today - timedelta(days=abs_past),
        end=today + timedelta(days=abs_next),
        past_days=abs_past,
        next_days=abs_next,
    )

    # Homework：取所有啟用 widget 的最大區間，之後再依 dueDate 篩選
    hw_next = _first_int(student.homework.next_days, student.homework.days_ahead, default=0)
    hw_past = _first_int(student.homework.past_days, default=0)
    ranges = [(tt_past, tt_next)]
    if flags.exams and exams_next > 0:
        ranges.append((exams_past, exams_next))
    if flags.absences and (abs_past > 0 or abs_next > 0):
        ranges.append((abs_past, abs_next))
    if hw_next > 0 or hw_past > 0:
        ranges.append((hw_past, hw_next))
    max_past = max(p for p, _ in ranges)
    max_next = max(n for _, n in ranges)
    if hw_next == 0 and max_next < 7:
        max_next = DEFAULT_HOMEWORK_LOOKAHEAD
    homework = DateRange(
        start=today - timedelta(days=max_past),
        end=today + timedelta(days=max_next),
        past_days=max_past,
        next_days=max_next,
    )

    return DateRanges(timetable=timetable, exams=exams, homework=homework, absences=absences)


def homework_filter_window(student: StudentConfig, base_now: datetime) -> Optional[Tuple[date, date]]:
    """homework widget 明確設定 nextDays/pastDays 時的 dueDate 篩選區間；未設定回傳 None"""
    hw_next = _first_int(student.homework.next_days, student.homework.days_ahead, default=HOMEWORK_UNSET)
    hw_past = _first_int(student.homework.past_days, default=HOMEWORK_UNSET)
    if hw_next >= HOMEWORK_UNSET and hw_past >= HOMEWORK_UNSET:
        return None
    today = base_now.date()
    return today - timedelta(days=hw_past), today + timedelta(days=hw_next)
