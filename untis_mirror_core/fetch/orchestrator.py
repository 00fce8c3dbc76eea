"""資料抓取協調器

對單一學生同時發出（最多）五種資料的請求，每種資料依序嘗試各個認證目標，
任一分支失敗都不影響其他分支。
"""
from __future__ import annotations
import asyncio
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from untis_mirror_core.abc.api_client_abc import BaseApiClientABC
from untis_mirror_core.config import StudentConfig
from untis_mirror_core.fetch.date_range import from_ymd, homework_filter_window
from untis_mirror_core.fetch.models import (
    AuthContext,
    AuthTarget,
    FetchRequest,
    FetchResult,
    RawItem,
)
from untis_mirror_core.utils.error_utils import WarningSet, wrap_async
from untis_mirror_core.utils.logger import get_logger, student_tag

logger = get_logger(logger_level="INFO")

# (描述, 無參數的 coroutine 工廠)
Attempt = Tuple[str, Callable[[], Awaitable[Any]]]


async def first_valid_result(
    attempts: Sequence[Attempt],
    *,
    context: Optional[Dict[str, Any]] = None,
    warnings: Optional[WarningSet] = None,
) -> List[RawItem]:
    """依序執行 attempts，第一個回傳 list（可為空）的結果即為答案

    失敗的嘗試交由 wrap_async 記錄並轉成警告；全部失敗回傳空 list。
    """
    context = context or {}
    for description, factory in attempts:
        result = await wrap_async(
            factory,
            logger=logger,
            context={**context, "target": description},
            default_value=None,
            warnings=warnings,
        )
        if isinstance(result, list):
            logger.debug(f"{context.get('data_type')}: {len(result)} 筆 ({description})")
            return result
        if result is not None:
            logger.warning(f"⚠️ {context.get('data_type')} 回傳格式錯誤 ({description})：{type(result).__name__}")
    return []


def filter_homework_by_due_date(items: List[RawItem], window: Optional[Tuple[date, date]]) -> List[RawItem]:
    """依 dueDate 篩選作業；沒有 dueDate 的項目保留，無法解析的日期捨棄"""
    if window is None:
        return items
    start, end = window
    kept = []
    for hw in items:
        due = hw.get("dueDate") if isinstance(hw, dict) else None
        if not due:
            kept.append(hw)
            continue
        try:
            due_date = from_ymd(int(due))
        except (TypeError, ValueError):
            logger.debug(f"略過無法解析的 dueDate：{due!r}")
            continue
        if start <= due_date <= end:
            kept.append(hw)
    return kept


def build_auth_targets(student: StudentConfig, auth: AuthContext) -> List[AuthTarget]:
    """由認證結果組出要嘗試的目標清單

    手動設定的 studentId 優先；家長帳號依學生名稱比對其子女；
    一般登入若手動 studentId 與登入者不同，再以登入者本身作為備援。
    """
    student_id = student.student_id
    if student_id is None and auth.mode == "parent":
        children = (auth.app_data.get("user") or {}).get("students") or []
        match = next(
            (c for c in children if isinstance(c, dict) and str(c.get("displayName") or c.get("name") or "").strip() == student.title),
            None,
        )
        if match is None and children and isinstance(children[0], dict):
            match = children[0]
        if match is not None:
            student_id = match.get("id")
    if student_id is None:
        student_id = auth.person_id

    targets = [AuthTarget(mode=auth.mode, server=auth.server, school=auth.school, student_id=student_id, auth=auth)]
    if auth.mode != "parent" and auth.person_id is not None and student_id != auth.person_id:
        targets.append(AuthTarget(mode=auth.mode, server=auth.server, school=auth.school, student_id=auth.person_id, auth=auth))
    return targets


class FetchOrchestrator:
    """同時抓取單一學生的 timetable / exams / homework / absences / messagesOfDay"""

    def __init__(self, api: BaseApiClientABC):
        self._api = api

    def _attempts(self, request: FetchRequest, call: Callable[[AuthTarget], Awaitable[List[RawItem]]]) -> List[Attempt]:
        # 用預設參數綁定 target，避免 closure 共用最後一個值
        return [(target.describe(), lambda t=target: call(t)) for target in request.auth_targets]

    async def _fetch_timetable(self, request: FetchRequest, warnings: WarningSet) -> List[RawItem]:
        r = request.date_ranges.timetable
        student = request.student

        async def call(target: AuthTarget) -> List[RawItem]:
            options = {
                "use_class_timetable": student.use_class_timetable,
                "class_name": student.class_name,
                "class_id": student.class_id,
            }
            return await self._api.get_timetable(target.auth, r.start, r.end, target.student_id, options)

        return await first_valid_result(self._attempts(request, call), context=self._context(request, "timetable"), warnings=warnings)

    async def _fetch_exams(self, request: FetchRequest, warnings: WarningSet) -> List[RawItem]:
        r = request.date_ranges.exams

        async def call(target: AuthTarget) -> List[RawItem]:
            return await self._api.get_exams(target.auth, r.start, r.end, target.student_id)

        return await first_valid_result(self._attempts(request, call), context=self._context(request, "exams"), warnings=warnings)

    async def _fetch_homework(self, request: FetchRequest, warnings: WarningSet) -> List[RawItem]:
        r = request.date_ranges.homework

        async def call(target: AuthTarget) -> List[RawItem]:
            return await self._api.get_homework(target.auth, r.start, r.end, target.student_id)

        items = await first_valid_result(self._attempts(request, call), context=self._context(request, "homework"), warnings=warnings)
        window = homework_filter_window(request.student, request.base_now)
        filtered = filter_homework_by_due_date(items, window)
        if window is not None:
            logger.debug(f"{student_tag(request.student)}homework 依 dueDate 篩選 {window[0]} ~ {window[1]}：{len(items)} → {len(filtered)}")
        return filtered

    async def _fetch_absences(self, request: FetchRequest, warnings: WarningSet) -> List[RawItem]:
        r = request.date_ranges.absences

        async def call(target: AuthTarget) -> List[RawItem]:
            return await self._api.get_absences(target.auth, r.start, r.end, target.student_id)

        return await first_valid_result(self._attempts(request, call), context=self._context(request, "absences"), warnings=warnings)

    async def _fetch_messages_of_day(self, request: FetchRequest, warnings: WarningSet) -> List[RawItem]:
        day = request.base_now.date()

        async def call(target: AuthTarget) -> List[RawItem]:
            return await self._api.get_messages_of_day(target.auth, day)

        return await first_valid_result(self._attempts(request, call), context=self._context(request, "messagesOfDay"), warnings=warnings)

    @staticmethod
    def _context(request: FetchRequest, data_type: str) -> Dict[str, Any]:
        first = request.auth_targets[0] if request.auth_targets else None
        return {
            "data_type": data_type,
            "student_title": request.student.title,
            "school": first.school if first else request.student.school,
            "server": first.server if first else request.student.server,
        }

    @staticmethod
    async def _empty() -> List[RawItem]:
        return []

    async def fetch(self, request: FetchRequest, warnings: Optional[WarningSet] = None) -> FetchResult:
        """同時發出所有啟用的抓取並等待全部完成

        Args:
            request: 單一學生的抓取請求
            warnings: 本週期共用的警告集合

        Returns:
            FetchResult: 五個陣列，失敗或停用的類型為空陣列
        """
        warnings = warnings if warnings is not None else WarningSet()
        flags = request.fetch_flags
        tag = student_tag(request.student)

        branches: Dict[str, Awaitable[List[RawItem]]] = {}
        if flags.timetable and request.date_ranges.timetable.next_days > 0:
            branches["timetable"] = self._fetch_timetable(request, warnings)
        else:
            logger.debug(f"{tag}timetable：略過")
            branches["timetable"] = self._empty()
        branches["exams"] = self._fetch_exams(request, warnings) if flags.exams else self._empty()
        branches["homework"] = self._fetch_homework(request, warnings) if flags.homework else self._empty()
        branches["absences"] = self._fetch_absences(request, warnings) if flags.absences else self._empty()
        branches["messagesOfDay"] = self._fetch_messages_of_day(request, warnings) if flags.messages_of_day else self._empty()

        logger.info(f"⚡ {tag}同時抓取 {sum(1 for k in branches if self._enabled(request, k))} 種資料")
        results = await asyncio.gather(*branches.values(), return_exceptions=True)

        collected: Dict[str, List[RawItem]] = {}
        for data_type, result in zip(branches.keys(), results):
            if isinstance(result, BaseException):
                # wrap_async 已吸收抓取錯誤，這裡只會是篩選等非網路錯誤
                logger.error(f"❌ {tag}{data_type} 發生未預期錯誤：{result}")
                collected[data_type] = []
            else:
                collected[data_type] = result

        return FetchResult(
            timetable=collected["timetable"],
            exams=collected["exams"],
            homeworks=collected["homework"],
            absences=collected["absences"],
            messages_of_day=collected["messagesOfDay"],
        )

    @staticmethod
    def _enabled(request: FetchRequest, data_type: str) -> bool:
        if data_type == "timetable":
            return request.fetch_flags.timetable and request.date_ranges.timetable.next_days > 0
        return request.fetch_flags.enabled(data_type)
