"""短時效的記憶體回應快取

以「憑證 + 影響抓取內容的設定」為 key，避免多個前端實例或短輪詢間隔重複打上游 API。
同時採用兩種淘汰方式：讀取時發現過期立即刪除，以及背景定期清除。
"""
from __future__ import annotations
import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from untis_mirror_core.config import StudentConfig
from untis_mirror_core.payload.models import GotDataPayload
from untis_mirror_core.utils.logger import get_logger

logger = get_logger(logger_level="INFO")


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float
    payload: GotDataPayload


class ResponseCache:
    """payload 快取；entry 不帶請求者 id，交付時由呼叫端填入"""

    def __init__(
        self,
        ttl: float = 30.0,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            ttl: 存活秒數
            sweep_interval: 背景清除間隔秒數
            clock: 取得目前時間的函式，測試時可替換
        """
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def sign(student: StudentConfig, credential_key: str, debug_date: Optional[str] = None) -> Optional[str]:
        """產生快取 key

        包含所有會改變抓取內容（含 homework 篩選）的設定；純顯示用欄位不列入，
        因為 config 會在交付時替換成請求者自己的設定。
        序列化失敗時回傳 None，呼叫端視為不使用快取。
        """
        fields: Dict[str, Any] = {
            "credential": credential_key,
            "title": student.title,
            "studentId": student.student_id,
            "displayMode": student.display_mode,
            "nextDays": student.next_days,
            "pastDays": student.past_days,
            "daysToShow": student.days_to_show,
            "useClassTimetable": student.use_class_timetable,
            "class": student.class_name,
            "classId": student.class_id,
            "gridNextDays": student.grid.next_days,
            "gridPastDays": student.grid.past_days,
            "gridWeekView": student.grid.week_view,
            "examsNextDays": student.exams.next_days,
            "examsPastDays": student.exams.past_days,
            "examsDaysAhead": student.exams_days_ahead,
            "examsWidgetDaysAhead": student.exams.days_ahead,
            "homeworkNextDays": student.homework.next_days,
            "homeworkPastDays": student.homework.past_days,
            "homeworkDaysAhead": student.homework.days_ahead,
            "absencesNextDays": student.absences.next_days,
            "absencesPastDays": student.absences.past_days,
            "absencesPastDaysLegacy": student.absences_past_days,
            "absencesFutureDays": student.absences_future_days,
            "debugDate": debug_date,
        }
        try:
            return json.dumps(fields, sort_keys=True)
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ 無法產生快取 key，本次不使用快取：{e}")
            return None

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl

    def get(self, signature: Optional[str]) -> Optional[GotDataPayload]:
        if signature is None:
            return None
        entry = self._entries.get(signature)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[signature]
            logger.debug("🗑️ 快取已過期，移除")
            return None
        return entry.payload

    def set(self, signature: Optional[str], payload: GotDataPayload) -> None:
        if signature is None:
            return
        if payload.id is not None:
            payload = payload.model_copy(update={"id": None})
        self._entries[signature] = CacheEntry(timestamp=self._clock(), payload=payload)

    def delete(self, signature: str) -> None:
        self._entries.pop(signature, None)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """移除所有過期 entry，回傳移除數量"""
        now = self._clock()
        stale = [sig for sig, entry in self._entries.items() if self._expired(entry, now)]
        for sig in stale:
            del self._entries[sig]
        if stale:
            logger.debug(f"🧹 清除 {len(stale)} 筆過期快取")
        return len(stale)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start_sweeper(self) -> None:
        """啟動背景清除；需在 event loop 中呼叫"""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, signature: object) -> bool:
        return signature in self._entries
