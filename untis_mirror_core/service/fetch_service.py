"""FETCH_DATA 處理流程

依憑證將學生分組；每組登入一次、依序抓取組內學生、最後一定登出。
不同憑證群組之間同時進行，某組認證失敗不影響其他組。
"""
from __future__ import annotations
import asyncio
import inspect
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from untis_mirror_core.abc.api_client_abc import BaseApiClientABC
from untis_mirror_core.cache.response_cache import ResponseCache
from untis_mirror_core.config import ModuleConfig, Settings, StudentConfig
from untis_mirror_core.fetch.date_range import calculate_fetch_ranges
from untis_mirror_core.fetch.models import (
    AuthContext,
    ConfigError,
    FetchFlags,
    FetchRequest,
    StudentCredential,
)
from untis_mirror_core.fetch.orchestrator import FetchOrchestrator, build_auth_targets
from untis_mirror_core.payload.builder import build_got_data_payload
from untis_mirror_core.payload.compactor import compact_holidays
from untis_mirror_core.payload.models import CompactHoliday, GotDataPayload
from untis_mirror_core.utils.error_utils import WarningSet, wrap_async
from untis_mirror_core.utils.logger import get_logger, set_log_level, student_tag

logger = get_logger(logger_level="INFO")

# send(notification, payload)，可為同步或非同步函式
SendFn = Callable[[str, Dict[str, Any]], Any]


class FetchService:
    """將 FETCH_DATA 請求轉成每位學生一份 GOT_DATA"""

    def __init__(
        self,
        api: BaseApiClientABC,
        send: SendFn,
        cache: Optional[ResponseCache] = None,
        settings: Optional[Settings] = None,
    ):
        self._api = api
        self._send = send
        self._settings = settings or Settings.from_env()
        self.cache = cache or ResponseCache(ttl=self._settings.cache_ttl, sweep_interval=self._settings.cache_sweep_interval)
        self._orchestrator = FetchOrchestrator(api)

    async def handle_fetch_data(self, raw_config: Dict[str, Any], identifier: Optional[str] = None) -> int:
        """處理一次 FETCH_DATA

        Args:
            raw_config: 已正規化的模組設定（camelCase）
            identifier: 請求者識別碼，交付時填入 payload.id

        Returns:
            int: 送出的 GOT_DATA 數量
        """
        module = ModuleConfig.from_fetch_data(raw_config)
        if module.log_level and not set_log_level(module.log_level):
            logger.warning(f"⚠️ 無效的 logLevel：{module.log_level}")
        groups = self.group_by_credential(module)
        base_now = module.base_now()
        cycle_warnings = WarningSet()
        logger.info(f"🚀 開始抓取：{len(module.students)} 位學生，{len(groups)} 個憑證群組")

        results = await asyncio.gather(
            *(
                self.process_group(credential, students, module, identifier, base_now, cycle_warnings)
                for credential, students in groups.values()
            ),
            return_exceptions=True,
        )
        delivered = 0
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"❌ 憑證群組處理失敗：{result}")
            else:
                delivered += result
        logger.info(f"✅ 抓取完成：送出 {delivered} 份資料")
        return delivered

    @staticmethod
    def group_by_credential(module: ModuleConfig) -> Dict[str, Tuple[StudentCredential, List[StudentConfig]]]:
        """依 credential key 分組，保留設定中的順序；缺少憑證的學生記錄後略過"""
        groups: Dict[str, Tuple[StudentCredential, List[StudentConfig]]] = {}
        for student in module.students:
            try:
                credential = student.credential(module)
            except ConfigError as e:
                logger.error(f"{student_tag(student)}❌ {e.message}")
                continue
            groups.setdefault(credential.key, (credential, []))[1].append(student)
        return groups

    async def process_group(
        self,
        credential: StudentCredential,
        students: List[StudentConfig],
        module: ModuleConfig,
        identifier: Optional[str],
        base_now: datetime,
        cycle_warnings: WarningSet,
    ) -> int:
        """處理單一憑證群組，回傳送出的 payload 數量"""
        delivered = 0
        pending: List[Tuple[StudentConfig, Optional[str]]] = []
        for student in students:
            signature = self.cache.sign(student, credential.key, module.debug_date)
            cached = self.cache.get(signature)
            if cached is not None:
                logger.info(f"{student_tag(student)}✨ 使用快取資料")
                if await self._safe_deliver(cached, student, identifier):
                    delivered += 1
            else:
                pending.append((student, signature))
        if not pending:
            return delivered

        first = pending[0][0]
        context = {
            "data_type": "auth",
            "student_title": first.title,
            "school": getattr(credential, "school", None),
            "server": getattr(credential, "server", None),
        }
        try:
            auth = await wrap_async(lambda: self._api.authenticate(credential), logger=logger, context=context, rethrow=True)
        except Exception as e:
            # 認證失敗：這一組本週期不送任何 payload
            logger.error(f"❌ 認證失敗（{credential.mode}），略過 {len(pending)} 位學生：{e}")
            return delivered

        try:
            flags_by_student = [FetchFlags.from_student(s) for s, _ in pending]
            group_warnings = WarningSet()
            raw_timegrid: List[Any] = []
            holidays: List[CompactHoliday] = []
            if any(f.timegrid for f in flags_by_student):
                raw_timegrid = await wrap_async(
                    lambda: self._api.get_timegrid(auth),
                    logger=logger, context={**context, "data_type": "timegrid"},
                    default_value=[], warnings=group_warnings,
                )
            if any(f.holidays for f in flags_by_student):
                raw_holidays = await wrap_async(
                    lambda: self._api.get_holidays(auth),
                    logger=logger, context={**context, "data_type": "holidays"},
                    default_value=[], warnings=group_warnings,
                )
                holidays = [CompactHoliday.model_validate(h) for h in compact_holidays(raw_holidays)]

            for (student, signature), flags in zip(pending, flags_by_student):
                try:
                    payload = await self.fetch_student(
                        student, flags, auth, module, base_now,
                        raw_timegrid=raw_timegrid,
                        holidays=holidays,
                        warnings=WarningSet(group_warnings.to_list()),
                        cycle_warnings=cycle_warnings,
                    )
                except Exception as e:
                    logger.error(f"{student_tag(student)}❌ 抓取失敗：{e}")
                    continue
                self.cache.set(signature, payload)
                if await self._safe_deliver(payload, student, identifier):
                    delivered += 1
        finally:
            try:
                await self._api.logout(auth)
            except Exception as e:
                logger.warning(f"⚠️ 登出失敗：{e}")
        return delivered

    async def fetch_student(
        self,
        student: StudentConfig,
        flags: FetchFlags,
        auth: AuthContext,
        module: ModuleConfig,
        base_now: datetime,
        *,
        raw_timegrid: Optional[List[Any]] = None,
        holidays: Optional[List[CompactHoliday]] = None,
        warnings: Optional[WarningSet] = None,
        cycle_warnings: Optional[WarningSet] = None,
    ) -> GotDataPayload:
        """抓取並組裝單一學生的 payload"""
        warnings = warnings if warnings is not None else WarningSet()
        date_ranges = calculate_fetch_ranges(student, base_now, flags, is_debug=bool(module.debug_date))
        request = FetchRequest(
            student=student,
            date_ranges=date_ranges,
            fetch_flags=flags,
            auth_targets=build_auth_targets(student, auth),
            base_now=base_now,
        )
        logger.info(f"{student_tag(student)}📡 抓取中（{', '.join(t.describe() for t in request.auth_targets)}）")
        result = await self._orchestrator.fetch(request, warnings)
        return build_got_data_payload(
            student,
            result,
            flags,
            date_ranges,
            base_now,
            raw_timegrid=raw_timegrid,
            holidays=holidays,
            module=module,
            fetch_warnings=warnings,
            cycle_warnings=cycle_warnings,
            settings=self._settings,
        )

    async def _safe_deliver(self, payload: GotDataPayload, student: StudentConfig, identifier: Optional[str]) -> bool:
        """送出失敗只影響該學生，同組其他學生照常處理"""
        try:
            await self._deliver(payload, student, identifier)
        except Exception as e:
            logger.error(f"{student_tag(student)}❌ 送出失敗：{e}")
            return False
        return True

    async def _deliver(self, payload: GotDataPayload, student: StudentConfig, identifier: Optional[str]) -> None:
        """填入請求者 id 與其設定後送出；快取內的 payload 不會被修改"""
        tagged = payload.model_copy(update={"id": identifier, "config": student.payload_config()})
        result = self._send("GOT_DATA", tagged.to_wire())
        if inspect.isawaitable(result):
            await result
