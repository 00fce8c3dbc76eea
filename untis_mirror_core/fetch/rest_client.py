from __future__ import annotations
import asyncio
import json
import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import client_exceptions
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from untis_mirror_core.abc.api_client_abc import BaseApiClientABC, BaseAuthProviderABC
from untis_mirror_core.config import Settings
from untis_mirror_core.fetch.models import AuthContext, FetchError, RawItem, StudentCredential
from untis_mirror_core.payload.compactor import map_rest_status_to_legacy_code
from untis_mirror_core.utils.logger import get_logger

# 設定日誌
logger = get_logger(logger_level="INFO")

ENDPOINTS: Dict[str, str] = {
    "timetable": "/WebUntis/api/rest/view/v1/timetable/entries",
    "exams": "/WebUntis/api/exams",
    "homework": "/WebUntis/api/homeworks/lessons",
    "absences": "/WebUntis/api/classreg/absences/students",
    "messagesOfDay": "/WebUntis/api/public/news/newsWidgetData",
    "classServices": "/WebUntis/api/classreg/classservices",
    "classFilter": "/WebUntis/api/rest/view/v1/timetable/filter",
}

SLOW_RESPONSE_SECONDS = 10.0

_HTTP_MESSAGES: Dict[int, str] = {
    401: "Authentication failed (HTTP 401): Check credentials or token expired",
    403: "Access forbidden (HTTP 403): Endpoint not available or insufficient permissions",
    404: "Resource not found (HTTP 404): Check school name or studentId",
    429: "Rate limit exceeded (HTTP 429): Too many requests, try again later",
    503: "WebUntis API unavailable (HTTP 503): Server temporarily down",
}


def map_http_error(status: int, body: Any = None, operation: str = "REST API") -> FetchError:
    """HTTP 狀態碼 → 帶有可行動說明的 FetchError"""
    if status in _HTTP_MESSAGES:
        return FetchError(_HTTP_MESSAGES[status], status=status)
    snippet = json.dumps(body, ensure_ascii=False, default=str)[:200] if body else ""
    return FetchError(f"{operation} returned HTTP {status}{': ' + snippet if snippet else ''}", status=status)


def build_headers(auth: AuthContext) -> Dict[str, str]:
    headers = {
        "Cookie": "; ".join(f"{k}={v}" for k, v in auth.cookies.items()),
        "Accept": "application/json",
    }
    if auth.tenant_id:
        headers["Tenant-Id"] = str(auth.tenant_id)
    if auth.school_year_id:
        headers["X-Webuntis-Api-School-Year-Id"] = str(auth.school_year_id)
    if auth.token:
        headers["Authorization"] = f"Bearer {auth.token}"
    return headers


def _ymd(d: date) -> str:
    return d.strftime("%Y%m%d")


def _first_list(data: Any, *paths: str) -> List[Any]:
    """依序找出第一個是 list 的欄位，支援 "data.exams" 形式的巢狀路徑"""
    for path in paths:
        node = data
        for key in path.split(".") if path else []:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, list):
            return node
    return []


def _element(position: Any) -> List[Dict[str, Any]]:
    if isinstance(position, list) and position and isinstance(position[0], dict):
        current = position[0].get("current")
        if isinstance(current, dict):
            return [{"name": current.get("shortName"), "longname": current.get("longName")}]
    return []


def collect_class_candidates(data: Any) -> List[Dict[str, Any]]:
    """走訪整個回應，收集班級型別（或未標型別）的項目，依 id 去重"""
    found: Dict[Any, Dict[str, Any]] = {}

    def add(item: Dict[str, Any]) -> None:
        kind = str(item.get("resourceType") or item.get("elementType") or item.get("type") or item.get("category") or "").upper()
        if kind and kind != "CLASS":
            return
        current = item.get("current") if isinstance(item.get("current"), dict) else {}
        name = (
            item.get("name") or item.get("shortName") or item.get("longName") or item.get("displayName")
            or current.get("shortName") or current.get("name") or current.get("longName")
        )
        if not item.get("id") or not name or item["id"] in found:
            return
        found[item["id"]] = {
            "id": item["id"],
            "name": name,
            "shortName": item.get("shortName") or current.get("shortName") or name,
            "longName": item.get("longName") or current.get("longName") or name,
        }

    def walk(node: Any) -> None:
        if isinstance(node, list):
            for child in node:
                walk(child)
        elif isinstance(node, dict):
            add(node)
            for child in node.values():
                walk(child)

    walk(data)
    return list(found.values())


class RestApiClient(BaseApiClientABC):
    """WebUntis REST API 的 aiohttp 實作；登入由注入的 auth provider 負責"""

    def __init__(self, auth_provider: BaseAuthProviderABC, settings: Optional[Settings] = None):
        self._auth_provider = auth_provider
        self._settings = settings or Settings.from_env()
        self._class_ids: Dict[str, Any] = {}

    async def authenticate(self, credential: StudentCredential) -> AuthContext:
        auth = await self._auth_provider.authenticate(credential)
        if auth.credential_key is None:
            auth = auth.model_copy(update={"credential_key": credential.key})
        return auth

    async def logout(self, auth: AuthContext) -> None:
        await self._auth_provider.logout(auth)

    @retry(
        retry=retry_if_exception_type((
            client_exceptions.ClientConnectionError,
            client_exceptions.ServerTimeoutError,
            asyncio.TimeoutError
        )),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _request(self, auth: AuthContext, path: str, params: Dict[str, Any]) -> Any:
        url = f"https://{auth.server}{path}"
        query = {k: str(v) for k, v in params.items() if v is not None}
        timeout = aiohttp.ClientTimeout(total=self._settings.http_timeout)
        started = time.monotonic()
        async with aiohttp.ClientSession(timeout=timeout) as session:
            logger.debug(f"📡 發送請求：GET {path}")
            async with session.get(url, params=query, headers=build_headers(auth)) as response:
                if response.status >= 400:
                    try:
                        body = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, json.JSONDecodeError):
                        body = await response.text()
                    raise map_http_error(response.status, body)
                data = await response.json(content_type=None)
        elapsed = time.monotonic() - started
        logger.debug(f"📥 收到回應：{path} ({elapsed * 1000:.0f}ms)")
        if elapsed > SLOW_RESPONSE_SECONDS:
            logger.warning(f"⚠️ API 回應緩慢：{path} 花了 {elapsed:.1f}s")
        return data

    async def _get(self, auth: AuthContext, data_type: str, params: Dict[str, Any]) -> Any:
        """呼叫端點；連線錯誤在重試耗盡後轉為 FetchError"""
        try:
            return await self._request(auth, ENDPOINTS[data_type], params)
        except FetchError:
            raise
        except (client_exceptions.ServerTimeoutError, asyncio.TimeoutError) as e:
            raise FetchError(
                f'Connection timeout to WebUntis server "{auth.server}" after {self._settings.http_timeout:.0f}s: '
                "check network or try again"
            ) from e
        except (client_exceptions.ClientConnectionError, ConnectionRefusedError) as e:
            raise FetchError(f'Cannot connect to WebUntis server "{auth.server}": check server name and network') from e
        except client_exceptions.ClientError as e:
            raise FetchError(f"{data_type} request failed: {e}") from e

    async def get_timetable(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        options = options or {}
        use_class = bool(options.get("use_class_timetable"))
        resource_type = "CLASS" if use_class else "STUDENT"
        resource_id = options.get("class_id") if use_class else student_id
        if use_class and not resource_id:
            resource_id = await self.resolve_class_id(auth, start, end, options.get("class_name"), student_id)
        if not resource_id:
            raise FetchError(f"Missing {resource_type} id for timetable request")
        params = {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "resourceType": resource_type,
            "resources": str(resource_id),
            "timetableType": "STANDARD",
        }
        return self.parse_timetable(await self._get(auth, "timetable", params))

    async def resolve_class_id(
        self,
        auth: AuthContext,
        start: date,
        end: date,
        class_name: Optional[str],
        student_id: Optional[int] = None,
    ) -> Any:
        """依班級名稱找出班級 id，結果依憑證、學生與名稱快取

        先查 classservices（該學生看得到的班級），沒有結果再查 timetable/filter。

        Raises:
            FetchError: 找不到班級，或有多個班級卻未指定名稱
        """
        desired = str(class_name).strip() if class_name else ""
        owner = auth.credential_key or f"{auth.mode}:{auth.server}/{auth.school}"
        cache_key = f"{owner}::student::{student_id or ''}::class::{desired.lower()}"
        if cache_key in self._class_ids:
            return self._class_ids[cache_key]

        candidates: List[Dict[str, Any]] = []
        mapped_id = None
        if student_id:
            try:
                data = await self._get(auth, "classServices", {
                    "startDate": _ymd(start), "endDate": _ymd(end), "elementId": student_id,
                })
                candidates = collect_class_candidates(data)
                inner = data.get("data") if isinstance(data, dict) else None
                person_map = inner.get("personKlasseMap") if isinstance(inner, dict) else None
                if isinstance(person_map, dict):
                    mapped_id = person_map.get(str(student_id), person_map.get(student_id))
            except FetchError as e:
                logger.debug(f"classservices 查詢失敗：{e.message}")
        if not candidates:
            try:
                data = await self._get(auth, "classFilter", {
                    "resourceType": "CLASS", "timetableType": "STANDARD",
                    "start": start.isoformat(), "end": end.isoformat(),
                })
                candidates = collect_class_candidates(data)
            except FetchError as e:
                logger.debug(f"timetable/filter 查詢失敗：{e.message}")
        if not candidates:
            raise FetchError("No accessible classes returned by REST API")

        chosen = None
        if desired:
            lower = desired.lower()
            chosen = next(
                (c for c in candidates if any(str(n).lower() == lower for n in (c["name"], c["shortName"], c["longName"]) if n)),
                None,
            )
        elif mapped_id is not None:
            chosen = next((c for c in candidates if str(c["id"]) == str(mapped_id)), None)
        if chosen is None and not desired and len(candidates) == 1:
            chosen = candidates[0]
        if chosen is None:
            available = ", ".join(str(c["name"]) for c in candidates)
            if desired:
                raise FetchError(f'Class "{desired}" not found. Available: {available}')
            raise FetchError(f"Multiple classes available: {available}")

        logger.debug(f"🏫 班級 {chosen['name']} → id={chosen['id']}")
        self._class_ids[cache_key] = chosen["id"]
        return chosen["id"]

    async def get_exams(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        params = {
            "startDate": _ymd(start),
            "endDate": _ymd(end),
            "studentId": student_id if student_id is not None else -1,
            "klasseId": -1,
            "withGrades": "true",
        }
        return self.parse_exams(await self._get(auth, "exams", params), student_id)

    async def get_homework(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        params = {"startDate": _ymd(start), "endDate": _ymd(end)}
        return self.parse_homework(await self._get(auth, "homework", params), student_id)

    async def get_absences(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        params = {
            "startDate": _ymd(start),
            "endDate": _ymd(end),
            "studentId": student_id if student_id is not None else -1,
            "excuseStatusId": -1,
        }
        return self.parse_absences(await self._get(auth, "absences", params))

    async def get_messages_of_day(self, auth: AuthContext, day: date, options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        data = await self._get(auth, "messagesOfDay", {"date": _ymd(day)})
        return _first_list(data, "data.messagesOfDay", "messagesOfDay", "messages", "")

    async def get_timegrid(self, auth: AuthContext) -> List[RawItem]:
        """時間表取自登入時的 appData，不另外打 API"""
        school_year = auth.app_data.get("currentSchoolYear") or {}
        time_grid = school_year.get("timeGrid") or {}
        return list(time_grid.get("units") or [])

    async def get_holidays(self, auth: AuthContext) -> List[RawItem]:
        return _first_list(auth.app_data, "holidays", "data.holidays")

    @staticmethod
    def parse_timetable(resp: Any) -> List[RawItem]:
        """timetable entries 回應 → 課程清單"""
        lessons = []
        for day in _first_list(resp, "days"):
            if not isinstance(day, dict):
                continue
            day_date = str(day.get("date") or "").split("T")[0]
            for entry in day.get("gridEntries") or []:
                duration = entry.get("duration") or {}
                ids = entry.get("ids") or []
                lessons.append({
                    "id": ids[0] if ids else None,
                    "date": day_date,
                    "startTime": str(duration.get("start") or "").partition("T")[2],
                    "endTime": str(duration.get("end") or "").partition("T")[2],
                    "su": _element(entry.get("position2")),
                    "te": _element(entry.get("position1")),
                    "ro": _element(entry.get("position3")),
                    "code": map_rest_status_to_legacy_code(entry.get("status"), entry.get("substitutionText")),
                    "substText": entry.get("substitutionText") or "",
                    "lstext": entry.get("lessonInfo") or "",
                    "activityType": entry.get("type") or "NORMAL_TEACHING_PERIOD",
                    "lessonText": entry.get("lessonText") or "",
                    "status": entry.get("status") or "REGULAR",
                    "statusDetail": entry.get("statusDetail"),
                })
        return lessons

    @staticmethod
    def parse_exams(data: Any, student_id: Optional[int] = None) -> List[RawItem]:
        """只保留指派給該學生的考試；沒有 studentId 時全部保留"""
        exams = []
        for exam in _first_list(data, "data.exams", "exams", ""):
            if not isinstance(exam, dict):
                continue
            if student_id:
                assigned = exam.get("assignedStudents")
                if not isinstance(assigned, list) or not any(isinstance(s, dict) and s.get("id") == student_id for s in assigned):
                    continue
            exams.append({
                "examDate": exam.get("examDate", exam.get("date")),
                "startTime": exam.get("startTime", exam.get("start")),
                "endTime": exam.get("endTime", exam.get("end")),
                "name": exam.get("name") or exam.get("examType") or exam.get("lessonName") or "",
                "subject": exam.get("subject") or exam.get("lessonName") or "",
                "teachers": exam.get("teachers") if isinstance(exam.get("teachers"), list) else [],
                "text": exam.get("text") or exam.get("description") or "",
            })
        return exams

    @staticmethod
    def parse_homework(data: Any, student_id: Optional[int] = None) -> List[RawItem]:
        """作業：以 lessons 補上科目、以 records 補上 elementIds，並依學生篩選與去重"""
        root = data if isinstance(data, dict) else None
        if root is not None and "homeworks" not in root:
            root = root.get("data")
        if not isinstance(root, dict) or not isinstance(root.get("homeworks"), list):
            return []
        lessons = {l["id"]: l for l in root.get("lessons") or [] if isinstance(l, dict) and l.get("id")}
        records = {
            r["homeworkId"]: list(r.get("elementIds") or [])
            for r in root.get("records") or []
            if isinstance(r, dict) and r.get("homeworkId") is not None
        }

        homeworks = []
        seen = set()
        for hw in root["homeworks"]:
            if not isinstance(hw, dict):
                continue
            hw_id = hw.get("id") if hw.get("id") is not None else f"{hw.get('lessonId')}_{hw.get('dueDate')}"
            if hw_id in seen:
                continue
            seen.add(hw_id)
            element_ids = records.get(hw.get("id"), [])
            if student_id is not None and student_id != -1:
                by_element = any(str(e) == str(student_id) for e in element_ids)
                by_field = hw.get("studentId") is not None and str(hw.get("studentId")) == str(student_id)
                if not by_element and not by_field:
                    continue
            lesson = lessons.get(hw.get("lessonId")) or {}
            if lesson.get("subject"):
                su = [{"name": lesson["subject"], "longname": lesson["subject"]}]
            else:
                su = lesson.get("su") or hw.get("su") or []
            homeworks.append({
                "id": hw.get("id"),
                "lessonId": hw.get("lessonId", hw.get("lid")),
                "dueDate": hw.get("dueDate", hw.get("date")),
                "completed": hw.get("completed", hw.get("isDone", False)),
                "text": hw.get("text") or hw.get("homework") or hw.get("remark") or "",
                "remark": hw.get("remark") or "",
                "su": su,
                "elementIds": element_ids,
                "studentId": hw.get("studentId") or (element_ids[0] if element_ids else student_id),
            })
        return homeworks

    @staticmethod
    def parse_absences(data: Any) -> List[RawItem]:
        absences = []
        for a in _first_list(data, "data.absences", "absences", "absentLessons", ""):
            if not isinstance(a, dict):
                continue
            su, te = a.get("su"), a.get("te")
            absences.append({
                "date": next((a[k] for k in ("date", "startDate", "absenceDate", "day") if a.get(k) is not None), None),
                "startTime": a.get("startTime", a.get("start")),
                "endTime": a.get("endTime", a.get("end")),
                "reason": a.get("reason") or a.get("reasonText") or a.get("text") or "",
                "excused": a.get("isExcused", a.get("excused")),
                "student": a.get("student"),
                "su": [{"name": su[0]["name"], "longname": su[0].get("longname") or su[0]["name"]}]
                if isinstance(su, list) and su and isinstance(su[0], dict) and su[0].get("name") else [],
                "te": [{"name": te[0]["name"], "longname": te[0].get("longname") or te[0]["name"]}]
                if isinstance(te, list) and te and isinstance(te[0], dict) and te[0].get("name") else [],
                "lessonId": next((a[k] for k in ("lessonId", "lid", "id") if a.get(k) is not None), None),
            })
        return absences
