import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from untis_mirror_core.abc.api_client_abc import BaseApiClientABC
from untis_mirror_core.config import Settings, StudentConfig
from untis_mirror_core.fetch.models import AuthContext, AuthTarget, StudentCredential


class FakeApiClient(BaseApiClientABC):
    """記憶體中的假 API：可設定每種資料的回應、延遲與錯誤，並記錄呼叫"""

    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        delays: Optional[Dict[str, float]] = None,
        errors: Optional[Dict[str, BaseException]] = None,
        auth_error: Optional[BaseException] = None,
        logout_error: Optional[BaseException] = None,
        person_id: int = 100,
        app_data: Optional[Dict[str, Any]] = None,
    ):
        self.responses = responses or {}
        self.delays = delays or {}
        self.errors = errors or {}
        self.auth_error = auth_error
        self.logout_error = logout_error
        self.person_id = person_id
        self.app_data = app_data or {}
        self.calls: List[tuple] = []
        self.logouts = 0

    async def authenticate(self, credential: StudentCredential) -> AuthContext:
        self.calls.append(("authenticate", credential.key))
        if self.auth_error is not None:
            raise self.auth_error
        return AuthContext(
            mode=credential.mode,
            school=getattr(credential, "school", None),
            server=getattr(credential, "server", "webuntis.com"),
            token="token",
            person_id=self.person_id,
            app_data=self.app_data,
        )

    async def logout(self, auth: AuthContext) -> None:
        self.logouts += 1
        if self.logout_error is not None:
            raise self.logout_error

    async def _respond(self, data_type: str, student_id: Optional[int] = None) -> List[Any]:
        self.calls.append((data_type, student_id))
        if data_type in self.delays:
            await asyncio.sleep(self.delays[data_type])
        if data_type in self.errors:
            raise self.errors[data_type]
        return list(self.responses.get(data_type, []))

    def count(self, data_type: str) -> int:
        return sum(1 for c in self.calls if c[0] == data_type)

    async def get_timetable(self, auth, start, end, student_id, options=None):
        return await self._respond("timetable", student_id)

    async def get_exams(self, auth, start, end, student_id, options=None):
        return await self._respond("exams", student_id)

    async def get_homework(self, auth, start, end, student_id, options=None):
        return await self._respond("homework", student_id)

    async def get_absences(self, auth, start, end, student_id, options=None):
        return await self._respond("absences", student_id)

    async def get_messages_of_day(self, auth, day, options=None):
        return await self._respond("messagesOfDay")

    async def get_timegrid(self, auth):
        return await self._respond("timegrid")

    async def get_holidays(self, auth):
        return await self._respond("holidays")


def make_target(student_id: int = 100, mode: str = "qr") -> AuthTarget:
    auth = AuthContext(mode=mode, server="demo.webuntis.com", school="demo", person_id=student_id)
    return AuthTarget(mode=mode, server=auth.server, school=auth.school, student_id=student_id, auth=auth)


@pytest.fixture
def fake_api():
    return FakeApiClient


@pytest.fixture
def base_now() -> datetime:
    # 2025-01-05 是週日
    return datetime(2025, 1, 5, 9, 0)


@pytest.fixture
def qr_student() -> StudentConfig:
    return StudentConfig.model_validate({
        "title": "Max",
        "qrcode": "untis://setschool?url=demo.webuntis.com&school=demo&user=max&key=SECRET",
        "displayMode": "lessons,homework,messagesofday",
        "nextDays": 3,
    })


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(dump_dir=str(tmp_path / "dumps"), dump_retention=2)


@pytest.fixture
def target_factory():
    return make_target
