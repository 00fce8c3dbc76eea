from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import date
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from untis_mirror_core.fetch.models import AuthContext, RawItem, StudentCredential


class BaseAuthProviderABC(ABC):
    """
    認證層的抽象基底類，負責登入與登出上游系統。
    """
    @abstractmethod
    async def authenticate(self, credential: StudentCredential) -> AuthContext:
        """登入並回傳 AuthContext；憑證錯誤或 QR token 過期時拋出 AuthError"""
        pass

    async def logout(self, auth: AuthContext) -> None:
        pass


class BaseApiClientABC(ABC):
    """
    資料抓取層的抽象基底類，規範 orchestrator 需要的所有資料端點。
    每個方法回傳上游原始資料的 list，失敗時直接拋出例外。
    """
    @abstractmethod
    async def authenticate(self, credential: StudentCredential) -> AuthContext:
        pass

    async def logout(self, auth: AuthContext) -> None:
        """釋放連線；預設不做任何事"""
        pass

    @abstractmethod
    async def get_timetable(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        pass

    @abstractmethod
    async def get_exams(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        pass

    @abstractmethod
    async def get_homework(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        pass

    @abstractmethod
    async def get_absences(self, auth: AuthContext, start: date, end: date, student_id: Optional[int], options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        pass

    @abstractmethod
    async def get_messages_of_day(self, auth: AuthContext, day: date, options: Optional[Dict[str, Any]] = None) -> List[RawItem]:
        pass

    @abstractmethod
    async def get_timegrid(self, auth: AuthContext) -> List[RawItem]:
        pass

    @abstractmethod
    async def get_holidays(self, auth: AuthContext) -> List[RawItem]:
        pass
