from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional, Union
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator

from untis_mirror_core.config import StudentConfig

# 基礎型別定義
RawItem = Dict[str, Any]  # 上游 API 的原始資料，欄位名稱隨版本變動
DataType = Literal["timetable", "exams", "homework", "absences", "messagesOfDay"]

DATA_TYPES: List[str] = ["timetable", "exams", "homework", "absences", "messagesOfDay"]


class UntisError(Exception):
    """本套件所有錯誤的基底類別"""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FetchError(UntisError):
    """向上游抓取資料時發生的暫時性錯誤（網路、5xx、逾時）"""
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthError(UntisError):
    """認證失敗（帳密錯誤、QR token 過期），對該憑證群組是致命錯誤"""
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ConfigError(UntisError):
    """設定中缺少可用的憑證"""
    pass


class QrCredential(BaseModel):
    """以 QR code 登入的憑證"""
    model_config = ConfigDict(frozen=True)

    qrcode: str

    @property
    def mode(self) -> Literal["qr"]:
        return "qr"

    @property
    def key(self) -> str:
        return f"qrcode:{self.qrcode}"


class PasswordCredential(BaseModel):
    """學校 + 帳密登入的憑證；parent=True 表示使用模組層級的家長帳號"""
    model_config = ConfigDict(frozen=True)

    school: str
    username: str
    password: str
    server: str = "webuntis.com"
    parent: bool = False

    @property
    def mode(self) -> Literal["direct", "parent"]:
        return "parent" if self.parent else "direct"

    @property
    def key(self) -> str:
        prefix = "parent" if self.parent else "user"
        return f"{prefix}:{self.username}@{self.server}/{self.school}"


StudentCredential = Union[QrCredential, PasswordCredential]


class AuthContext(BaseModel):
    """認證後的連線資訊（bearer token、cookies、解析出的 personId 等）"""
    mode: Literal["qr", "direct", "parent"]
    school: Optional[str] = None
    server: str = "webuntis.com"
    token: Optional[str] = None
    cookies: Dict[str, str] = Field(default_factory=dict)
    person_id: Optional[int] = None
    tenant_id: Optional[str] = None
    school_year_id: Optional[int] = None
    app_data: Dict[str, Any] = Field(default_factory=dict)
    credential_key: Optional[str] = None  # 登入所用憑證的 key，作為每個憑證的快取分區


class AuthTarget(BaseModel):
    """一次資料抓取要嘗試的認證目標"""
    mode: Literal["qr", "direct", "parent"]
    server: str
    school: Optional[str] = None
    student_id: Optional[int] = None
    auth: AuthContext

    def describe(self) -> str:
        if self.mode == "qr":
            return f"QR login (id={self.student_id})" if self.student_id else "QR login"
        if self.mode == "parent":
            return f"parent (studentId={self.student_id})"
        return f"direct login (studentId={self.student_id})"


class DateRange(BaseModel):
    """單一資料類型的抓取區間"""
    start: date
    end: date
    past_days: int = 0
    next_days: int = 0

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.next_days > 0 and self.end < self.start:
            raise ValueError(f"end {self.end} 早於 start {self.start}")
        return self


class DateRanges(BaseModel):
    """四種需要區間的資料類型；messagesOfDay 只看當天"""
    timetable: DateRange
    exams: DateRange
    homework: DateRange
    absences: DateRange


class FetchFlags(BaseModel):
    """要抓取哪些資料類型"""
    timetable: bool = False
    exams: bool = False
    homework: bool = False
    absences: bool = False
    messages_of_day: bool = False
    timegrid: bool = False
    holidays: bool = False

    @classmethod
    def from_student(cls, student: StudentConfig) -> "FetchFlags":
        """依照學生啟用的 widget 決定抓取項目"""
        grid = student.wants_widget("grid")
        lessons = student.wants_widget("lessons")
        return cls(
            timetable=grid or lessons,
            exams=grid or student.wants_widget("exams"),
            homework=grid or student.wants_widget("homework"),
            absences=student.wants_widget("absences"),
            messages_of_day=student.wants_widget("messagesofday"),
            timegrid=grid or lessons,
            holidays=grid or lessons,
        )

    def enabled(self, data_type: str) -> bool:
        if data_type == "messagesOfDay":
            return self.messages_of_day
        return bool(getattr(self, data_type))


class FetchRequest(BaseModel):
    """單一學生、單一抓取週期的請求；只被 orchestrator 使用一次"""
    student: StudentConfig
    date_ranges: DateRanges
    fetch_flags: FetchFlags
    auth_targets: List[AuthTarget]
    base_now: datetime


class FetchResult(BaseModel):
    """orchestrator 的輸出：五個陣列，成功時有資料，否則為空"""
    timetable: List[Any] = Field(default_factory=list)
    exams: List[Any] = Field(default_factory=list)
    homeworks: List[Any] = Field(default_factory=list)
    absences: List[Any] = Field(default_factory=list)
    messages_of_day: List[Any] = Field(default_factory=list)
