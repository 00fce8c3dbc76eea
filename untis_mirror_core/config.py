"""模組設定

包含兩部分：
1. Settings: 由環境變數（.env）載入的執行期設定，例如快取 TTL、debug dump 目錄
2. ModuleConfig / StudentConfig: 前端 FETCH_DATA 傳來的設定（camelCase），
   已由外部做過舊版 key 轉換與驗證，這裡只負責結構化與預設值合併
"""
from __future__ import annotations
import os
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from untis_mirror_core.fetch.models import StudentCredential

load_dotenv()

VALID_WIDGETS = ["grid", "lessons", "exams", "homework", "absences", "messagesofday"]

# 學生設定中不可從模組層級繼承的欄位
_NON_INHERITED_KEYS = {"id", "students", "username", "password", "school", "server", "qrcode", "studentId", "title", "__warnings"}


class Settings(BaseModel):
    """執行期設定，預設值可被環境變數覆寫"""
    cache_ttl: float = Field(default=30.0, description="回應快取存活秒數")
    cache_sweep_interval: float = Field(default=30.0, description="背景清除過期快取的間隔秒數")
    dump_dir: str = Field(default="debug_dumps", description="debug dump 輸出目錄")
    dump_retention: int = Field(default=10, description="保留最新幾份 debug dump")
    http_timeout: float = Field(default=15.0, description="單次 HTTP 請求逾時秒數")
    log_level: str = Field(default="INFO", description="日誌等級")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            cache_ttl=float(os.getenv("UNTIS_CACHE_TTL", "30")),
            cache_sweep_interval=float(os.getenv("UNTIS_CACHE_SWEEP_INTERVAL", "30")),
            dump_dir=os.getenv("UNTIS_DUMP_DIR", "debug_dumps"),
            dump_retention=int(os.getenv("UNTIS_DUMP_RETENTION", "10")),
            http_timeout=float(os.getenv("UNTIS_HTTP_TIMEOUT", "15")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


class WidgetSettings(BaseModel):
    """單一 widget 的日期設定（grid / exams / homework / absences）"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    next_days: Optional[int] = None
    past_days: Optional[int] = None
    days_ahead: Optional[int] = None  # 舊版名稱
    week_view: Optional[bool] = None


class StudentConfig(BaseModel):
    """單一學生（widget 實例）的設定"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    title: str = "Student"
    student_id: Optional[int] = None

    # 憑證：qrcode 或 school/username/password/server
    qrcode: Optional[str] = None
    school: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    server: Optional[str] = None

    class_name: Optional[str] = Field(default=None, alias="class")
    class_id: Optional[int] = None
    use_class_timetable: bool = False
    display_mode: str = "list"

    next_days: Optional[int] = None
    past_days: Optional[int] = None
    days_to_show: Optional[int] = None  # 舊版名稱
    exams_days_ahead: Optional[int] = None
    absences_past_days: Optional[int] = None
    absences_future_days: Optional[int] = None

    grid: WidgetSettings = Field(default_factory=WidgetSettings)
    exams: WidgetSettings = Field(default_factory=WidgetSettings)
    homework: WidgetSettings = Field(default_factory=WidgetSettings)
    absences: WidgetSettings = Field(default_factory=WidgetSettings)

    config_warnings: List[str] = Field(default_factory=list, alias="__warnings")

    @field_validator("display_mode", mode="before")
    @classmethod
    def _lower_display_mode(cls, value: Any) -> str:
        return str(value if value is not None else "").lower()

    def wants_widget(self, widget: str) -> bool:
        """判斷 displayMode 是否包含指定 widget，支援舊版 "list" """
        w = widget.lower()
        dm = self.display_mode.strip()
        if dm == w:
            return True
        if w in ("lessons", "exams") and dm == "list":
            return True
        return w in [p.strip() for p in dm.split(",") if p.strip()]

    def credential(self, module: Optional["ModuleConfig"] = None) -> "StudentCredential":
        """解析學生的登入憑證

        優先順序：QR code → 學生自己的帳密 → 模組層級家長帳號（需有 studentId）

        Raises:
            ConfigError: 找不到任何可用憑證
        """
        from untis_mirror_core.fetch.models import ConfigError, PasswordCredential, QrCredential

        if self.qrcode:
            return QrCredential(qrcode=self.qrcode)
        if self.username and self.password and self.school and self.server:
            return PasswordCredential(
                school=self.school,
                username=self.username,
                password=self.password,
                server=self.server,
            )
        if self.student_id is not None and module and module.username and module.password and module.school:
            return PasswordCredential(
                school=module.school,
                username=module.username,
                password=module.password,
                server=module.server or "webuntis.com",
                parent=True,
            )
        raise ConfigError(
            f'Credentials missing for "{self.title}": need either qrcode, '
            "username/password/school/server, or studentId with parent credentials in module config."
        )

    def payload_config(self) -> Dict[str, Any]:
        """送到前端的設定副本，不含密碼與 QR code"""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"password", "qrcode"})


class ModuleConfig(BaseModel):
    """整個模組的設定（FETCH_DATA 內容）"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    students: List[StudentConfig] = Field(default_factory=list)
    display_mode: str = "list"
    debug_date: Optional[str] = None
    dump_backend_payloads: bool = False
    log_level: Optional[str] = None

    # 家長帳號
    username: Optional[str] = None
    password: Optional[str] = None
    school: Optional[str] = None
    server: Optional[str] = None

    config_warnings: List[str] = Field(default_factory=list, alias="__warnings")

    @classmethod
    def from_fetch_data(cls, raw: Dict[str, Any]) -> "ModuleConfig":
        """將前端傳來的設定轉為 ModuleConfig，並把模組層級預設值合併到每位學生"""
        raw = {k: v for k, v in raw.items() if not k.startswith("_") or k == "__warnings"}
        defaults = {k: v for k, v in raw.items() if k not in _NON_INHERITED_KEYS}
        students = []
        for student in raw.get("students") or []:
            if not isinstance(student, dict):
                continue
            student = {k: v for k, v in student.items() if not k.startswith("_") or k == "__warnings"}
            students.append({**defaults, **student})
        return cls.model_validate({**raw, "students": students})

    def base_now(self) -> datetime:
        """計算基準時間；debugDate（YYYY-MM-DD 或 YYYYMMDD）可固定日期以便重現"""
        s = (self.debug_date or "").strip()
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", s):
            return datetime.strptime(s, "%Y-%m-%d")
        if re.fullmatch(r"\d{8}", s):
            return datetime.strptime(s, "%Y%m%d")
        return datetime.now()
