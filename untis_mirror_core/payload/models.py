from __future__ import annotations
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TimeUnit(BaseModel):
    """一節課的時段，時間為 HHMM 整數"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = ""
    start_time: Optional[int] = None
    end_time: Optional[int] = None


class CompactHoliday(BaseModel):
    """精簡後的假日，日期為 YYYYMMDD 整數"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[Any] = None
    name: str = ""
    long_name: str = ""
    start_date: int
    end_date: int

    def contains(self, ymd: int) -> bool:
        return self.start_date <= ymd <= self.end_date


class GotDataPayload(BaseModel):
    """送往前端的 GOT_DATA 內容，建立後不可修改"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Optional[str] = None  # 請求者識別碼，交付時才填入
    title: str
    student_id: Optional[int] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    time_units: List[TimeUnit] = Field(default_factory=list)
    timetable_range: List[Dict[str, Any]] = Field(default_factory=list)
    exams: List[Dict[str, Any]] = Field(default_factory=list)
    homeworks: List[Dict[str, Any]] = Field(default_factory=list)
    absences: List[Dict[str, Any]] = Field(default_factory=list)
    messages_of_day: List[Dict[str, Any]] = Field(default_factory=list)
    holidays: List[CompactHoliday] = Field(default_factory=list)
    holiday_by_date: Dict[int, CompactHoliday] = Field(default_factory=dict)
    current_holiday: Optional[CompactHoliday] = None
    warnings: List[str] = Field(default_factory=list, alias="_warnings")

    def to_wire(self) -> Dict[str, Any]:
        """轉成可 JSON 序列化的 dict（camelCase）"""
        return self.model_dump(by_alias=True, mode="json")
