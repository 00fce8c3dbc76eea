from datetime import date

import pytest

from untis_mirror_core.config import Settings
from untis_mirror_core.fetch.models import AuthContext, FetchError, QrCredential
from untis_mirror_core.fetch.rest_client import RestApiClient, build_headers, collect_class_candidates, map_http_error


class NoopAuthProvider:
    async def authenticate(self, credential):
        raise NotImplementedError

    async def logout(self, auth):
        return None


def test_build_headers():
    auth = AuthContext(
        mode="direct", server="demo.webuntis.com", token="abc",
        cookies={"JSESSIONID": "1", "schoolname": "_ZGVtbw=="}, tenant_id="77", school_year_id=12,
    )
    headers = build_headers(auth)
    assert headers["Authorization"] == "Bearer abc"
    assert headers["Cookie"] == "JSESSIONID=1; schoolname=_ZGVtbw=="
    assert headers["Tenant-Id"] == "77"
    assert headers["X-Webuntis-Api-School-Year-Id"] == "12"


def test_build_headers_without_token():
    headers = build_headers(AuthContext(mode="qr"))
    assert "Authorization" not in headers
    assert "Tenant-Id" not in headers


@pytest.mark.parametrize("status", [401, 403, 404, 429, 503])
def test_map_http_error_known_statuses(status):
    err = map_http_error(status)
    assert isinstance(err, FetchError)
    assert err.status == status
    assert f"HTTP {status}" in err.message


def test_map_http_error_includes_body_snippet():
    err = map_http_error(500, {"error": "x" * 500}, operation="exams")
    assert err.message.startswith("exams returned HTTP 500: ")
    assert len(err.message) < 260


def test_parse_timetable():
    resp = {
        "days": [{
            "date": "2025-01-06T00:00:00",
            "gridEntries": [{
                "ids": [11],
                "duration": {"start": "2025-01-06T07:50", "end": "2025-01-06T08:35"},
                "position1": [{"current": {"shortName": "MUE", "longName": "Müller"}}],
                "position2": [{"current": {"shortName": "M", "longName": "Math"}}],
                "status": "CANCELLED",
                "substitutionText": "",
            }],
        }],
    }
    lessons = RestApiClient.parse_timetable(resp)
    assert len(lessons) == 1
    lesson = lessons[0]
    assert lesson["id"] == 11
    assert lesson["date"] == "2025-01-06"
    assert lesson["startTime"] == "07:50"
    assert lesson["su"] == [{"name": "M", "longname": "Math"}]
    assert lesson["te"] == [{"name": "MUE", "longname": "Müller"}]
    assert lesson["ro"] == []
    assert lesson["code"] == "cancelled"


def test_parse_exams_filters_by_assigned_student():
    data = {"data": {"exams": [
        {"examDate": 20250110, "name": "A", "assignedStudents": [{"id": 5}]},
        {"examDate": 20250111, "name": "B", "assignedStudents": [{"id": 6}]},
        {"examDate": 20250112, "examType": "C"},
    ]}}
    assert [e["name"] for e in RestApiClient.parse_exams(data, 5)] == ["A"]
    assert [e["name"] for e in RestApiClient.parse_exams(data, None)] == ["A", "B", "C"]


def test_parse_homework_joins_lessons_and_records():
    data = {"data": {
        "homeworks": [
            {"id": 1, "lessonId": 10, "dueDate": 20250107, "text": "Read"},
            {"id": 1, "lessonId": 10, "dueDate": 20250107, "text": "Read"},
            {"id": 2, "lessonId": 11, "dueDate": 20250108, "text": "Other kid"},
        ],
        "lessons": [{"id": 10, "subject": "English"}],
        "records": [{"homeworkId": 1, "elementIds": [5]}, {"homeworkId": 2, "elementIds": [6]}],
    }}
    homeworks = RestApiClient.parse_homework(data, 5)
    assert len(homeworks) == 1
    hw = homeworks[0]
    assert hw["su"] == [{"name": "English", "longname": "English"}]
    assert hw["elementIds"] == [5]
    assert hw["studentId"] == 5
    assert hw["completed"] is False

    assert len(RestApiClient.parse_homework(data, None)) == 2
    assert RestApiClient.parse_homework({"unexpected": True}, 5) == []


def test_parse_absences():
    data = {"absentLessons": [{
        "startDate": 20250103, "start": 750, "reasonText": "ill", "excused": True,
        "su": [{"name": "M"}], "lid": 4,
    }]}
    absence = RestApiClient.parse_absences(data)[0]
    assert absence["date"] == 20250103
    assert absence["startTime"] == 750
    assert absence["reason"] == "ill"
    assert absence["excused"] is True
    assert absence["su"] == [{"name": "M", "longname": "M"}]
    assert absence["lessonId"] == 4


@pytest.mark.asyncio
async def test_timegrid_and_holidays_come_from_app_data():
    client = RestApiClient(NoopAuthProvider(), settings=Settings())
    auth = AuthContext(mode="qr", app_data={
        "currentSchoolYear": {"timeGrid": {"units": [{"name": "1", "startTime": "07:50", "endTime": "08:35"}]}},
        "holidays": [{"id": 1, "name": "Xmas", "startDate": "2024-12-23", "endDate": "2025-01-06"}],
    })
    assert len(await client.get_timegrid(auth)) == 1
    assert (await client.get_holidays(auth))[0]["name"] == "Xmas"
    assert await client.get_holidays(AuthContext(mode="qr", app_data={"data": {"holidays": []}})) == []


@pytest.mark.asyncio
async def test_timetable_requires_resource_id():
    client = RestApiClient(NoopAuthProvider(), settings=Settings())
    with pytest.raises(FetchError):
        await client.get_timetable(AuthContext(mode="qr"), date(2025, 1, 5), date(2025, 1, 8), None)


class RecordingClient(RestApiClient):
    """以固定回應取代 HTTP，並記錄每次呼叫的端點與參數"""

    def __init__(self, responses):
        super().__init__(NoopAuthProvider(), settings=Settings())
        self.responses = responses
        self.requests = []

    async def _get(self, auth, data_type, params):
        self.requests.append((data_type, params))
        response = self.responses.get(data_type)
        if isinstance(response, Exception):
            raise response
        return response


CLASS_SERVICES = {"data": {
    "classes": [{"id": 31, "name": "5a", "longName": "Klasse 5a"}, {"id": 32, "name": "5b"}],
    "personKlasseMap": {"100": 32},
}}


def test_collect_class_candidates_skips_other_resource_types():
    data = {"filters": [
        {"resourceType": "CLASS", "id": 1, "current": {"shortName": "5a", "longName": "Klasse 5a"}},
        {"resourceType": "ROOM", "id": 2, "name": "R101"},
        {"id": 1, "name": "duplicate"},
    ]}
    assert collect_class_candidates(data) == [{"id": 1, "name": "5a", "shortName": "5a", "longName": "Klasse 5a"}]


@pytest.mark.asyncio
async def test_class_name_resolves_to_class_timetable_request():
    client = RecordingClient({"classServices": CLASS_SERVICES, "timetable": {"days": []}})
    auth = AuthContext(mode="qr", credential_key="qrcode:x")
    options = {"use_class_timetable": True, "class_name": "5A"}

    await client.get_timetable(auth, date(2025, 1, 6), date(2025, 1, 9), 100, options)
    await client.get_timetable(auth, date(2025, 1, 6), date(2025, 1, 9), 100, options)

    timetable_params = [p for t, p in client.requests if t == "timetable"]
    assert timetable_params[0]["resourceType"] == "CLASS"
    assert timetable_params[0]["resources"] == "31"
    # 第二次使用快取的班級 id
    assert [t for t, _ in client.requests].count("classServices") == 1


@pytest.mark.asyncio
async def test_class_resolution_falls_back_to_filter_and_person_map():
    client = RecordingClient({
        "classServices": FetchError("forbidden", status=403),
        "classFilter": {"classes": [{"id": 7, "name": "6c", "type": "CLASS"}]},
    })
    auth = AuthContext(mode="qr")
    assert await client.resolve_class_id(auth, date(2025, 1, 6), date(2025, 1, 9), None, 100) == 7

    mapped = RecordingClient({"classServices": CLASS_SERVICES})
    assert await mapped.resolve_class_id(auth, date(2025, 1, 6), date(2025, 1, 9), None, 100) == 32


@pytest.mark.asyncio
async def test_unknown_class_name_lists_available_classes():
    client = RecordingClient({"classServices": CLASS_SERVICES})
    with pytest.raises(FetchError, match='Class "7z" not found. Available: 5a, 5b'):
        await client.resolve_class_id(AuthContext(mode="qr"), date(2025, 1, 6), date(2025, 1, 9), "7z", 100)


@pytest.mark.asyncio
async def test_authenticate_stamps_credential_key():
    class Provider(NoopAuthProvider):
        async def authenticate(self, credential):
            return AuthContext(mode="qr")

    client = RestApiClient(Provider(), settings=Settings())
    auth = await client.authenticate(QrCredential(qrcode="abc"))
    assert auth.credential_key == "qrcode:abc"
