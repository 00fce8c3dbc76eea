import pytest

from untis_mirror_core import UntisMirrorCore
from untis_mirror_core.cache.response_cache import ResponseCache
from untis_mirror_core.fetch.models import AuthError
from untis_mirror_core.service.fetch_service import FetchService

RESPONSES = {
    "timetable": [{"id": 1, "date": 20250106, "startTime": "07:50", "endTime": "08:35", "su": [{"name": "M"}]}],
    "homework": [{"id": 5, "dueDate": 20250107, "text": "Read"}],
    "messagesOfDay": [{"id": 9, "subject": "Hello", "text": "<p>World</p>"}],
}


class Recorder:
    def __init__(self):
        self.sent = []

    def __call__(self, notification, payload):
        self.sent.append((notification, payload))


def module_config(*students, **extra):
    return {"debugDate": "2025-01-05", "students": list(students), **extra}


QR_STUDENT = {"title": "Max", "qrcode": "qr-max", "displayMode": "lessons,homework,messagesofday", "nextDays": 3}


@pytest.mark.asyncio
async def test_payload_delivered_with_identifier(fake_api, settings):
    api = fake_api(responses=RESPONSES)
    send = Recorder()
    service = FetchService(api, send, settings=settings)

    delivered = await service.handle_fetch_data(module_config(QR_STUDENT), identifier="mm-1")

    assert delivered == 1
    notification, payload = send.sent[0]
    assert notification == "GOT_DATA"
    assert payload["id"] == "mm-1"
    assert payload["title"] == "Max"
    assert payload["timetableRange"][0]["startTime"] == 750
    assert payload["messagesOfDay"][0]["text"] == "World"
    assert "qrcode" not in payload["config"]
    assert api.logouts == 1


@pytest.mark.asyncio
async def test_second_request_served_from_cache(fake_api, settings):
    api = fake_api(responses=RESPONSES)
    send = Recorder()
    service = FetchService(api, send, settings=settings)

    await service.handle_fetch_data(module_config(QR_STUDENT), identifier="a")
    await service.handle_fetch_data(module_config(QR_STUDENT), identifier="b")

    assert api.count("authenticate") == 1
    assert [p["id"] for _, p in send.sent] == ["a", "b"]
    assert send.sent[0][1]["timetableRange"] == send.sent[1][1]["timetableRange"]


@pytest.mark.asyncio
async def test_students_sharing_credentials_login_once(fake_api, settings):
    api = fake_api(responses=RESPONSES)
    send = Recorder()
    service = FetchService(api, send, cache=ResponseCache(), settings=settings)
    sibling = {**QR_STUDENT, "title": "Anna", "displayMode": "homework"}

    delivered = await service.handle_fetch_data(module_config(QR_STUDENT, sibling))

    assert delivered == 2
    assert api.count("authenticate") == 1
    assert api.logouts == 1
    assert [p["title"] for _, p in send.sent] == ["Max", "Anna"]


@pytest.mark.asyncio
async def test_auth_failure_only_affects_its_group(fake_api, settings):
    class OneBadLogin(fake_api):
        async def authenticate(self, credential):
            if credential.key == "qrcode:bad":
                self.calls.append(("authenticate", credential.key))
                raise AuthError("QR code expired", status=401)
            return await super().authenticate(credential)

    api = OneBadLogin(responses=RESPONSES)
    send = Recorder()
    service = FetchService(api, send, settings=settings)
    broken = {**QR_STUDENT, "title": "Broken", "qrcode": "bad"}

    delivered = await service.handle_fetch_data(module_config(broken, QR_STUDENT))

    assert delivered == 1
    assert [p["title"] for _, p in send.sent] == ["Max"]
    assert api.logouts == 1


@pytest.mark.asyncio
async def test_logout_failure_is_logged_not_raised(fake_api, settings):
    api = fake_api(responses=RESPONSES, logout_error=RuntimeError("session gone"))
    send = Recorder()
    service = FetchService(api, send, settings=settings)

    assert await service.handle_fetch_data(module_config(QR_STUDENT)) == 1
    assert api.logouts == 1


@pytest.mark.asyncio
async def test_student_without_credentials_is_skipped(fake_api, settings):
    api = fake_api(responses=RESPONSES)
    send = Recorder()
    service = FetchService(api, send, settings=settings)
    nameless = {"title": "Nobody", "displayMode": "lessons"}

    delivered = await service.handle_fetch_data(module_config(nameless, QR_STUDENT))

    assert delivered == 1
    assert send.sent[0][1]["title"] == "Max"


@pytest.mark.asyncio
async def test_parent_credentials_from_module_config(fake_api, settings):
    api = fake_api(responses=RESPONSES)
    send = Recorder()
    service = FetchService(api, send, settings=settings)
    child = {"title": "Max", "studentId": 42, "displayMode": "lessons"}

    await service.handle_fetch_data(
        module_config(child, username="parent", password="pw", school="demo", server="demo.webuntis.com"),
    )

    assert ("authenticate", "parent:parent@demo.webuntis.com/demo") in api.calls
    assert api.calls.count(("timetable", 42)) == 1
    assert "password" not in send.sent[0][1]["config"]


@pytest.mark.asyncio
async def test_async_send_is_awaited(fake_api, settings):
    sent = []

    async def send(notification, payload):
        sent.append(payload["title"])

    service = FetchService(fake_api(responses=RESPONSES), send, settings=settings)
    await service.handle_fetch_data(module_config(QR_STUDENT))
    assert sent == ["Max"]


@pytest.mark.asyncio
async def test_core_handles_fetch_data_notification(fake_api, settings):
    send = Recorder()
    core = UntisMirrorCore(fake_api(responses=RESPONSES), send, settings=settings)
    await core.start()
    try:
        assert await core.socket_notification_received("FETCH_DATA", {**module_config(QR_STUDENT), "id": "mm-7"}) == 1
        assert await core.socket_notification_received("SOMETHING_ELSE", {}) is None
    finally:
        await core.stop()

    assert send.sent[0][1]["id"] == "mm-7"


class FailsFor(Recorder):
    def __init__(self, title):
        super().__init__()
        self.title = title

    def __call__(self, notification, payload):
        if payload["title"] == self.title:
            raise ConnectionError("socket closed")
        super().__call__(notification, payload)


@pytest.mark.asyncio
async def test_send_failure_does_not_skip_siblings(fake_api, settings):
    """同組第一位學生送出失敗，第二位仍會被抓取與送出"""
    api = fake_api(responses=RESPONSES)
    send = FailsFor("Max")
    service = FetchService(api, send, settings=settings)
    sibling = {**QR_STUDENT, "title": "Anna"}

    delivered = await service.handle_fetch_data(module_config(QR_STUDENT, sibling))

    assert delivered == 1
    assert [p["title"] for _, p in send.sent] == ["Anna"]
    assert api.logouts == 1


@pytest.mark.asyncio
async def test_send_failure_on_cache_hit_does_not_abort_group(fake_api, settings):
    api = fake_api(responses=RESPONSES)
    service = FetchService(api, Recorder(), settings=settings)
    sibling = {**QR_STUDENT, "title": "Anna"}
    await service.handle_fetch_data(module_config(QR_STUDENT))

    send = FailsFor("Max")
    service._send = send
    delivered = await service.handle_fetch_data(module_config(QR_STUDENT, sibling))

    assert delivered == 1
    assert [p["title"] for _, p in send.sent] == ["Anna"]
    assert api.count("authenticate") == 2
