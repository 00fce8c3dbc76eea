import asyncio

import pytest

from untis_mirror_core.fetch.models import AuthError, FetchError
from untis_mirror_core.utils.error_handler import (
    check_empty_data_warning,
    convert_rest_error_to_warning,
)

CONTEXT = {"student_title": "Max", "school": "demo", "server": "demo.webuntis.com"}


@pytest.mark.parametrize(
    "err, expected",
    [
        (AuthError("bad login", status=401), 'Authentication failed for "Max"'),
        (FetchError("forbidden", status=403), 'Authentication failed for "Max"'),
        (asyncio.TimeoutError(), 'Cannot connect to WebUntis server "demo.webuntis.com"'),
        (ConnectionRefusedError(), 'Cannot connect to WebUntis server "demo.webuntis.com"'),
        (FetchError("down", status=503), "temporarily unavailable (HTTP 503)"),
        (FetchError("School not found"), 'School "demo" not found'),
        (RuntimeError("socket hang up"), "Network error connecting to WebUntis: socket hang up"),
        (FetchError("rate limited", status=429), 'HTTP 429 error for "Max": rate limited'),
        (FetchError("oops", status=500), "Server error (HTTP 500): oops"),
    ],
)
def test_convert_rest_error_to_warning(err, expected):
    warning = convert_rest_error_to_warning(err, CONTEXT)
    assert warning is not None
    assert expected in warning


def test_convert_none_error():
    assert convert_rest_error_to_warning(None, CONTEXT) is None


def test_check_empty_data_warning():
    assert check_empty_data_warning([], "lessons", "Max") == (
        'Student "Max": No lessons found in selected date range. Check if student is enrolled.'
    )
    assert check_empty_data_warning([{}], "lessons", "Max") is None
    assert check_empty_data_warning([], "lessons", "Max", is_expected=False) is None
