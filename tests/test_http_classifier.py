import requests

from cloud_http_classifier import (
    Disposition,
    classify_exception,
    classify_response,
    classify_status,
    is_html_payload,
)
from fakes import FakeResponse, html


# Test intent: gateway/server hiccups are retryable; client errors are not.
def test_classify_status_retryable_codes():
    for code in (408, 500, 502, 503, 504):
        assert classify_status(code) is Disposition.RETRYABLE
    for code in (400, 403, 404, 409, 429):
        assert classify_status(code) is Disposition.FATAL


# Test intent: only a 401 that says "Unauthorized" means the session expired; any
# other 401 is a plain fatal error.
def test_classify_401_variants():
    assert classify_status(401, reason="Unauthorized") is Disposition.AUTH_EXPIRED
    assert classify_status(401, body='{"message": "Unauthorized"}', reason="") is Disposition.AUTH_EXPIRED
    assert classify_status(401, body='{"message": "token revoked"}', reason="") is Disposition.FATAL


# Test intent: connection failures and timeouts are transient; unrelated exceptions are fatal.
def test_classify_exception():
    assert classify_exception(requests.ConnectionError("reset")) is Disposition.RETRYABLE
    assert classify_exception(requests.ReadTimeout("slow")) is Disposition.RETRYABLE
    assert classify_exception(ValueError("boom")) is Disposition.FATAL
    err = requests.HTTPError("503", response=FakeResponse(503))
    assert classify_exception(err) is Disposition.RETRYABLE


# Test intent: a 2xx HTML page where JSON was expected is treated as an expired session,
# while a JSON 2xx (or HTML that was explicitly expected) is a usable success.
def test_classify_response_html_success():
    page = html("<!DOCTYPE html><html><body>Sign in</body></html>")
    assert classify_response(page) is Disposition.AUTH_EXPIRED
    assert classify_response(page, expect_json=False) is None
    assert classify_response(FakeResponse(200, body={"ok": True})) is None
    assert classify_response(FakeResponse(503)) is Disposition.RETRYABLE


# Test intent: HTML detection works from the content type or from the document prefix.
def test_is_html_payload():
    assert is_html_payload("{}", "text/html; charset=utf-8")
    assert is_html_payload("  <html><head></head></html>")
    assert not is_html_payload('{"html": "<html>"}', "application/json")
    assert not is_html_payload(None)
