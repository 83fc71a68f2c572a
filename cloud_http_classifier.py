# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

from enum import Enum
from typing import Optional

import requests

RETRYABLE_STATUS_CODES = frozenset({408, 500, 502, 503, 504})
# Page fetches failing with these abort the whole paginated call
CRITICAL_PAGE_STATUS_CODES = frozenset({401, 403, 404})


class Disposition(Enum):
    RETRYABLE = "retryable"
    AUTH_EXPIRED = "authentication-expired"
    FATAL = "fatal"


def is_html_payload(text: Optional[str], content_type: Optional[str] = None) -> bool:
    """True when a body is an HTML document (a browser-style login page, usually)."""
    if content_type and "text/html" in content_type.lower():
        return True
    if not text:
        return False
    head = text.lstrip()[:256].lower()
    return head.startswith("<!doctype html") or head.startswith("<html")


def says_unauthorized(body: Optional[str], reason: Optional[str] = None) -> bool:
    return "unauthorized" in (reason or "").lower() or "unauthorized" in (body or "").lower()


def classify_status(status_code: int, body: Optional[str] = None, reason: Optional[str] = None) -> Disposition:
    if status_code in RETRYABLE_STATUS_CODES:
        return Disposition.RETRYABLE
    if status_code == 401 and says_unauthorized(body, reason):
        return Disposition.AUTH_EXPIRED
    return Disposition.FATAL


def classify_exception(exc: BaseException) -> Disposition:
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        r = exc.response
        return classify_status(r.status_code, r.text, r.reason)
    # requests.Timeout covers both connect and read timeouts
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return Disposition.RETRYABLE
    return Disposition.FATAL


def classify_response(resp: requests.Response, expect_json: bool = True) -> Optional[Disposition]:
    """Disposition for an HTTP response, or None when it is a usable success."""
    if 200 <= resp.status_code < 300:
        if expect_json and is_html_payload(resp.text, resp.headers.get("Content-Type")):
            # an HTML page where JSON was expected means the session silently expired
            return Disposition.AUTH_EXPIRED
        return None
    return classify_status(resp.status_code, resp.text, resp.reason)
