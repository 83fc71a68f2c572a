"""Scripted HTTP doubles shared by the tests.

``FakeSession`` answers by (method, longest matching URL prefix). A route holding
several responses hands them out in order and then keeps repeating the last one.
"""

import copy
import json
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

import requests
from requests.cookies import RequestsCookieJar
from requests.structures import CaseInsensitiveDict

REASONS = {200: "OK", 204: "No Content", 302: "Found", 400: "Bad Request", 401: "Unauthorized",
           403: "Forbidden", 404: "Not Found", 500: "Internal Server Error", 503: "Service Unavailable"}


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None, headers=None, url="", reason=None):
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.status_code = status_code
        self.text = text
        self.headers = CaseInsensitiveDict(headers or {})
        if body is not None and "Content-Type" not in self.headers:
            self.headers["Content-Type"] = "application/json"
        self.url = url
        self.reason = REASONS.get(status_code, "") if reason is None else reason

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} {self.reason}", response=self)


def redirect(location, status=302):
    return FakeResponse(status, text="", headers={"Location": location})


def html(text, status=200):
    return FakeResponse(status, text=text, headers={"Content-Type": "text/html"})


@dataclass
class Call:
    method: str
    url: str
    kwargs: dict = field(default_factory=dict)

    @property
    def query(self):
        return {k: v[0] for k, v in parse_qs(urlparse(self.url).query).items()}

    @property
    def json_body(self):
        if "json" in self.kwargs:
            return self.kwargs["json"]
        return json.loads(self.kwargs["data"])


class FakeSession:
    def __init__(self):
        self.routes = []
        self.calls = []
        self.cookies = RequestsCookieJar()
        self.headers = {}

    def add(self, method, url_prefix, *responses):
        self.routes.append((method.upper(), url_prefix, list(responses)))
        return self

    def calls_to(self, url_prefix, method=None):
        return [c for c in self.calls if c.url.startswith(url_prefix) and (method is None or c.method == method)]

    def request(self, method, url, **kwargs):
        method = method.upper()
        self.calls.append(Call(method, url, kwargs))
        candidates = [r for r in self.routes if r[0] == method and url.startswith(r[1])]
        if not candidates:
            raise AssertionError(f"unexpected request: {method} {url}")
        responses = max(candidates, key=lambda r: len(r[1]))[2]
        resp = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(resp, BaseException):
            raise resp
        if callable(resp):
            resp = resp(method, url, kwargs)
        resp = copy.copy(resp)
        if not resp.url:
            resp.url = url
        return resp

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url, **kwargs):
        return self.request("DELETE", url, **kwargs)


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
