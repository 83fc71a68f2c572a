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

"""Shared execution path for every authenticated platform call.

``RequestEngine.execute()`` resolves the endpoint family of a URI, asks the session
to refresh its tokens, runs a bounded retry loop around the HTTP call, rebuilds
offset pagination for GET (and opted-in POST-as-read) calls, and normalizes the
decoded body into a ``NormalizedResult``.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests

import cloud_json
from cloud_errors import RequestError, ResponseDecodeError, SessionExpiredError, TransientHttpError
from cloud_http_classifier import Disposition, classify_exception, classify_response, is_html_payload
from cloud_logging import get_logger, log_fields
from cloud_pagination import DEFAULT_PAGE_SIZE, PaginatedResponse, merge_pages
from cloud_retry import RetryExhausted, bounded_retry
from cloud_settings import PlatformEndpoints
from cloud_transport import ensure_https, host_of, new_http_session

LOG = get_logger("request")

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_TIMEOUT = 60
EXPLICIT_PAGE_SIZE_PARAMS = ("limit", "count_per_page", "page_size", "pageSize")
# Hostname fragments of the downstream (compute) API family
SERVICE_HOST_MARKERS = ("-api.compute.cloud.", ".api.greenlake.")


class EndpointFamily(Enum):
    PLATFORM_IDENTITY = "platform-identity"
    DOWNSTREAM_SERVICE = "downstream-service"
    FEDERATED_IDENTITY = "federated-identity"


# Pagination convention per family: (offset param, page-size param); None = no pagination
PAGINATION_PARAMS = {
    EndpointFamily.PLATFORM_IDENTITY: ("offset", "count_per_page"),
    EndpointFamily.DOWNSTREAM_SERVICE: ("offset", "limit"),
    EndpointFamily.FEDERATED_IDENTITY: None,
}


@dataclass
class RequestOptions:
    full_envelope: bool = False
    paginate_post: bool = False
    skip_refresh: bool = False
    expect_json: bool = True
    form: bool = False
    headers: dict = field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT
    max_retries: Optional[int] = None


@dataclass
class NormalizedResult:
    data: Any
    status_code: int
    headers: dict = field(default_factory=dict)
    page: Optional[PaginatedResponse] = None

    @property
    def items(self) -> list:
        if self.page is not None:
            return self.page.items
        if isinstance(self.data, list):
            return self.data
        if isinstance(self.data, dict):
            lists = [v for v in self.data.values() if isinstance(v, list)]
            if len(lists) == 1:
                return lists[0]
        return [] if self.data is None else [self.data]

    @property
    def failed_pages(self) -> list:
        return self.page.failed_pages if self.page is not None else []

    @property
    def complete(self) -> bool:
        return not self.failed_pages


class _RetryableStatus(Exception):
    def __init__(self, resp: requests.Response):
        self.response = resp
        super().__init__(f"HTTP {resp.status_code} {resp.reason or ''}".strip())


# ---------- URI helpers ----------

def classify_uri(uri: str, endpoints: PlatformEndpoints) -> EndpointFamily:
    host = host_of(uri)
    if host == host_of(endpoints.ui_doorway_url) or "-user-api." in host:
        return EndpointFamily.PLATFORM_IDENTITY
    if host in (host_of(endpoints.auth_url), host_of(endpoints.sso_url)):
        return EndpointFamily.FEDERATED_IDENTITY
    if host == host_of(endpoints.global_api_url) or any(m in host for m in SERVICE_HOST_MARKERS):
        return EndpointFamily.DOWNSTREAM_SERVICE
    raise RequestError(f"URI does not belong to a known platform endpoint family: {uri}", uri=uri)


def query_params(uri: str) -> dict:
    return dict(parse_qsl(urlparse(uri).query, keep_blank_values=True))


def with_query(uri: str, extra: dict) -> str:
    parts = urlparse(uri)
    q = parse_qsl(parts.query, keep_blank_values=True)
    q = [(k, v) for k, v in q if k not in extra] + [(k, str(v)) for k, v in extra.items()]
    return urlunparse(parts._replace(query=urlencode(q)))


# ---------- Error enrichment ----------

def extract_error_details(text: Optional[str]) -> tuple:
    """Return ``(message, issues)`` parsed from a JSON error body, or ``(None, [])``."""
    body = cloud_json.try_decode(text)
    if not isinstance(body, dict):
        return None, []
    message = body.get("message") or body.get("error_description") or body.get("errorMessage")
    if message is None and isinstance(body.get("error"), str):
        message = body["error"]
    issues = []
    for detail in body.get("errorDetails") or []:
        if not isinstance(detail, dict):
            continue
        for issue in detail.get("issues") or []:
            if isinstance(issue, dict) and issue.get("description"):
                issues.append(cloud_json.unescape_unicode(str(issue["description"])))
        metadata = detail.get("metadata")
        if isinstance(metadata, dict):
            for key in ("details", "error"):
                if metadata.get(key):
                    issues.append(cloud_json.unescape_unicode(str(metadata[key])))
    if message is not None:
        message = cloud_json.unescape_unicode(str(message))
    return message, issues


def compose_error(method: str, uri: str, resp: requests.Response) -> RequestError:
    message, issues = extract_error_details(resp.text)
    text = f"{method} {uri} failed with HTTP {resp.status_code}"
    if resp.reason:
        text += f" {resp.reason}"
    if message:
        text += f": {message}"
    elif resp.text and not is_html_payload(resp.text, resp.headers.get("Content-Type")):
        text += f": {resp.text[:500]}"
    if resp.status_code == 403:
        text += " (the signed-in account or API credential may lack the required role in this workspace)"
    for issue in issues:
        text += f"\n  - {issue}"
    return RequestError(text, status_code=resp.status_code, issues=issues, uri=uri)


class RequestEngine:
    """Executes one logical authenticated call.

    ``credentials`` is any object with ``refresh_if_needed(force=False)`` and
    ``auth_headers(family)``; the engine reads tokens through it and never
    mutates session state itself.
    """

    def __init__(
        self,
        endpoints: PlatformEndpoints,
        credentials=None,
        http: Optional[requests.Session] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        page_size: int = DEFAULT_PAGE_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoints = endpoints
        self.credentials = credentials
        self.http = http or new_http_session()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.page_size = page_size
        self.sleep = sleep

    # ---------- public ----------

    def execute(self, uri: str, method: str = "GET", body: Any = None,
                options: Optional[RequestOptions] = None) -> NormalizedResult:
        options = options or RequestOptions()
        method = method.upper()
        ensure_https(uri)
        family = classify_uri(uri, self.endpoints)

        if self.credentials is not None and not options.skip_refresh:
            self.credentials.refresh_if_needed()

        headers = self._headers(family, options)
        log_fields(LOG, logging.DEBUG, "Executing request", method=method, uri=uri, family=family.value)

        pagination = self._pagination_params(uri, method, family, options)
        if pagination is None:
            resp = self._send(method, uri, body, headers, options)
            payload = self._decode(resp, options)
            return NormalizedResult(
                data=self._unwrap(payload, options),
                status_code=resp.status_code,
                headers=dict(resp.headers),
            )

        offset_param, size_param = pagination
        size = self.page_size
        first_uri = with_query(uri, {offset_param: 0, size_param: size})
        resp = self._send(method, first_uri, body, headers, options)
        payload = self._decode(resp, options)

        def fetch(index: int) -> Any:
            page_uri = with_query(uri, {offset_param: index * size, size_param: size})
            LOG.debug("Fetching page %d: %s", index + 1, page_uri)
            return self._decode(self._send(method, page_uri, body, headers, options), options)

        page = merge_pages(payload, fetch, size) if isinstance(payload, dict) else None
        if page is None:
            return NormalizedResult(data=self._unwrap(payload, options), status_code=resp.status_code,
                                    headers=dict(resp.headers))
        data = page.envelope if options.full_envelope else self._unwrap(page.envelope, options)
        return NormalizedResult(data=data, status_code=resp.status_code, headers=dict(resp.headers), page=page)

    # ---------- internals ----------

    def _headers(self, family: EndpointFamily, options: RequestOptions) -> dict:
        headers = {"Accept": "application/json"}
        if family is EndpointFamily.FEDERATED_IDENTITY or options.form:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        else:
            headers["Content-Type"] = "application/json"
        explicit = {k.lower() for k in (options.headers or {})}
        if self.credentials is not None and "authorization" not in explicit:
            headers.update(self.credentials.auth_headers(family))
        headers.update(options.headers or {})
        return headers

    def _pagination_params(self, uri: str, method: str, family: EndpointFamily,
                           options: RequestOptions) -> Optional[tuple]:
        params = PAGINATION_PARAMS.get(family)
        if params is None:
            return None
        if method == "POST":
            if not (options.paginate_post and family is EndpointFamily.PLATFORM_IDENTITY):
                return None
        elif method != "GET":
            return None
        q = query_params(uri)
        if any(p in q for p in EXPLICIT_PAGE_SIZE_PARAMS):
            return None
        return params

    def _send(self, method: str, uri: str, body: Any, headers: dict,
              options: RequestOptions) -> requests.Response:
        max_attempts = self.max_retries if options.max_retries is None else options.max_retries
        kwargs = {"headers": headers, "timeout": options.timeout}
        if body is not None:
            if options.form or isinstance(body, (str, bytes)):
                kwargs["data"] = body
            else:
                kwargs["json"] = body

        def attempt(n: int) -> requests.Response:
            resp = self.http.request(method, uri, **kwargs)
            LOG.debug("%s %s -> %s (attempt %d/%d)", method, uri, resp.status_code, n, max_attempts)
            disposition = classify_response(resp, options.expect_json)
            if disposition is None:
                return resp
            if disposition is Disposition.RETRYABLE:
                raise _RetryableStatus(resp)
            if disposition is Disposition.AUTH_EXPIRED:
                raise SessionExpiredError()
            err = compose_error(method, uri, resp)
            raise err from requests.HTTPError(f"{resp.status_code} {resp.reason or ''}".strip(), response=resp)

        def is_retryable(e: BaseException) -> bool:
            if isinstance(e, _RetryableStatus):
                return True
            if isinstance(e, requests.RequestException):
                return classify_exception(e) is Disposition.RETRYABLE
            return False

        try:
            return bounded_retry(attempt, is_retryable, max_attempts=max_attempts,
                                 backoff=self.retry_delay, sleep=self.sleep)
        except RetryExhausted as e:
            last = e.last_error
            if isinstance(last, _RetryableStatus):
                err = compose_error(method, uri, last.response)
                raise TransientHttpError(
                    f"{err} (gave up after {e.attempts} attempt(s))",
                    status_code=err.status_code, issues=err.issues, uri=uri,
                ) from last
            raise TransientHttpError(
                f"{method} {uri} failed after {e.attempts} attempt(s): {last}", uri=uri,
            ) from last
        except requests.RequestException as e:
            raise RequestError(f"{method} {uri} failed: {e}", uri=uri) from e

    def _decode(self, resp: requests.Response, options: RequestOptions) -> Any:
        text = resp.text
        if not text or not text.strip():
            return None
        if not options.expect_json:
            return text
        if cloud_json.looks_like_json(text):
            return cloud_json.decode(text)
        # a bare JSON scalar (string, number, true/false/null)
        try:
            return cloud_json.decode(text)
        except ResponseDecodeError:
            return text

    @staticmethod
    def _unwrap(payload: Any, options: RequestOptions) -> Any:
        if options.full_envelope or not isinstance(payload, dict):
            return payload
        for key in ("content", "items"):
            if key in payload:
                return payload[key]
        return payload
