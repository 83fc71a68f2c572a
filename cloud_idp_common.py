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

"""Pieces shared by the external identity-provider adapters.

- ``detect_provider``: ordered (predicate, kind) table deciding which adapter runs.
- ``SamlAssertion``: the POST-binding artifact every adapter hands back.
- ``MfaPrompts``: operator interaction (prompts, notifications, TOTP seed).
- ``follow_redirects``: manual redirect chain walker (HTTP, meta refresh, script, auto-submit forms).
- ``IdpAdapter``: initiate / poll / redeem contract plus the shared poll loop.
"""

import getpass
import html
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from html.parser import HTMLParser
from typing import Callable, List, Optional, Tuple
from urllib.parse import urljoin

import pyotp
import requests

import cloud_json
from cloud_errors import AuthFlowError, MfaDeniedError, MfaTimeoutError, MfaUnsupportedError
from cloud_logging import get_logger
from cloud_retry import bounded_poll
from cloud_transport import host_of

LOG = get_logger("idp")

MAX_REDIRECT_HOPS = 20
DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_POLL_TIMEOUT = 120.0


# ---------- Provider detection ----------

class IdpKind(Enum):
    OKTA = "okta"
    ENTRA_ID = "entra-id"
    PING_ID = "pingid"
    NONE = "none"


OKTA_HOST_SUFFIXES = (".okta.com", ".oktapreview.com", ".okta-emea.com", ".okta-gov.com")
ENTRA_HOSTS = ("login.microsoftonline.com", "login.microsoft.com", "login.windows.net", "login.microsoftonline.us")
PING_HOST_PREFIXES = ("auth.pingone.", "authenticator.pingone.")

_OKTA_BODY_RE = re.compile(r"okta-sign-in|oktaData|/idp/idx/introspect|var\s+stateToken", re.I)
_ENTRA_BODY_RE = re.compile(r"\$Config\s*=|urlGetCredentialType|login\.microsoftonline\.com", re.I)
_PING_BODY_RE = re.compile(r"pingone\.|PingID|pingidentity", re.I)


def _host_kind(host: str) -> IdpKind:
    if not host:
        return IdpKind.NONE
    if host.endswith(OKTA_HOST_SUFFIXES):
        return IdpKind.OKTA
    if host in ENTRA_HOSTS:
        return IdpKind.ENTRA_ID
    if host.startswith(PING_HOST_PREFIXES):
        return IdpKind.PING_ID
    return IdpKind.NONE


def _body_kind(body: str) -> IdpKind:
    for pattern, kind in ((_ENTRA_BODY_RE, IdpKind.ENTRA_ID), (_PING_BODY_RE, IdpKind.PING_ID),
                          (_OKTA_BODY_RE, IdpKind.OKTA)):
        if pattern.search(body):
            return kind
    return IdpKind.NONE


# Evaluated in order; the first predicate returning a kind other than NONE wins
_DETECTORS: List[Tuple[str, Callable[[dict], IdpKind]]] = [
    ("url-host", lambda s: _host_kind(host_of(s.get("url") or ""))),
    ("redirect-target-host", lambda s: _host_kind(host_of(s.get("redirect_target") or ""))),
    ("body-keywords", lambda s: _body_kind(s.get("body") or "")),
    ("saml-action", lambda s: _host_kind(host_of(s.get("saml_action") or ""))),
]


def detect_provider(url: str, body: Optional[str] = None, redirect_target: Optional[str] = None,
                    saml_action: Optional[str] = None) -> IdpKind:
    signals = {"url": url, "body": body, "redirect_target": redirect_target, "saml_action": saml_action}
    for name, predicate in _DETECTORS:
        kind = predicate(signals)
        if kind is not IdpKind.NONE:
            LOG.debug("Identity provider detected by %s: %s", name, kind.value)
            return kind
    return IdpKind.NONE


# ---------- HTML forms / SAML artifact ----------

@dataclass
class HtmlForm:
    action: Optional[str] = None
    method: str = "post"
    fields: dict = field(default_factory=dict)


class FormParser(HTMLParser):
    """Collects every <form> with its action, method and named <input> values."""

    def __init__(self):
        super().__init__()
        self.forms: List[HtmlForm] = []
        self._current: Optional[HtmlForm] = None

    def handle_starttag(self, tag, attrs):
        a = dict(attrs)
        if tag == "form":
            self._current = HtmlForm(action=a.get("action"), method=(a.get("method") or "post").lower())
            self.forms.append(self._current)
        elif tag == "input" and self._current is not None:
            name = a.get("name")
            if name:
                self._current.fields[name] = a.get("value") or ""

    def handle_endtag(self, tag):
        if tag == "form":
            self._current = None


def parse_forms(text: str) -> List[HtmlForm]:
    p = FormParser()
    p.feed(text or "")
    p.close()
    return p.forms


@dataclass(frozen=True)
class SamlAssertion:
    action: str
    saml_response: str
    relay_state: str = ""

    def __repr__(self) -> str:
        return f"SamlAssertion(action={self.action!r}, SAMLResponse=***, RelayState={self.relay_state!r})"

    def form_payload(self) -> dict:
        return {"SAMLResponse": self.saml_response, "RelayState": self.relay_state}

    def to_html(self) -> str:
        """Render the canonical auto-submitting POST-binding form."""
        return (
            f'<html><body onload="document.forms[0].submit()">'
            f'<form method="post" action="{html.escape(self.action, quote=True)}">'
            f'<input type="hidden" name="SAMLResponse" value="{html.escape(self.saml_response, quote=True)}"/>'
            f'<input type="hidden" name="RelayState" value="{html.escape(self.relay_state, quote=True)}"/>'
            f"</form></body></html>"
        )


def parse_saml_form(text: str, base_url: str = "") -> Optional[SamlAssertion]:
    for form in parse_forms(text):
        if "SAMLResponse" in form.fields:
            return SamlAssertion(
                action=urljoin(base_url, form.action or ""),
                saml_response=form.fields["SAMLResponse"],
                relay_state=form.fields.get("RelayState", ""),
            )
    return None


# ---------- Operator interaction ----------

@dataclass
class MfaPrompts:
    """How adapters talk to the operator.

    ``otp_secret`` (a base32 TOTP seed) is used instead of prompting when set;
    ``non_interactive`` turns any required prompt into ``MfaUnsupportedError``.
    """

    prompt: Callable[[str], str] = input
    secret_prompt: Callable[[str], str] = getpass.getpass
    notify: Callable[[str], None] = LOG.warning
    otp_secret: Optional[str] = None
    non_interactive: bool = False

    def ask(self, message: str, secret: bool = False) -> str:
        if self.non_interactive:
            raise MfaUnsupportedError(f"Interactive input is required ({message.strip()}) but prompts are disabled.")
        answer = (self.secret_prompt if secret else self.prompt)(message)
        return (answer or "").strip()

    def otp_code(self, label: str = "authenticator") -> str:
        if self.otp_secret:
            return pyotp.TOTP(self.otp_secret).now()
        code = self.ask(f"Enter the 6-digit code from {label}: ", secret=True)
        if not re.fullmatch(r"\d{6,8}", code):
            raise MfaUnsupportedError("The one-time code must be 6 digits.")
        return code


# ---------- Redirect following ----------

_META_REFRESH_RE = re.compile(
    r"""<meta[^>]+http-equiv=["']?refresh["']?[^>]*content=["']?\s*\d+\s*;\s*url=([^"'>]+)""", re.I)
_JS_REDIRECT_RE = re.compile(
    r"""(?:window\.|document\.|top\.)?location(?:\.href)?\s*(?:=|\.replace\(|\.assign\()\s*["']([^"']+)["']""", re.I)


def next_hop(resp: requests.Response) -> Optional[Tuple[str, str, Optional[dict]]]:
    """Where a response sends the browser next: ``(method, url, form data)`` or None."""
    if resp.status_code in (301, 302, 303, 307, 308):
        location = resp.headers.get("Location")
        if location:
            return "GET", urljoin(resp.url, location), None
    text = resp.text or ""
    m = _META_REFRESH_RE.search(text)
    if m:
        return "GET", urljoin(resp.url, html.unescape(m.group(1).strip())), None
    forms = parse_forms(text)
    if forms and "SAMLResponse" not in forms[0].fields and "submit()" in text and forms[0].action:
        f = forms[0]
        return f.method.upper(), urljoin(resp.url, f.action), dict(f.fields)
    m = _JS_REDIRECT_RE.search(text)
    if m:
        return "GET", urljoin(resp.url, cloud_json.unescape_js_string(m.group(1))), None
    return None


def follow_redirects(
    http: requests.Session,
    url: str,
    method: str = "GET",
    data: Optional[dict] = None,
    stop: Optional[Callable[[str], bool]] = None,
    max_hops: int = MAX_REDIRECT_HOPS,
    timeout: float = 30,
) -> Tuple[requests.Response, List[str]]:
    """Walk a browser-style redirect chain one hop at a time.

    Cookies land in ``http``'s jar at every hop. The walk ends at the first response
    with no further hop, or as soon as ``stop(url)`` is true for the next target (that
    URL is returned in the history but not requested).
    """
    history: List[str] = []
    for _ in range(max_hops):
        history.append(url)
        if method == "POST":
            resp = http.post(url, data=data, allow_redirects=False, timeout=timeout)
        else:
            resp = http.get(url, allow_redirects=False, timeout=timeout)
        LOG.debug("Hop %d: %s %s -> %s (cookies: %s)", len(history), method, url, resp.status_code,
                  ", ".join(sorted(c.name for c in http.cookies)) or "none")
        if resp.status_code >= 400:
            raise AuthFlowError(f"HTTP {resp.status_code} while following the sign-in redirect chain",
                                step="redirect")
        hop = next_hop(resp)
        if hop is None:
            return resp, history
        method, url, data = hop
        if stop is not None and stop(url):
            history.append(url)
            return resp, history
    raise AuthFlowError(f"Redirect chain exceeded {max_hops} hops", step="redirect")


# ---------- Adapter contract ----------

class PollStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass
class Challenge:
    """Provider state carried between initiate, poll and redeem."""

    provider: IdpKind
    method: str
    status: PollStatus = PollStatus.PENDING
    number: Optional[str] = None
    context: dict = field(default_factory=dict)


class IdpAdapter:
    kind = IdpKind.NONE

    def __init__(
        self,
        http: requests.Session,
        prompts: Optional[MfaPrompts] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        max_polls: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.http = http
        self.prompts = prompts or MfaPrompts()
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.max_polls = max_polls
        self.clock = clock
        self.sleep = sleep

    def initiate(self, context: dict, identifier: str) -> Challenge:
        raise NotImplementedError

    def poll(self, challenge: Challenge) -> PollStatus:
        raise NotImplementedError

    def redeem(self, challenge: Challenge) -> SamlAssertion:
        raise NotImplementedError

    def fail(self, message: str, step: str, raw: Optional[str] = None) -> AuthFlowError:
        return AuthFlowError(message, step=step, provider=self.kind.value, raw_response=raw)

    def wait(self, challenge: Challenge) -> Challenge:
        if challenge.status is PollStatus.PENDING:
            if challenge.number:
                self.prompts.notify(f"Number-matching challenge: enter {challenge.number} in your authenticator app.")

            def probe(_n: int) -> PollStatus:
                challenge.status = self.poll(challenge)
                return challenge.status

            bounded_poll(
                probe,
                lambda status: status is not PollStatus.PENDING,
                interval=self.poll_interval,
                timeout=self.poll_timeout,
                max_polls=self.max_polls,
                on_timeout=lambda: MfaTimeoutError(
                    f"{self.kind.value}: MFA was not approved within {int(self.poll_timeout)} seconds."
                ),
                clock=self.clock,
                sleep=self.sleep,
            )
        if challenge.status is PollStatus.DENIED:
            raise MfaDeniedError(f"{self.kind.value}: the MFA request was denied.")
        if challenge.status is PollStatus.EXPIRED:
            raise MfaTimeoutError(f"{self.kind.value}: the MFA request expired before approval.")
        return challenge

    def authenticate(self, context: dict, identifier: str) -> SamlAssertion:
        challenge = self.initiate(context, identifier)
        self.wait(challenge)
        assertion = self.redeem(challenge)
        LOG.info("%s returned a SAML assertion for %s", self.kind.value, assertion.action)
        return assertion
