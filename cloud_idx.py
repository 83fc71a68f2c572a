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

"""Client for the Okta Identity Engine (IDX) remediation protocol.

The platform's own identity host and federated Okta tenants speak the same protocol:
introspect a state token, identify the principal, then answer whichever remediation
comes back (select an authenticator, answer a challenge, poll a push) until the
response carries a ``success`` redirect. Every response re-issues the state handle and
the client threads it into the next call.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import requests

import cloud_json
from cloud_errors import (
    AuthenticatorOutdatedError,
    AuthFlowError,
    InsufficientPermissionsError,
    InvalidOtpError,
    InvalidTokenError,
    MfaDeniedError,
    MfaEnrollmentRequiredError,
    MfaTimeoutError,
    MfaUnsupportedError,
    PasswordExpiredError,
    WrongPasswordError,
)
from cloud_logging import get_logger, log_fields, redact_text
from cloud_retry import bounded_poll
from cloud_settings import (
    CHALLENGE_ANSWER_PATH,
    CHALLENGE_PATH,
    CHALLENGE_POLL_PATH,
    IDENTIFY_PATH,
    INTROSPECT_PATH,
)

LOG = get_logger("idx")

IDX_MEDIA_TYPE = "application/ion+json; okta-version=1.0.0"
IDX_HEADERS = {"Accept": IDX_MEDIA_TYPE, "Content-Type": IDX_MEDIA_TYPE}

# Authenticator preference, highest first: (authenticator key, method type)
AUTHENTICATOR_PRIORITY = (
    ("okta_verify", "push"),
    ("okta_verify", "totp"),
    ("google_otp", "otp"),
    ("okta_password", "password"),
)
MAX_REMEDIATION_STEPS = 8

_STATE_TOKEN_RES = (
    re.compile(r"""var\s+stateToken\s*=\s*['"](.*?)['"]\s*;"""),
    re.compile(r'"stateToken"\s*:\s*"(.*?)"'),
)


def extract_state_token(html: str) -> Optional[str]:
    """Pull the state token out of inline script and undo its JS string escaping."""
    for pattern in _STATE_TOKEN_RES:
        m = pattern.search(html or "")
        if m and m.group(1):
            return cloud_json.unescape_js_string(m.group(1))
    return None


@dataclass
class IdxAuthenticator:
    id: str
    key: str
    method: str


class IdxResponse:
    """Read-only view over one IDX JSON response."""

    def __init__(self, body: dict):
        self.body = body

    @property
    def state_handle(self) -> Optional[str]:
        return self.body.get("stateHandle")

    @property
    def remediations(self) -> list:
        return [r for r in (self.body.get("remediation") or {}).get("value") or [] if isinstance(r, dict)]

    @property
    def remediation_names(self) -> List[str]:
        return [r.get("name") for r in self.remediations]

    def remediation(self, name: str) -> Optional[dict]:
        for r in self.remediations:
            if r.get("name") == name:
                return r
        return None

    def form_fields(self, name: str) -> List[str]:
        rem = self.remediation(name) or {}
        return [f.get("name") for f in rem.get("value") or [] if isinstance(f, dict)]

    @property
    def success_href(self) -> Optional[str]:
        success = self.body.get("success")
        if isinstance(success, dict):
            return success.get("href")
        return None

    @property
    def current_authenticator(self) -> dict:
        cur = self.body.get("currentAuthenticator") or self.body.get("currentAuthenticatorEnrollment") or {}
        return cur.get("value") or {}

    @property
    def correct_answer(self) -> Optional[str]:
        contextual = self.current_authenticator.get("contextualData") or {}
        answer = contextual.get("correctAnswer")
        return None if answer is None else str(answer)

    @property
    def authenticators(self) -> list:
        return [a for a in (self.body.get("authenticators") or {}).get("value") or [] if isinstance(a, dict)]

    @property
    def poll_pending(self) -> bool:
        return "challenge-poll" in self.remediation_names and not self.success_href

    def poll_href(self) -> Optional[str]:
        rem = self.remediation("challenge-poll") or {}
        return rem.get("href")

    def poll_refresh_seconds(self) -> Optional[float]:
        rem = self.remediation("challenge-poll") or {}
        refresh = rem.get("refresh")
        return refresh / 1000.0 if isinstance(refresh, (int, float)) and refresh > 0 else None

    def redirect_idp_href(self) -> Optional[str]:
        rem = self.remediation("redirect-idp")
        return rem.get("href") if rem else None


def _iter_messages(node: Any, field_path: str = ""):
    """Yield ``(i18n key, text, class, field path)`` for every message in a response."""
    if isinstance(node, dict):
        name = node.get("name")
        child_path = f"{field_path}.{name}".strip(".") if isinstance(name, str) else field_path
        msgs = node.get("messages")
        if isinstance(msgs, dict):
            for m in msgs.get("value") or []:
                if isinstance(m, dict):
                    key = (m.get("i18n") or {}).get("key") or ""
                    yield key, m.get("message") or "", m.get("class") or "ERROR", child_path
        for k, v in node.items():
            if k == "messages":
                continue
            if isinstance(v, (dict, list)):
                yield from _iter_messages(v, child_path)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_messages(item, field_path)


def raise_for_messages(body: dict, step: str, provider: str, answering: Optional[str] = None) -> None:
    """Map IDX error messages to classified errors; no-op when there are none.

    ``answering`` is the authenticator key whose challenge was just answered, which is
    how a field error on ``credentials.passcode`` is told apart (password vs one-time code).
    """
    errors = [(k, t, f) for k, t, cls, f in _iter_messages(body) if cls.upper() == "ERROR"]
    if not errors:
        return
    for key, text, field in errors:
        k = key.lower()
        if "upgradeapp" in k or "outdated" in k or "app.update" in k:
            raise AuthenticatorOutdatedError(
                f"Okta Verify on the enrolled device is outdated: {text} Update the authenticator app and retry."
            )
        if "password.expired" in k or "passwordexpired" in k:
            raise PasswordExpiredError(f"The password has expired: {text} Change it in the identity portal first.")
        if "rejected" in k or "denied" in k:
            raise MfaDeniedError(f"The MFA request was denied: {text}")
        if "expired" in k and "push" in k:
            raise MfaTimeoutError(f"The MFA push expired before it was approved: {text}")
        if k == "incorrectpassword" or "e0000004" in k or (field.endswith("passcode") and answering == "okta_password"):
            raise WrongPasswordError(f"Authentication failed: {text or 'wrong username or password.'}")
        if field.endswith("passcode") or "passcode_invalid" in k or "invalid_passcode" in k:
            raise InvalidOtpError(f"The one-time code was rejected: {text}")
        if "session.expired" in k or "e0000011" in k:
            raise InvalidTokenError(f"The sign-in transaction expired: {text} Start the connection again.")
        if "e0000006" in k or "permission" in k:
            raise InsufficientPermissionsError(f"The account is not permitted to sign in here: {text}")
    summary = "; ".join(t or k for k, t, _f in errors)
    raise AuthFlowError(summary, step=step, provider=provider, raw_response=redact_text(cloud_json.encode(body)))


def select_authenticator(resp: IdxResponse, exclude: tuple = ()) -> IdxAuthenticator:
    """Pick the best authenticator offered for authentication, by fixed priority."""
    names = resp.remediation_names
    if "select-authenticator-authenticate" not in names:
        if "select-authenticator-enroll" in names:
            raise MfaEnrollmentRequiredError(
                "The account has no MFA authenticator enrolled. Enroll Okta Verify or Google "
                "Authenticator in the identity portal, then retry."
            )
        raise AuthFlowError("No authenticator selection was offered", step="select-authenticator", provider="okta")
    offered = {}
    for a in resp.authenticators:
        methods = [m.get("type") for m in a.get("methods") or [] if isinstance(m, dict)]
        offered[a.get("key")] = (a.get("id"), methods)
    for key, method in AUTHENTICATOR_PRIORITY:
        if (key, method) in exclude:
            continue
        if key in offered and method in offered[key][1]:
            return IdxAuthenticator(id=offered[key][0], key=key, method=method)
    raise MfaUnsupportedError(
        "None of the offered authenticators are supported "
        f"({', '.join(sorted(k for k in offered if k))}). Supported: Okta Verify push or code, "
        "Google Authenticator, password."
    )


class IdxClient:
    def __init__(self, base_url: str, http: requests.Session, provider: str = "okta", timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.http = http
        self.provider = provider
        self.timeout = timeout
        self.state_handle: Optional[str] = None

    def _url(self, path_or_url: str) -> str:
        return path_or_url if path_or_url.startswith("https://") else self.base_url + path_or_url

    def post(self, path_or_url: str, payload: dict, step: str, answering: Optional[str] = None) -> IdxResponse:
        url = self._url(path_or_url)
        log_fields(LOG, logging.DEBUG, "IDX call", step=step, url=url, **payload)
        resp = self.http.post(url, data=cloud_json.encode(payload), headers=IDX_HEADERS, timeout=self.timeout)
        body = cloud_json.try_decode(resp.text)
        if not isinstance(body, dict):
            raise AuthFlowError(
                f"Identity engine returned HTTP {resp.status_code} without a JSON body",
                step=step, provider=self.provider,
            )
        if body.get("stateHandle"):
            self.state_handle = body["stateHandle"]
        raise_for_messages(body, step, self.provider, answering)
        if not resp.ok:
            raise AuthFlowError(
                f"Identity engine returned HTTP {resp.status_code}",
                step=step, provider=self.provider, raw_response=redact_text(resp.text),
            )
        return IdxResponse(body)

    def _with_handle(self, payload: dict) -> dict:
        if not self.state_handle:
            raise AuthFlowError("No state handle; introspect has not run", step="idx", provider=self.provider)
        return dict(payload, stateHandle=self.state_handle)

    def introspect(self, state_token: str) -> IdxResponse:
        return self.post(INTROSPECT_PATH, {"stateToken": state_token}, "introspect")

    def identify(self, identifier: str, password: Optional[str] = None, remember: bool = False) -> IdxResponse:
        payload = {"identifier": identifier, "rememberMe": remember}
        if password is not None:
            payload["credentials"] = {"passcode": password}
        return self.post(IDENTIFY_PATH, self._with_handle(payload), "identify",
                         answering="okta_password" if password is not None else None)

    def challenge(self, authenticator: IdxAuthenticator) -> IdxResponse:
        payload = {"authenticator": {"id": authenticator.id, "methodType": authenticator.method}}
        return self.post(CHALLENGE_PATH, self._with_handle(payload), f"challenge:{authenticator.key}")

    def answer(self, passcode: str, answering: str) -> IdxResponse:
        return self.post(CHALLENGE_ANSWER_PATH, self._with_handle({"credentials": {"passcode": passcode}}),
                         f"answer:{answering}", answering=answering)

    def poll(self, href: Optional[str] = None) -> IdxResponse:
        return self.post(href or CHALLENGE_POLL_PATH, self._with_handle({}), "challenge-poll")


class IdxFlow:
    """Drives an IDX transaction from identify to ``success``.

    ``password`` answers password challenges; ``otp_source()`` returns a one-time code
    when a TOTP/OTP challenge is selected; ``notify`` receives operator-facing messages
    such as the number-matching value.
    """

    def __init__(
        self,
        client: IdxClient,
        password: Optional[str] = None,
        otp_source: Optional[Callable[[str], str]] = None,
        notify: Callable[[str], None] = LOG.warning,
        poll_interval: float = 3.0,
        poll_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.password = password
        self.otp_source = otp_source
        self.notify = notify
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.clock = clock
        self.sleep = sleep
        self.current: Optional[IdxAuthenticator] = None
        self._tried: tuple = ()
        self._announced: Optional[str] = None

    def start(self, state_token: str, identifier: str) -> IdxResponse:
        intro = self.client.introspect(state_token)
        return self.identify(identifier, intro)

    def identify(self, identifier: str, intro: Optional[IdxResponse] = None) -> IdxResponse:
        # some policies collect the password on the identify form itself
        on_form = intro is not None and "credentials" in intro.form_fields("identify")
        return self.client.identify(identifier, self.password if on_form else None)

    def _announce_number(self, resp: IdxResponse) -> None:
        answer = resp.correct_answer
        if answer and answer != self._announced:
            self._announced = answer
            self.notify(f"Open Okta Verify on your device and tap {answer} to approve the sign-in.")

    def _answer_challenge(self, resp: IdxResponse) -> IdxResponse:
        key = (resp.current_authenticator.get("key") or (self.current.key if self.current else ""))
        if key == "okta_password":
            if self.password is None:
                raise WrongPasswordError("A password is required for this account but none was provided.")
            return self.client.answer(self.password, "okta_password")
        if self.otp_source is None:
            raise MfaUnsupportedError("A one-time code is required but no prompt or OTP seed is available.")
        label = "Okta Verify" if key == "okta_verify" else "Google Authenticator"
        return self.client.answer(self.otp_source(label), key or "otp")

    def advance(self, resp: IdxResponse) -> IdxResponse:
        """Answer remediations until the transaction succeeds or a push is pending."""
        for _ in range(MAX_REMEDIATION_STEPS):
            if resp.success_href:
                return resp
            names = resp.remediation_names
            if "redirect-idp" in names and "select-authenticator-authenticate" not in names:
                return resp
            if "reenroll-authenticator" in names:
                raise PasswordExpiredError("The password has expired. Change it in the identity portal first.")
            if resp.poll_pending:
                self._announce_number(resp)
                return resp
            if "challenge-authenticator" in names:
                resp = self._answer_challenge(resp)
                continue
            if "select-authenticator-authenticate" in names or "select-authenticator-enroll" in names:
                self.current = select_authenticator(resp, exclude=self._tried)
                self._tried = self._tried + ((self.current.key, self.current.method),)
                LOG.info("Using authenticator %s (%s)", self.current.key, self.current.method)
                resp = self.client.challenge(self.current)
                continue
            raise AuthFlowError(
                f"Unexpected identity engine state: {', '.join(n for n in names if n) or 'no remediation'}",
                step="advance", provider=self.client.provider,
                raw_response=redact_text(cloud_json.encode(resp.body)),
            )
        raise AuthFlowError("Too many remediation steps without success", step="advance",
                            provider=self.client.provider)

    def poll_once(self, resp: IdxResponse) -> IdxResponse:
        nxt = self.client.poll(resp.poll_href())
        self._announce_number(nxt)
        return nxt

    def wait_for_push(self, resp: IdxResponse) -> IdxResponse:
        interval = resp.poll_refresh_seconds() or self.poll_interval
        self.notify("Approve the push notification sent to your Okta Verify app.")
        state = {"resp": resp}

        def probe(_n: int) -> IdxResponse:
            state["resp"] = self.poll_once(state["resp"])
            return state["resp"]

        return bounded_poll(
            probe,
            lambda r: not r.poll_pending,
            interval=interval,
            timeout=self.poll_timeout,
            on_timeout=lambda: MfaTimeoutError(
                f"The push was not approved within {int(self.poll_timeout)} seconds."
            ),
            clock=self.clock,
            sleep=self.sleep,
        )

    def run(self, resp: IdxResponse) -> IdxResponse:
        """Advance through every remediation (waiting on pushes) until ``success``."""
        for _ in range(MAX_REMEDIATION_STEPS):
            resp = self.advance(resp)
            if resp.success_href:
                return resp
            if resp.poll_pending:
                resp = self.wait_for_push(resp)
                continue
            return resp
        raise AuthFlowError("Too many MFA rounds without success", step="run", provider=self.client.provider)
