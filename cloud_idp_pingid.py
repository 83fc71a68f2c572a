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

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlparse

import requests

import cloud_json
from cloud_errors import InvalidOtpError, SsoConfigurationError
from cloud_idp_common import (
    Challenge,
    IdpAdapter,
    IdpKind,
    PollStatus,
    SamlAssertion,
    follow_redirects,
    parse_forms,
    parse_saml_form,
)
from cloud_logging import get_logger, log_fields, redact_text

LOG = get_logger("idp.pingid")

USER_LOOKUP_MEDIA_TYPE = "application/vnd.pingidentity.user.lookup+json"
PPM_AUTH_PATH = "/pingid/ppm/auth"
PPM_STATUS_PATH = "/pingid/ppm/auth/status"
PPM_OTP_PATH = "/pingid/ppm/auth/otp"
CALLBACK_PATH = "/{env}/rp/callback/pingid"
RESUME_PATH = "/{env}/as/resume"

PASSWORD_ONLY_STATUSES = {"PASSWORD_REQUIRED", "USERNAME_PASSWORD_REQUIRED"}
PENDING_STATUSES = {"PENDING", "IN_PROGRESS", "PUSH_SENT", "WAITING"}
APPROVED_STATUSES = {"APPROVED", "SUCCESS", "COMPLETED"}
DENIED_STATUSES = {"DENIED", "REJECTED"}
EXPIRED_STATUSES = {"EXPIRED", "TIMEOUT"}
OTP_STATUS = "POLICY_OTP"

_FLOW_ID_RE = re.compile(r"""["']?flowId["']?\s*[:=]\s*["']([A-Za-z0-9-]+)["']""")
_UUID_RE = re.compile(r"^[0-9a-fA-F-]{36}$")


@dataclass(frozen=True)
class PingHosts:
    region: str
    environment_id: str

    @property
    def auth_base(self) -> str:
        return f"https://auth.pingone.{self.region}"

    @property
    def authenticator_base(self) -> str:
        return f"https://authenticator.pingone.{self.region}"


def resolve_hosts(url: str) -> PingHosts:
    """Derive the region and environment from an inbound ``auth.pingone.<region>/<env>/...`` URL."""
    parts = urlparse(url)
    host = (parts.hostname or "").lower()
    m = re.match(r"^(?:auth|authenticator|apps)\.pingone\.(.+)$", host)
    if not m:
        raise SsoConfigurationError(f"Not a PingOne URL: {url}")
    segments = [s for s in parts.path.split("/") if s]
    env = next((s for s in segments if _UUID_RE.match(s)), None)
    if env is None:
        raise SsoConfigurationError(f"No PingOne environment id in {url}")
    return PingHosts(region=m.group(1), environment_id=env)


def find_flow_id(url: str, body: str) -> Optional[str]:
    q = parse_qs(urlparse(url).query)
    if q.get("flowId"):
        return q["flowId"][0]
    m = _FLOW_ID_RE.search(body or "")
    return m.group(1) if m else None


class PingIdAdapter(IdpAdapter):
    kind = IdpKind.PING_ID

    def _post(self, url: str, step: str, json_body: Optional[dict] = None, form: Optional[dict] = None,
              content_type: Optional[str] = None) -> dict:
        headers = {"Accept": "application/json"}
        if content_type:
            headers["Content-Type"] = content_type
        log_fields(LOG, logging.DEBUG, "PingOne call", step=step, url=url, **(json_body or form or {}))
        if json_body is not None:
            resp = self.http.post(url, data=cloud_json.encode(json_body), headers=headers, timeout=30)
        else:
            resp = self.http.post(url, data=form, headers=headers, timeout=30)
        data = cloud_json.try_decode(resp.text)
        if resp.status_code >= 400 or not isinstance(data, dict):
            raise self.fail(f"HTTP {resp.status_code} from {url}", step=step, raw=redact_text(resp.text))
        return data

    def initiate(self, context: dict, identifier: str) -> Challenge:
        page: requests.Response = context["response"]
        hosts = resolve_hosts(context.get("url") or page.url)
        flow_id = find_flow_id(page.url, page.text) or find_flow_id(context.get("url") or "", "")
        if not flow_id:
            raise self.fail("No PingOne flow id in the sign-in page", step="pingid:flow")

        lookup = self._post(
            f"{hosts.auth_base}/{hosts.environment_id}/flows/{flow_id}",
            "pingid:user.lookup",
            json_body={"username": identifier},
            content_type=USER_LOOKUP_MEDIA_TYPE,
        )
        status = str(lookup.get("status", "")).upper()
        if status in PASSWORD_ONLY_STATUSES:
            raise SsoConfigurationError(
                "The PingOne sign-on policy for this account only asks for a password. Configure a "
                "PingID MFA step in the policy used for the platform application."
            )
        ppm_request = lookup.get("ppm_request") or ((lookup.get("_embedded") or {}).get("ppm_request"))
        if not ppm_request:
            raise self.fail(f"PingOne did not start PingID (status {status or 'missing'})", step="pingid:user.lookup")

        started = self._post(hosts.authenticator_base + PPM_AUTH_PATH, "pingid:auth", form={"ppm_request": ppm_request})
        number = started.get("numberMatching") or started.get("selectedNumber")
        challenge = Challenge(
            provider=self.kind,
            method="push",
            number=None if number in (None, "") else str(number),
            context={
                "hosts": hosts,
                "flow_id": flow_id,
                "ppm_request": ppm_request,
                "session": started.get("sessionId") or started.get("idp_session"),
                "ppm_response": started.get("ppm_response"),
            },
        )
        challenge.status = self._map_status(challenge, started)
        return challenge

    def _map_status(self, challenge: Challenge, data: dict) -> PollStatus:
        status = str(data.get("status", "")).upper()
        if data.get("ppm_response"):
            challenge.context["ppm_response"] = data["ppm_response"]
        if status == OTP_STATUS:
            challenge.method = "otp"
            return self._answer_otp(challenge)
        if status in APPROVED_STATUSES:
            return PollStatus.APPROVED
        if status in DENIED_STATUSES:
            return PollStatus.DENIED
        if status in EXPIRED_STATUSES:
            return PollStatus.EXPIRED
        if status in PENDING_STATUSES or not status:
            return PollStatus.PENDING
        raise self.fail(f"Unexpected PingID status {status}", step="pingid:status")

    def _answer_otp(self, challenge: Challenge) -> PollStatus:
        hosts: PingHosts = challenge.context["hosts"]
        code = self.prompts.otp_code("PingID")
        data = self._post(hosts.authenticator_base + PPM_OTP_PATH, "pingid:otp", form={
            "otp": code,
            "sessionId": challenge.context.get("session") or "",
            "ppm_request": challenge.context["ppm_request"],
        })
        status = str(data.get("status", "")).upper()
        if data.get("ppm_response"):
            challenge.context["ppm_response"] = data["ppm_response"]
        if status in APPROVED_STATUSES:
            return PollStatus.APPROVED
        raise InvalidOtpError(f"PingID rejected the one-time code ({status or 'no status'}).")

    def poll(self, challenge: Challenge) -> PollStatus:
        hosts: PingHosts = challenge.context["hosts"]
        data = self._post(hosts.authenticator_base + PPM_STATUS_PATH, "pingid:status", form={
            "sessionId": challenge.context.get("session") or "",
            "ppm_request": challenge.context["ppm_request"],
        })
        return self._map_status(challenge, data)

    def redeem(self, challenge: Challenge) -> SamlAssertion:
        ctx = challenge.context
        hosts: PingHosts = ctx["hosts"]
        if not ctx.get("ppm_response"):
            raise self.fail("PingID approved the request without a response token", step="pingid:redeem")
        callback = hosts.auth_base + CALLBACK_PATH.format(env=hosts.environment_id)
        resp = self.http.post(callback, data={"ppm_request": ctx["ppm_request"], "ppm_response": ctx["ppm_response"]},
                              allow_redirects=False, timeout=30)
        if resp.status_code >= 400:
            raise self.fail(f"HTTP {resp.status_code} from the PingID callback", step="pingid:callback")
        assertion = parse_saml_form(resp.text, resp.url)
        if assertion is not None:
            return assertion

        resume = f"{hosts.auth_base}{RESUME_PATH.format(env=hosts.environment_id)}?flowId={ctx['flow_id']}"
        final, _history = follow_redirects(self.http, resume)
        assertion = parse_saml_form(final.text, final.url)
        if assertion is None:
            forms = parse_forms(final.text)
            raise self.fail(
                f"PingOne did not resume to a SAML form ({len(forms)} other form(s) on the page)",
                step="pingid:resume",
            )
        return assertion
