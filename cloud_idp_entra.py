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

"""Entra ID passwordless sign-in (Microsoft Authenticator push with number matching).

GetCredentialType offers remote-NGC parameters when the account has passwordless
phone sign-in; otherwise BeginAuth starts an Authenticator notification. Either way the
session identifier is polled on the session-state endpoint (``AuthorizationState``
0 pending, 1 denied, 2 approved) and then posted back to ``urlPost``.
"""

import logging
import re
from typing import Optional
from urllib.parse import urljoin

import requests

import cloud_json
from cloud_errors import AuthenticationError, MfaUnsupportedError
from cloud_idp_common import (
    Challenge,
    IdpAdapter,
    IdpKind,
    PollStatus,
    SamlAssertion,
    next_hop,
    parse_saml_form,
)
from cloud_logging import get_logger, log_fields, redact_text
from cloud_transport import host_of

LOG = get_logger("idp.entra")

ENTRA_MAX_POLLS = 120
SESSION_STATE_PATH = "/common/GetSessionState.srf"
KMSI_PATH = "/kmsi"
# AuthorizationState values returned by the session-state endpoint
AUTH_STATE_PENDING = 0
AUTH_STATE_DENIED = 1
AUTH_STATE_APPROVED = 2

_CONFIG_RE = re.compile(r"\$Config\s*=\s*({.*?});\s*$", re.S | re.M)
_CONFIG_FALLBACK_RE = re.compile(r"Config=({.*?});", re.S)
STATE_KEYS = ("sFT", "sCtx", "canary", "apiCanary", "hpgid", "hpgact", "sessionId", "correlationId")


def parse_config(text: str) -> Optional[dict]:
    """Decode the ``$Config`` object embedded in an Entra sign-in page."""
    for pattern in (_CONFIG_RE, _CONFIG_FALLBACK_RE):
        m = pattern.search(text or "")
        if m:
            cfg = cloud_json.try_decode(m.group(1))
            if isinstance(cfg, dict):
                return cfg
    return None


def is_kmsi_page(config: Optional[dict], url: str = "") -> bool:
    if not config:
        return False
    return config.get("pgid") == "KmsiInterrupt" or str(config.get("urlPost", "")).startswith(KMSI_PATH) \
        or url.rstrip("/").endswith("/kmsi")


class EntraAdapter(IdpAdapter):
    kind = IdpKind.ENTRA_ID

    def __init__(self, *args, **kwargs):
        kwargs.setdefault("max_polls", ENTRA_MAX_POLLS)
        super().__init__(*args, **kwargs)

    # ---------- helpers ----------

    def _config(self, resp: requests.Response, step: str) -> dict:
        config = parse_config(resp.text)
        if config is None:
            raise self.fail("Sign-in page did not contain a $Config block", step=step)
        exc_message = (config.get("strServiceExceptionMessage") or "").strip()
        if exc_message:
            raise AuthenticationError(f"Entra ID rejected the sign-in: {exc_message}")
        return config

    @staticmethod
    def _update_state(state: dict, config: dict) -> None:
        for key in STATE_KEYS:
            if config.get(key) is not None:
                state[key] = str(config[key])

    @staticmethod
    def _api_headers(state: dict, origin: str) -> dict:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json; charset=UTF-8",
            "Origin": origin,
            "canary": state.get("apiCanary", ""),
            "client-request-id": state.get("correlationId", ""),
            "hpgact": state.get("hpgact", ""),
            "hpgid": state.get("hpgid", ""),
            "hpgrequestid": state.get("sessionId", ""),
        }

    def _post_json(self, url: str, payload: dict, headers: dict, step: str) -> dict:
        log_fields(LOG, logging.DEBUG, "Entra call", step=step, url=url, **payload)
        resp = self.http.post(url, json=payload, headers=headers, allow_redirects=False, timeout=30)
        if resp.status_code != 200:
            raise self.fail(f"HTTP {resp.status_code} from {url}", step=step, raw=redact_text(resp.text))
        data = cloud_json.try_decode(resp.text)
        if not isinstance(data, dict):
            raise self.fail(f"Non-JSON response from {url}", step=step)
        if isinstance(data.get("error"), dict):
            err = data["error"]
            raise self.fail(f"code={err.get('code')} message={err.get('message')}", step=step)
        return data

    # ---------- contract ----------

    def initiate(self, context: dict, identifier: str) -> Challenge:
        page = context["response"]
        origin = f"https://{host_of(page.url)}"
        config = self._config(page, "entra:config")
        state: dict = {}
        self._update_state(state, config)
        username = identifier.lower()

        cred_url = urljoin(page.url, config.get("urlGetCredentialType") or "/common/GetCredentialType?mkt=en-US")
        data = self._post_json(cred_url, {
            "username": username,
            "isOtherIdpSupported": True,
            "checkPhones": False,
            "isRemoteNGCSupported": True,
            "isCookieBannerShown": False,
            "isFidoSupported": True,
            "originalRequest": state.get("sCtx", ""),
            "forceotclogin": False,
            "isExternalFederationDisallowed": False,
            "isRemoteConnectSupported": False,
            "federationFlags": 0,
            "isSignup": False,
            "flowToken": state.get("sFT", ""),
            "isAccessPassSupported": True,
        }, self._api_headers(state, origin), "entra:GetCredentialType")
        if data.get("IfExistsResult") == 1:
            raise AuthenticationError(f"Entra ID does not know the account {username}; check the federated domain.")
        if data.get("apiCanary"):
            state["apiCanary"] = data["apiCanary"]
        if data.get("FlowToken"):
            state["sFT"] = data["FlowToken"]

        ngc = (data.get("Credentials") or {}).get("RemoteNgcParams")
        if ngc and ngc.get("SessionIdentifier"):
            method = "remote-ngc"
            session_id = ngc["SessionIdentifier"]
            entropy = ngc.get("Entropy")
            default_type = ngc.get("DefaultType", 1)
        else:
            # no passwordless parameters: force an Authenticator notification
            begin_url = urljoin(page.url, config.get("urlBeginAuth") or "/common/SAS/BeginAuth")
            begin = self._post_json(begin_url, {
                "AuthMethodId": "PhoneAppNotification",
                "Method": "BeginAuth",
                "ctx": state.get("sCtx", ""),
                "flowToken": state.get("sFT", ""),
            }, self._api_headers(state, origin), "entra:BeginAuth")
            if not begin.get("Success"):
                raise MfaUnsupportedError(
                    f"Entra ID could not start an Authenticator notification: "
                    f"{begin.get('ErrCode', -1)} - {begin.get('Message', 'unknown')}"
                )
            method = "push"
            session_id = begin.get("SessionId")
            entropy = begin.get("Entropy")
            default_type = 1
            state["sCtx"] = begin.get("Ctx", state.get("sCtx", ""))
            state["sFT"] = begin.get("FlowToken", state.get("sFT", ""))

        if not session_id:
            raise self.fail("No session identifier to poll", step="entra:initiate")
        poll_url = urljoin(page.url, config.get("urlSessionState") or SESSION_STATE_PATH)
        return Challenge(
            provider=self.kind,
            method=method,
            number=str(entropy) if entropy not in (None, 0, "") else None,
            context={
                "state": state,
                "config": config,
                "origin": origin,
                "page_url": page.url,
                "username": username,
                "session_id": session_id,
                "entropy": entropy,
                "default_type": default_type,
                "poll_url": poll_url,
            },
        )

    def poll(self, challenge: Challenge) -> PollStatus:
        ctx = challenge.context
        data = self._post_json(ctx["poll_url"], {"DeviceCode": ctx["session_id"]},
                               self._api_headers(ctx["state"], ctx["origin"]), "entra:DeviceCodeStatus")
        auth_state = data.get("AuthorizationState")
        if auth_state == AUTH_STATE_PENDING:
            return PollStatus.PENDING
        if auth_state == AUTH_STATE_APPROVED:
            return PollStatus.APPROVED
        if auth_state == AUTH_STATE_DENIED:
            return PollStatus.DENIED
        raise self.fail(f"Unexpected AuthorizationState {auth_state!r}", step="entra:DeviceCodeStatus")

    def redeem(self, challenge: Challenge) -> SamlAssertion:
        ctx = challenge.context
        state, config = ctx["state"], ctx["config"]
        post_url = urljoin(ctx["page_url"], config.get("urlPost") or "/common/login")
        form = {
            "login": ctx["username"],
            "loginfmt": ctx["username"],
            "type": "22",
            "LoginOptions": "3",
            "psRNGCSLK": ctx["session_id"],
            "psRNGCEntropy": "" if ctx["entropy"] is None else str(ctx["entropy"]),
            "psRNGCDefaultType": str(ctx["default_type"]),
            "canary": state.get("canary", ""),
            "ctx": state.get("sCtx", ""),
            "hpgrequestid": state.get("sessionId", ""),
            "flowToken": state.get("sFT", ""),
            "PPSX": "",
            "NewUser": "1",
            "fspost": "0",
            "i21": "0",
            "CookieDisclosure": "0",
            "IsFidoSupported": "1",
            "isSignupPost": "0",
            "i19": "16369",
        }
        resp = self.http.post(post_url, data=form, allow_redirects=False, timeout=30)
        for _ in range(4):
            if resp.status_code >= 400:
                raise self.fail(f"HTTP {resp.status_code} after posting the session identifier", step="entra:redeem")
            assertion = parse_saml_form(resp.text, resp.url)
            if assertion is not None:
                return assertion
            page_config = parse_config(resp.text)
            if is_kmsi_page(page_config, resp.url):
                resp = self._answer_kmsi(resp, page_config)
                continue
            if page_config and (page_config.get("strServiceExceptionMessage") or "").strip():
                raise AuthenticationError(f"Entra ID rejected the sign-in: {page_config['strServiceExceptionMessage']}")
            hop = next_hop(resp)
            if hop is None:
                break
            method, url, data = hop
            resp = self.http.request(method, url, data=data, allow_redirects=False, timeout=30)
        raise self.fail("Entra ID did not return a SAML form", step="entra:redeem")

    def _answer_kmsi(self, resp: requests.Response, config: dict) -> requests.Response:
        """Answer "Stay signed in?" with no; the SAML form follows."""
        LOG.debug("Answering the Keep Me Signed In interstitial")
        kmsi_url = urljoin(resp.url, config.get("urlPost") or KMSI_PATH)
        form = {
            "LoginOptions": "3",
            "type": "28",
            "ctx": config.get("sCtx", ""),
            "hpgrequestid": config.get("sessionId", ""),
            "flowToken": config.get("sFT", ""),
            "canary": config.get("canary", ""),
            "i19": "1213",
        }
        return self.http.post(kmsi_url, data=form, allow_redirects=False, timeout=30)
