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

"""OAuth2 authorization-code + PKCE sign-in against the platform, headless.

Where a browser would render pages, the orchestrator walks the same redirect chain
itself: authorize, introspect/identify on the platform identity engine, then either
the local authenticator path or a SAML detour through an external identity provider,
and finally the code-for-token exchange.
"""

import base64
import hashlib
import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import requests

import cloud_json
from cloud_errors import AuthFlowError, SsoConfigurationError
from cloud_idp_common import (
    IdpAdapter,
    IdpKind,
    MfaPrompts,
    SamlAssertion,
    detect_provider,
    follow_redirects,
    parse_forms,
)
from cloud_idp_entra import EntraAdapter
from cloud_idp_okta import OktaAdapter
from cloud_idp_pingid import PingIdAdapter
from cloud_idx import IdxClient, IdxFlow, extract_state_token
from cloud_logging import get_logger, redact_text
from cloud_settings import PlatformEndpoints
from cloud_transport import check_reachability, host_of, new_http_session

LOG = get_logger("auth")

DEFAULT_TOKEN_LIFETIME = 7200

ADAPTERS = {
    IdpKind.OKTA: OktaAdapter,
    IdpKind.ENTRA_ID: EntraAdapter,
    IdpKind.PING_ID: PingIdAdapter,
}


# ---------- OAuth PKCE (S256) helpers ----------

def pkce_pair() -> tuple:
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(48)).decode().rstrip("=")
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    return verifier, challenge


def random_state() -> str:
    return base64.urlsafe_b64encode(os.urandom(18)).decode().rstrip("=")


@dataclass
class AuthenticationContext:
    """Per-attempt secrets and provider state; discarded when the attempt ends."""

    verifier: str
    challenge: str
    state: str
    nonce: str
    provider: IdpKind = IdpKind.NONE
    provider_data: dict = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"AuthenticationContext(provider={self.provider.value}, verifier=***, state=***)"


def new_context() -> AuthenticationContext:
    verifier, challenge = pkce_pair()
    return AuthenticationContext(verifier=verifier, challenge=challenge, state=random_state(), nonce=random_state())


@dataclass
class IdentityTokens:
    access_token: str
    refresh_token: Optional[str]
    id_token: Optional[str]
    created_at: datetime
    expires_in: int = DEFAULT_TOKEN_LIFETIME

    def __repr__(self) -> str:
        return f"IdentityTokens(access_token=***, refresh_token=***, id_token=***, created_at={self.created_at.isoformat()})"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tokens_from_response(tok: dict, now: datetime) -> IdentityTokens:
    if "access_token" not in tok:
        raise AuthFlowError("Token endpoint did not return an access_token", step="token")
    if "refresh_token" not in tok:
        LOG.warning("Token endpoint did not return a refresh_token; the session cannot be refreshed in place.")
    return IdentityTokens(
        access_token=tok["access_token"],
        refresh_token=tok.get("refresh_token"),
        id_token=tok.get("id_token"),
        created_at=now,
        expires_in=int(tok.get("expires_in") or DEFAULT_TOKEN_LIFETIME),
    )


def post_token_request(http: requests.Session, token_url: str, data: dict, step: str,
                       auth: Optional[tuple] = None) -> dict:
    """POST a grant to the token endpoint and return the decoded token response."""
    resp = http.post(token_url, data=data, auth=auth, headers={"Accept": "application/json"}, timeout=30)
    tok = cloud_json.try_decode(resp.text)
    if resp.status_code >= 400 or not isinstance(tok, dict):
        detail = ""
        if isinstance(tok, dict):
            detail = f": {tok.get('error', '')} {tok.get('error_description', '')}".rstrip()
        raise AuthFlowError(f"Token endpoint returned HTTP {resp.status_code}{detail}", step=step,
                            raw_response=redact_text(resp.text))
    return tok


class AuthOrchestrator:
    def __init__(
        self,
        endpoints: PlatformEndpoints,
        http: Optional[requests.Session] = None,
        prompts: Optional[MfaPrompts] = None,
        poll_interval: float = 3.0,
        poll_timeout: float = 120.0,
        reachability: Callable = check_reachability,
        now: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoints = endpoints
        self.http = http or new_http_session(browser_like=True)
        self.prompts = prompts or MfaPrompts()
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.reachability = reachability
        self.now = now
        self.clock = clock
        self.sleep = sleep

    # ---------- step helpers ----------

    def is_callback(self, url: str) -> bool:
        target = urlparse(self.endpoints.redirect_uri)
        got = urlparse(url)
        if (got.hostname or "").lower() != (target.hostname or "").lower() or got.path != target.path:
            return False
        q = parse_qs(got.query)
        return "code" in q or "error" in q

    def authorize_url(self, ctx: AuthenticationContext, login_hint: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.endpoints.client_id,
            "redirect_uri": self.endpoints.redirect_uri,
            "scope": self.endpoints.scope,
            "state": ctx.state,
            "nonce": ctx.nonce,
            "code_challenge": ctx.challenge,
            "code_challenge_method": "S256",
        }
        if login_hint:
            params["login_hint"] = login_hint
        return self.endpoints.authorize_url + "?" + urlencode(params)

    def code_from_callback(self, url: str, ctx: AuthenticationContext) -> str:
        q = parse_qs(urlparse(url).query)
        if "error" in q:
            desc = q.get("error_description", [""])[0]
            raise AuthFlowError(f"Authorization failed: {q['error'][0]} {desc}".strip(), step="callback",
                                provider=ctx.provider.value)
        code = q.get("code", [None])[0]
        if not code or q.get("state", [None])[0] != ctx.state:
            raise AuthFlowError("Authorization failed or state mismatch", step="callback", provider=ctx.provider.value)
        return code

    def _follow_to_callback(self, url: str, ctx: AuthenticationContext, step: str,
                            method: str = "GET", data: Optional[dict] = None) -> str:
        if self.is_callback(url):
            return self.code_from_callback(url, ctx)
        final, history = follow_redirects(self.http, url, method=method, data=data, stop=self.is_callback)
        if self.is_callback(history[-1]):
            return self.code_from_callback(history[-1], ctx)
        raise AuthFlowError("Sign-in did not reach the platform callback", step=step, provider=ctx.provider.value,
                            raw_response=redact_text(final.text, limit=500) if cloud_json.looks_like_json(final.text) else None)

    def _adapter(self, kind: IdpKind) -> IdpAdapter:
        return ADAPTERS[kind](
            self.http, self.prompts,
            poll_interval=self.poll_interval, poll_timeout=self.poll_timeout,
            clock=self.clock, sleep=self.sleep,
        )

    def _federate(self, ctx: AuthenticationContext, identifier: str, password: Optional[str],
                  final: requests.Response, history: list) -> str:
        """Run the external IdP adapter for the landing page and post its assertion back."""
        platform_hosts = {host_of(self.endpoints.auth_url), host_of(self.endpoints.sso_url)}
        entry = next((u for u in history if host_of(u) not in platform_hosts), final.url)
        forms = parse_forms(final.text)
        kind = detect_provider(final.url, final.text, redirect_target=entry,
                               saml_action=forms[0].action if forms else None)
        if kind is IdpKind.NONE:
            raise SsoConfigurationError(
                f"The sign-in was redirected to {host_of(final.url)}, which is not a supported identity "
                "provider (Okta, Entra ID, PingID). Check the SSO connection configured for this domain."
            )
        ctx.provider = kind
        LOG.info("Federated sign-in through %s", kind.value)
        assertion: SamlAssertion = self._adapter(kind).authenticate(
            {"response": final, "url": entry, "password": password, "history": history}, identifier
        )
        return self._follow_to_callback(assertion.action, ctx, "saml-post", method="POST",
                                        data=assertion.form_payload())

    # ---------- flow ----------

    def authenticate(self, identifier: str, password: Optional[str] = None, sso: bool = False) -> IdentityTokens:
        ctx = new_context()
        try:
            code = self._run(ctx, identifier, password, sso)
            return self.exchange_code(code, ctx)
        finally:
            ctx.provider_data.clear()

    def _run(self, ctx: AuthenticationContext, identifier: str, password: Optional[str], sso: bool) -> str:
        self.reachability(self.endpoints.core_hosts())

        url = self.authorize_url(ctx, login_hint=identifier if sso else None)
        final, history = follow_redirects(self.http, url, stop=self.is_callback)
        if self.is_callback(history[-1]):
            return self.code_from_callback(history[-1], ctx)

        platform_hosts = {host_of(self.endpoints.auth_url), host_of(self.endpoints.sso_url)}
        if host_of(final.url) not in platform_hosts:
            return self._federate(ctx, identifier, password, final, history)

        state_token = extract_state_token(final.text)
        if not state_token:
            raise AuthFlowError("No state token on the platform sign-in page", step="authorize")

        flow = IdxFlow(
            IdxClient(self.endpoints.auth_url, self.http, provider="platform"),
            password=password,
            otp_source=self.prompts.otp_code,
            notify=self.prompts.notify,
            poll_interval=self.poll_interval,
            poll_timeout=self.poll_timeout,
            clock=self.clock,
            sleep=self.sleep,
        )
        resp = flow.start(state_token, identifier)

        idp_href = resp.redirect_idp_href()
        if idp_href:
            domain = identifier.rsplit("@", 1)[-1].lower() if "@" in identifier else ""
            if domain != self.endpoints.platform_domain.lower():
                raise SsoConfigurationError(
                    f"The domain '{domain or identifier}' is federated to an external identity provider. "
                    "Connect with SSO enabled, or ask the platform administrator to check the SSO "
                    "configuration for this domain."
                )
            final, history = follow_redirects(self.http, idp_href, stop=self.is_callback)
            if self.is_callback(history[-1]):
                return self.code_from_callback(history[-1], ctx)
            return self._federate(ctx, identifier, password, final, history)

        resp = flow.run(resp)
        if not resp.success_href:
            raise AuthFlowError("Identity engine did not complete the sign-in", step="idx", provider="platform")
        return self._follow_to_callback(resp.success_href, ctx, "success-redirect")

    def exchange_code(self, code: str, ctx: AuthenticationContext) -> IdentityTokens:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.endpoints.redirect_uri,
            "client_id": self.endpoints.client_id,
            "code_verifier": ctx.verifier,
        }
        tok = post_token_request(self.http, self.endpoints.token_url, data, "token")
        LOG.info("Signed in; identity tokens issued.")
        return tokens_from_response(tok, self.now())
