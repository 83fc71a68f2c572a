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

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

import requests

import cloud_json
from cloud_logging import get_logger
from cloud_transport import ensure_https, host_of

LOG = get_logger("settings")

# ---------- Production endpoints (overridable) ----------

DEFAULT_SETTINGS_URL = "https://common.cloud.hpe.com/settings.json"
DEFAULT_AUTH_URL = "https://auth.hpe.com"
DEFAULT_SSO_URL = "https://sso.common.cloud.hpe.com"
DEFAULT_UI_DOORWAY_URL = "https://aquila-user-api.common.cloud.hpe.com"
DEFAULT_GLOBAL_API_URL = "https://global.api.greenlake.hpe.com"
DEFAULT_CLIENT_ID = "aquila-user-auth"
DEFAULT_REDIRECT_URI = "https://common.cloud.hpe.com/authentication/callback"
DEFAULT_SCOPE = "openid profile email"
PLATFORM_DOMAIN = "hpe.com"

ENV_SETTINGS_URL = "CLOUD_SETTINGS_URL"
ENV_AUTH_URL = "CLOUD_AUTH_URL"
ENV_SSO_URL = "CLOUD_SSO_URL"

# ---------- Fixed path templates (dictated by the platform) ----------

# OAuth2 authorization server (SSO host)
AUTHORIZE_PATH = "/as/authorization.oauth2"
TOKEN_PATH = "/as/token.oauth2"
REVOCATION_PATH = "/as/revoke_token.oauth2"

# Identity engine (auth host)
INTROSPECT_PATH = "/idp/idx/introspect"
IDENTIFY_PATH = "/idp/idx/identify"
CHALLENGE_PATH = "/idp/idx/challenge"
CHALLENGE_ANSWER_PATH = "/idp/idx/challenge/answer"
CHALLENGE_POLL_PATH = "/idp/idx/authenticators/poll"

# Workspace session (UI doorway host)
SESSION_PATH = "/authn/v1/session"
LOAD_ACCOUNT_PATH = "/authn/v1/session/load-account/{workspace_id}"
END_SESSION_PATH = "/authn/v1/session/end-session"
WORKSPACES_PATH = "/accounts/ui/v1/customer/list-accounts"
CREDENTIALS_PATH = "/authn/v1/token-management/credentials"
CREDENTIAL_PATH = "/authn/v1/token-management/credentials/{credential_id}"

# Downstream APIs (global API host)
V2_TOKEN_PATH = "/authorization/v2/oauth2/{workspace_id}/token"
ORGANIZATIONS_PATH = "/organizations/v2alpha1/organizations"

# Settings-document keys understood by load_endpoints()
_DOCUMENT_KEYS = {
    "authnUrl": "auth_url",
    "ssoUrl": "sso_url",
    "uiDoorwayUrl": "ui_doorway_url",
    "globalApiUrl": "global_api_url",
    "clientId": "client_id",
    "redirectUri": "redirect_uri",
    "platformDomain": "platform_domain",
}


@dataclass(frozen=True)
class PlatformEndpoints:
    settings_url: str = DEFAULT_SETTINGS_URL
    auth_url: str = DEFAULT_AUTH_URL
    sso_url: str = DEFAULT_SSO_URL
    ui_doorway_url: str = DEFAULT_UI_DOORWAY_URL
    global_api_url: str = DEFAULT_GLOBAL_API_URL
    client_id: str = DEFAULT_CLIENT_ID
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scope: str = DEFAULT_SCOPE
    platform_domain: str = PLATFORM_DOMAIN

    # SSO host
    @property
    def authorize_url(self) -> str:
        return self.sso_url + AUTHORIZE_PATH

    @property
    def token_url(self) -> str:
        return self.sso_url + TOKEN_PATH

    @property
    def revocation_url(self) -> str:
        return self.sso_url + REVOCATION_PATH

    # UI doorway host
    @property
    def session_url(self) -> str:
        return self.ui_doorway_url + SESSION_PATH

    def load_account_url(self, workspace_id: str) -> str:
        return self.ui_doorway_url + LOAD_ACCOUNT_PATH.format(workspace_id=workspace_id)

    @property
    def end_session_url(self) -> str:
        return self.ui_doorway_url + END_SESSION_PATH

    @property
    def workspaces_url(self) -> str:
        return self.ui_doorway_url + WORKSPACES_PATH

    @property
    def credentials_url(self) -> str:
        return self.ui_doorway_url + CREDENTIALS_PATH

    def credential_url(self, credential_id: str) -> str:
        return self.ui_doorway_url + CREDENTIAL_PATH.format(credential_id=credential_id)

    # Global API host
    def v2_token_url(self, workspace_id: str) -> str:
        return self.global_api_url + V2_TOKEN_PATH.format(workspace_id=workspace_id)

    @property
    def organizations_url(self) -> str:
        return self.global_api_url + ORGANIZATIONS_PATH

    def core_hosts(self) -> list:
        hosts = []
        for url in (self.auth_url, self.sso_url, self.ui_doorway_url):
            h = host_of(url)
            if h and h not in hosts:
                hosts.append(h)
        return hosts


def env_overrides(env: Optional[Mapping[str, str]] = None) -> dict:
    env = os.environ if env is None else env
    out = {}
    for var, attr in ((ENV_SETTINGS_URL, "settings_url"), (ENV_AUTH_URL, "auth_url"), (ENV_SSO_URL, "sso_url")):
        val = (env.get(var) or "").strip()
        if val:
            out[attr] = ensure_https(val.rstrip("/"))
    return out


def fetch_settings_document(http: requests.Session, url: str, timeout: float = 30) -> dict:
    try:
        resp = http.get(url, headers={"Accept": "application/json"}, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        LOG.warning("Could not fetch settings document %s (%s); using built-in endpoints.", url, e)
        return {}
    doc = cloud_json.try_decode(resp.text)
    if not isinstance(doc, dict):
        LOG.warning("Settings document at %s is not a JSON object; using built-in endpoints.", url)
        return {}
    return doc


def load_endpoints(http: Optional[requests.Session] = None, env: Optional[Mapping[str, str]] = None) -> PlatformEndpoints:
    """Resolve endpoints: constants, then the settings document, then environment overrides."""
    overrides = env_overrides(env)
    endpoints = PlatformEndpoints(settings_url=overrides.get("settings_url", DEFAULT_SETTINGS_URL))
    if http is not None:
        doc = fetch_settings_document(http, endpoints.settings_url)
        from_doc = {}
        for key, attr in _DOCUMENT_KEYS.items():
            val = doc.get(key)
            if isinstance(val, str) and val.strip():
                val = val.strip()
                if attr.endswith("_url"):
                    val = ensure_https(val.rstrip("/"))
                from_doc[attr] = val
        endpoints = replace(endpoints, **from_doc)
    endpoints = replace(endpoints, **{k: v for k, v in overrides.items() if k != "settings_url"})
    LOG.debug("Resolved endpoints: auth=%s sso=%s doorway=%s global=%s",
              endpoints.auth_url, endpoints.sso_url, endpoints.ui_doorway_url, endpoints.global_api_url)
    return endpoints
