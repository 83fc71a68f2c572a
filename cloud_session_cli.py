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

"""
Command-line front end: sign in, optionally make one API call, then tear the session down.

Usage examples:
  - Sign in with a password from the environment and list the workspace's users:
      CLOUD_PASSWORD=... cloud-session --username alice@example.com \
        --password-env CLOUD_PASSWORD --workspace "Acme Prod" \
        --request https://global.api.greenlake.hpe.com/identity/v1/users
  - Federated sign-in, TOTP codes generated from a seed held in the environment:
      cloud-session --username bob@corp.example --sso --otp-secret-env CLOUD_TOTP_SEED

Profile files:
  --config-file may point at a TOML file (one table per profile, or top-level keys for
  DEFAULT) or an INI file ([profile] sections). CLI flags override profile values and
  profile values override the built-in defaults.
"""

import argparse
import configparser
import getpass
import os
import sys
from typing import Any, Dict, Optional

import toml

import cloud_json
from cloud_errors import CloudSessionError
from cloud_idp_common import MfaPrompts
from cloud_logging import get_logger, setup_logging
from cloud_request_engine import RequestOptions
from cloud_session_manager import DEFAULT_CREDENTIAL_PREFIX, SessionManager

LOG = get_logger("cli")

DEFAULT_PROFILE_FILENAME = "cloud_session.toml"
HOME_PROFILE_PATH = "~/.config/cloud-session/config"

DEFAULTS: Dict[str, Any] = {
    "username": None,
    "workspace": None,
    "sso": False,
    "password_env": None,
    "otp_secret_env": None,
    "credential_prefix": DEFAULT_CREDENTIAL_PREFIX,
    "remove_existing_credentials": False,
    "non_interactive": False,
    "max_retries": 5,
    "page_size": 100,
    "poll_timeout": 120.0,
    "log_level": "INFO",
}

_TRUE = {"1", "true", "yes", "on"}


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def is_ini_file(path: str) -> bool:
    """Treat a file as INI when it has a bare ``[section]`` header and no TOML-style values.

    TOML tables look like INI sections, so quoted strings, arrays, inline tables or
    ``true``/``false`` literals on the right of ``=`` mark the file as TOML.
    """
    has_section = False
    try:
        with open(path, "r", encoding="utf-8") as f:
            for _ in range(50):
                line = f.readline()
                if not line:
                    break
                s = line.strip()
                if not s or s.startswith(("#", ";")):
                    continue
                if s.startswith("[["):
                    return False
                if s.startswith("[") and s.endswith("]"):
                    has_section = True
                    continue
                if "=" in s:
                    value = s.split("=", 1)[1].strip()
                    if value.startswith(('"', "'", "[", "{")) or value in ("true", "false"):
                        return False
    except OSError as e:
        LOG.debug("Could not inspect %s: %s", path, e)
    return has_section


def load_profile_from_toml(path: str, profile: str) -> Dict[str, Any]:
    try:
        data = toml.load(path)
    except (OSError, toml.TomlDecodeError) as e:
        LOG.debug("Failed to parse TOML %s: %s", path, e)
        return {}
    for name in (profile, profile.lower()):
        if isinstance(data.get(name), dict):
            return {k.lower(): v for k, v in data[name].items()}
    if profile.upper() == "DEFAULT":
        return {k.lower(): v for k, v in data.items() if not isinstance(v, dict)}
    return {}


def load_profile_from_ini(path: str, profile: str) -> Dict[str, Any]:
    cp = configparser.ConfigParser()
    try:
        cp.read(path, encoding="utf-8")
    except configparser.Error as e:
        LOG.debug("Failed to read INI %s: %s", path, e)
        return {}
    if profile in cp:
        return {k.lower(): v for k, v in cp[profile].items()}
    return {k.lower(): v for k, v in cp.defaults().items()}


def find_and_load_profile(config_file_arg: Optional[str], profile: Optional[str],
                          cwd: Optional[str] = None) -> Dict[str, Any]:
    """Return the first non-empty profile found in: --config-file, ./cloud_session.toml, ~/.config/cloud-session/config."""
    candidates = []
    if config_file_arg:
        candidates.append(os.path.expanduser(config_file_arg))
    candidates.append(os.path.join(cwd or os.getcwd(), DEFAULT_PROFILE_FILENAME))
    candidates.append(os.path.expanduser(HOME_PROFILE_PATH))

    name = profile or "DEFAULT"
    for path in candidates:
        if not os.path.isfile(path):
            continue
        if is_ini_file(path):
            cfg = load_profile_from_ini(path, name)
        else:
            cfg = load_profile_from_toml(path, name)
        if cfg:
            LOG.debug("Loaded profile %s from %s", name, path)
            return cfg
    if config_file_arg:
        LOG.warning("Profile %s not found in %s; using defaults.", name, config_file_arg)
    return {}


def resolve_settings(args: argparse.Namespace, profile_cfg: Dict[str, Any]) -> Dict[str, Any]:
    def pick(name, cli_val, cast=None):
        if cli_val is not None:
            return cli_val
        if name in profile_cfg and profile_cfg[name] != "":
            return cast(profile_cfg[name]) if cast else profile_cfg[name]
        return DEFAULTS.get(name)

    return {
        "username": pick("username", args.username),
        "workspace": pick("workspace", args.workspace),
        "sso": pick("sso", args.sso, as_bool),
        "password_env": pick("password_env", args.password_env),
        "otp_secret_env": pick("otp_secret_env", args.otp_secret_env),
        "credential_prefix": pick("credential_prefix", args.credential_prefix),
        "remove_existing_credentials": pick("remove_existing_credentials", args.remove_existing_credentials, as_bool),
        "non_interactive": pick("non_interactive", args.non_interactive, as_bool),
        "max_retries": pick("max_retries", args.max_retries, int),
        "page_size": pick("page_size", args.page_size, int),
        "poll_timeout": pick("poll_timeout", args.poll_timeout, float),
        "log_level": pick("log_level", args.log_level),
    }


def read_password(password_env: Optional[str], non_interactive: bool) -> Optional[str]:
    if password_env:
        value = os.environ.get(password_env)
        if value:
            return value
        LOG.warning("Environment variable %s is empty.", password_env)
    if non_interactive:
        return None
    return getpass.getpass("Password (leave empty for passwordless/SSO): ") or None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Sign in to the cloud platform, optionally call one API endpoint, then sign out.",
        allow_abbrev=False,
    )
    p.add_argument("--config-file", default=None, help="TOML or INI profile file")
    p.add_argument("--profile", default=None, help="Profile (table/section) to read from the profile file")
    p.add_argument("--username", default=None, help="Account e-mail address")
    p.add_argument("--workspace", default=None, help="Workspace name or id (required when several are visible)")
    p.add_argument("--sso", action="store_const", const=True, default=None, help="Use federated sign-in")
    p.add_argument("--password-env", default=None, help="Name of the environment variable holding the password")
    p.add_argument("--otp-secret-env", default=None, help="Name of the environment variable holding a TOTP seed")
    p.add_argument("--credential-prefix", default=None, help="Name prefix for the temporary API credential")
    p.add_argument("--remove-existing-credentials", action="store_const", const=True, default=None,
                   help="Delete earlier API credentials created by this tool before creating a new one")
    p.add_argument("--non-interactive", action="store_const", const=True, default=None,
                   help="Never prompt; fail when an MFA prompt would be needed")
    p.add_argument("--max-retries", type=int, default=None, help="Attempts for transient HTTP failures (default 5)")
    p.add_argument("--page-size", type=int, default=None, help="Page size for paginated reads (default 100)")
    p.add_argument("--poll-timeout", type=float, default=None, help="Seconds to wait for a push approval (default 120)")
    p.add_argument("--request", default=None, help="Absolute HTTPS URI to call once the session is up")
    p.add_argument("--method", default="GET", help="HTTP method for --request")
    p.add_argument("--body", default=None, help="JSON body for --request")
    p.add_argument("--full-envelope", action="store_true", help="Print the response envelope instead of its items")
    p.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ERROR; default INFO)")
    return p


def run(settings: Dict[str, Any], args: argparse.Namespace, manager: Optional[SessionManager] = None) -> int:
    if not settings["username"]:
        LOG.error("A username is required (--username or the profile's username key).")
        return 2

    otp_secret = os.environ.get(settings["otp_secret_env"]) if settings["otp_secret_env"] else None
    prompts = MfaPrompts(otp_secret=otp_secret, non_interactive=settings["non_interactive"])
    manager = manager or SessionManager(
        prompts=prompts,
        credential_prefix=settings["credential_prefix"],
        max_retries=settings["max_retries"],
        page_size=settings["page_size"],
        poll_timeout=settings["poll_timeout"],
    )
    password = None if settings["sso"] else read_password(settings["password_env"], settings["non_interactive"])

    try:
        session = manager.connect(
            settings["username"],
            password=password,
            workspace=settings["workspace"],
            sso=settings["sso"],
            remove_existing_credentials=settings["remove_existing_credentials"],
        )
    except CloudSessionError as e:
        LOG.error("Sign-in failed: %s", e)
        return 1
    LOG.info("Connected as %s to workspace %s", session.display_name or session.username, session.workspace.name)

    rc = 0
    try:
        if args.request:
            body = cloud_json.decode(args.body) if args.body else None
            result = manager.request(args.request, args.method.upper(), body,
                                     RequestOptions(full_envelope=args.full_envelope))
            payload = result.data if args.full_envelope else result.items
            print(cloud_json.encode(payload, indent=2))
            if not result.complete:
                LOG.warning("Pages %s could not be read; the listing is partial.", result.failed_pages)
    except CloudSessionError as e:
        LOG.error("Request failed: %s", e)
        rc = 1
    finally:
        try:
            manager.tear_down()
        except CloudSessionError as e:
            LOG.error("Sign-out did not complete: %s", e)
            rc = rc or 1
    return rc


def main() -> None:
    p = build_parser()
    args = p.parse_args()
    profile_cfg = find_and_load_profile(args.config_file, args.profile)
    settings = resolve_settings(args, profile_cfg)
    setup_logging(settings["log_level"])
    sys.exit(run(settings, args))


if __name__ == "__main__":
    main()
