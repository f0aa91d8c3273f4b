from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Mapping


TOKEN_ENV = "USBIDE_API_TOKEN"
AUTH_MODE_ENV = "USBIDE_API_AUTH"
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


@dataclass(frozen=True)
class AuthConfig:
    auth_mode: str = "local_trust"  # none|local_trust|token

    @staticmethod
    def from_env(env: Mapping[str, str]) -> "AuthConfig":
        return AuthConfig(auth_mode=(env.get(AUTH_MODE_ENV) or "local_trust").strip())


def require_api_auth(auth: AuthConfig, client_host: str | None, authorization: str | None, env: Mapping[str, str] | None = None) -> None:
    """
    Gate an editor front-end's request to the assistant API.

    `local_trust` admits loopback clients only, which suits the IDE talking to
    its own server on the removable drive. `token` compares a bearer token
    against USBIDE_API_TOKEN from the server process environment.
    """
    mode = (auth.auth_mode or "local_trust").strip()
    if mode == "none":
        return

    if mode == "local_trust":
        if (client_host or "").strip() in LOOPBACK_HOSTS:
            return
        raise PermissionError(f"client {client_host or '?'} is not on this machine; set {AUTH_MODE_ENV}=token to allow remote editors")

    if mode == "token":
        expected = (os.environ if env is None else env).get(TOKEN_ENV)
        if not expected:
            raise PermissionError(f"{AUTH_MODE_ENV}=token needs {TOKEN_ENV} in the server environment")
        hdr = (authorization or "").strip()
        scheme, _, got = hdr.partition(" ")
        if scheme.lower() == "bearer" and hmac.compare_digest(got.strip().encode("utf-8"), expected.encode("utf-8")):
            return
        raise PermissionError("missing or wrong bearer token")

    raise PermissionError(f"{AUTH_MODE_ENV} must be none, local_trust or token (got {mode!r})")
