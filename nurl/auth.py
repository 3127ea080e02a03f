"""nurl auth - credential store and auth material."""

import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class AuthKind(Enum):
    NONE = "none"
    BEARER = "bearer"
    BASIC = "basic"
    APIKEY_HEADER = "apikey_header"
    APIKEY_QUERY = "apikey_query"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: Any) -> "AuthKind":
        """Map a spec's ``type`` text to a kind.

        Accepts the aliases found in request files: ``api-key`` / ``apikey``
        (header unless ``in: query``), ``token``, ``oauth2`` (a stored bearer).
        """
        if raw is None or raw == "":
            return cls.NONE
        text = str(raw).strip().lower().replace("-", "_")
        aliases = {
            "token": cls.BEARER,
            "oauth2": cls.BEARER,
            "api_key": cls.APIKEY_HEADER,
            "apikey": cls.APIKEY_HEADER,
        }
        if text in aliases:
            return aliases[text]
        for member in cls:
            if member.value == text and member is not cls.UNRECOGNIZED:
                return member
        return cls.UNRECOGNIZED


@dataclass(frozen=True)
class Auth:
    """Concrete auth material for one request."""

    kind: AuthKind = AuthKind.NONE
    token: str = ""
    username: str = ""
    password: str = ""
    key_name: str = ""
    key_value: str = ""

    def headers(self) -> dict[str, str]:
        if self.kind is AuthKind.BEARER:
            return {"Authorization": f"Bearer {self.token}"}
        if self.kind is AuthKind.BASIC:
            credentials = base64.b64encode(
                f"{self.username}:{self.password}".encode(),
            ).decode()
            return {"Authorization": f"Basic {credentials}"}
        if self.kind is AuthKind.APIKEY_HEADER:
            return {self.key_name or "X-API-Key": self.key_value}
        return {}

    def params(self) -> dict[str, str]:
        if self.kind is AuthKind.APIKEY_QUERY:
            return {self.key_name or "api_key": self.key_value}
        return {}


NO_AUTH = Auth()


class CredentialStore:
    """Resolves request auth specs against the secrets file.

    secrets.yaml layout:

        tokens:
          github: ghp_xxx                 # or {token: ghp_xxx}
        oauth:
          myapp: {access_token: ...}
        api_keys:
          weather: {key: X-API-Key, value: abc, in: header}
        basic_auth:
          admin: {username: root, password: hunter2}
    """

    def __init__(self, secrets: dict | None = None):
        self.secrets = secrets or {}

    def _section(self, name: str) -> dict:
        return self.secrets.get(name) or {}

    def resolve_auth(self, spec: dict | str | None) -> Auth:
        """Turn an auth spec into Auth material.

        Spec forms:
            {type: bearer, token: "..."}         inline
            {type: bearer, ref: github}          secrets.tokens.github
            {type: basic, ref: admin}            secrets.basic_auth.admin
            {type: apikey_header, key: X-Key, value: "..."}
            {type: api-key, ref: weather}        secrets.api_keys.weather
            "none"
        """
        if not spec:
            return NO_AUTH
        if isinstance(spec, str):
            spec = {"type": spec}

        kind = AuthKind.parse(spec.get("type"))
        ref = spec.get("ref")

        if kind is AuthKind.NONE:
            return NO_AUTH

        if kind is AuthKind.BEARER:
            token = spec.get("token")
            if token is None and ref:
                token = self._lookup_token(ref)
            return Auth(kind=kind, token=str(token or ""))

        if kind is AuthKind.BASIC:
            stored = self._section("basic_auth").get(ref, {}) if ref else {}
            return Auth(
                kind=kind,
                username=str(spec.get("username", stored.get("username", ""))),
                password=str(spec.get("password", stored.get("password", ""))),
            )

        if kind in (AuthKind.APIKEY_HEADER, AuthKind.APIKEY_QUERY):
            stored = self._section("api_keys").get(ref, {}) if ref else {}
            location = spec.get("in", stored.get("in", "header"))
            if str(location).lower() == "query":
                kind = AuthKind.APIKEY_QUERY
            return Auth(
                kind=kind,
                key_name=str(spec.get("key", stored.get("key", ""))),
                key_value=str(spec.get("value", stored.get("value", ""))),
            )

        logger.warning("Unrecognized auth type %r, sending without auth", spec.get("type"))
        return Auth(kind=AuthKind.UNRECOGNIZED)

    def _lookup_token(self, ref: str) -> str | None:
        stored = self._section("tokens").get(ref)
        if stored is None:
            oauth = self._section("oauth").get(ref) or {}
            stored = oauth.get("access_token")
        if isinstance(stored, dict):
            stored = stored.get("token") or stored.get("access_token")
        if stored is None:
            logger.warning("No stored token named %r", ref)
        return stored
