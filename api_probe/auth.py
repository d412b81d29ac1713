"""Auth Injector - Applies one authentication variant to a request.

Exactly one variant is active per run. build_auth() resolves loosely
specified settings (CLI flags, config file keys) into that single variant
and rejects conflicting selections before the run starts.
"""

from __future__ import annotations

import base64
from typing import Any
from urllib.parse import quote

from api_probe.config_loader import ConfigError
from api_probe.models import (
    ApiKeyHeaderAuth,
    ApiKeyQueryAuth,
    AuthConfig,
    BasicAuth,
    BearerAuth,
    NoAuth,
)

# Characters left unescaped by JavaScript's encodeURIComponent
_URI_COMPONENT_SAFE = "-_.!~*'()"


def encode_query_component(value: str) -> str:
    """Percent-encode a query name or value."""
    return quote(value, safe=_URI_COMPONENT_SAFE)


def set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any existing header with the same name.

    Header names compare case-insensitively; the new spelling wins.
    """
    lower = name.lower()
    for existing in [k for k in headers if k.lower() == lower]:
        del headers[existing]
    headers[name] = value


def apply_auth(auth: AuthConfig, headers: dict[str, str], query: str) -> str:
    """Apply an auth variant to headers (in place) and the query string.

    Args:
        auth: Active auth variant.
        headers: Header map to update.
        query: Already-built query string ("" or "?a=b...").

    Returns:
        The query string, extended for ApiKeyQuery.
    """
    if isinstance(auth, BearerAuth):
        set_header(headers, "Authorization", f"Bearer {auth.token}")
    elif isinstance(auth, ApiKeyHeaderAuth):
        set_header(headers, auth.header_name or "X-API-Key", auth.key)
    elif isinstance(auth, ApiKeyQueryAuth):
        pair = f"{encode_query_component(auth.query_name)}={encode_query_component(auth.key)}"
        query = f"{query}&{pair}" if query else f"?{pair}"
    elif isinstance(auth, BasicAuth):
        credentials = f"{auth.username}:{auth.password}".encode("utf-8")
        token = base64.b64encode(credentials).decode("ascii")
        set_header(headers, "Authorization", f"Basic {token}")
    return query


def build_auth(
    bearer_token: str | None = None,
    api_key: str | None = None,
    api_key_header: str | None = None,
    api_key_query: str | None = None,
    basic: str | None = None,
) -> AuthConfig:
    """Resolve independently settable auth fields into a single variant.

    Args:
        bearer_token: Token for Bearer auth.
        api_key: Key value for API-key auth (header by default).
        api_key_header: Header name for the API key.
        api_key_query: Query parameter name for the API key.
        basic: "username:password" for Basic auth.

    Raises:
        ConfigError: If more than one variant is selected, or an API-key
            location is given without a key.
    """
    if api_key_header and api_key_query:
        raise ConfigError(
            "API key cannot be sent both as a header and as a query parameter; "
            "choose one of --api-key-header or --api-key-query"
        )
    if (api_key_header or api_key_query) and not api_key:
        raise ConfigError("--api-key-header/--api-key-query require --api-key")

    selected = [
        name
        for name, value in (("bearer", bearer_token), ("api key", api_key), ("basic", basic))
        if value
    ]
    if len(selected) > 1:
        raise ConfigError(
            f"Only one authentication method may be configured, got: {', '.join(selected)}"
        )

    if bearer_token:
        return BearerAuth(token=bearer_token)
    if api_key:
        if api_key_query:
            return ApiKeyQueryAuth(key=api_key, query_name=api_key_query)
        return ApiKeyHeaderAuth(key=api_key, header_name=api_key_header or "X-API-Key")
    if basic:
        username, _, password = basic.partition(":")
        if not username:
            raise ConfigError("Basic auth requires USERNAME:PASSWORD")
        return BasicAuth(username=username, password=password)
    return NoAuth()


def auth_from_mapping(raw: dict[str, Any]) -> AuthConfig:
    """Build an auth variant from a config-file mapping.

    Expects the tagged form, e.g. {"type": "bearer", "token": "..."}.
    An API-key mapping naming both a header and a query location is
    rejected as conflicting.

    Raises:
        ConfigError: If the mapping is incomplete or conflicting.
    """
    auth_type = str(raw.get("type") or "none").lower()

    if auth_type == "none":
        return NoAuth()

    if auth_type == "bearer":
        token = raw.get("token")
        if not token:
            raise ConfigError("Bearer auth requires a token")
        return BearerAuth(token=str(token))

    if auth_type == "basic":
        username = raw.get("username")
        if not username:
            raise ConfigError("Basic auth requires a username")
        return BasicAuth(username=str(username), password=str(raw.get("password") or ""))

    if auth_type in ("api_key", "api_key_header", "api_key_query"):
        header_name = raw.get("header_name")
        query_name = raw.get("query_name")
        if auth_type == "api_key_header" and query_name:
            header_name = header_name or "X-API-Key"
        if auth_type == "api_key_query" and not query_name:
            query_name = "api_key"
        if not raw.get("key"):
            raise ConfigError("API key auth requires a key")
        return build_auth(
            api_key=str(raw["key"]),
            api_key_header=header_name,
            api_key_query=query_name,
        )

    raise ConfigError(f"Unknown auth type '{auth_type}'")
