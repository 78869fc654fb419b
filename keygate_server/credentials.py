"""
Credential extraction and trust policy.

Checks, first match wins:
1. Authorization header, Bearer scheme
2. Authorization header with any scheme except Basic (raw value)
3. X-Api-Key header
4. X-Goog-Api-Key header
5. X-API-Key header (second casing for case-sensitive header maps)
6. Query parameter ``key``
7. Query parameter ``auth_token``

Header sources 1, 2, 3 and 5 are strict. The Google header and the query
parameters are only honoured for keys running in compatibility mode.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from keygate_server.errors import InvalidCredential, NoCredentials
from keygate_server.models import APIKey
from keygate_server.store import RecordStore

PROVIDER_NAME = "keygate-api-key"


class CredentialSource(str, Enum):
    """Where a credential was found in the request."""
    AUTHORIZATION = "authorization"
    X_API_KEY = "x-api-key"
    X_GOOG_API_KEY = "x-goog-api-key"
    QUERY_KEY = "query-key"
    QUERY_AUTH_TOKEN = "query-auth-token"


STRICT_SOURCES = frozenset({CredentialSource.AUTHORIZATION, CredentialSource.X_API_KEY})


@dataclass
class AccessResult:
    """Outcome of a successful access check."""
    provider: str
    principal: str
    source: CredentialSource
    api_key: APIKey
    metadata: Dict[str, str] = field(default_factory=dict)


def _get(mapping: Optional[Mapping[str, str]], name: str) -> str:
    if not mapping:
        return ""
    return (mapping.get(name) or "").strip()


def extract_credential(
    headers: Optional[Mapping[str, str]],
    query_params: Optional[Mapping[str, str]] = None,
) -> Tuple[str, Optional[CredentialSource]]:
    """
    Extract the API key from request headers and query parameters.

    Args:
        headers: Request headers (Starlette ``Headers`` or a plain dict)
        query_params: Request query parameters

    Returns:
        ``(value, source)``, or ``("", None)`` when no credential is present
    """
    auth_header = _get(headers, "Authorization")
    if auth_header:
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() == "bearer":
            return token.strip(), CredentialSource.AUTHORIZATION
        if scheme.lower() != "basic":
            return auth_header, CredentialSource.AUTHORIZATION

    for header, source in (
        ("X-Api-Key", CredentialSource.X_API_KEY),
        ("X-Goog-Api-Key", CredentialSource.X_GOOG_API_KEY),
        ("X-API-Key", CredentialSource.X_API_KEY),
    ):
        value = _get(headers, header)
        if value:
            return value, source

    for param, source in (
        ("key", CredentialSource.QUERY_KEY),
        ("auth_token", CredentialSource.QUERY_AUTH_TOKEN),
    ):
        value = _get(query_params, param)
        if value:
            return value, source

    return "", None


def is_strict_source(source: Optional[CredentialSource]) -> bool:
    return source in STRICT_SOURCES


def is_trusted_source(api_key: APIKey, source: Optional[CredentialSource]) -> bool:
    """Strict sources are always accepted, the rest only in compatibility mode."""
    return is_strict_source(source) or api_key.compatibility_mode


def authenticate(
    store: RecordStore,
    headers: Optional[Mapping[str, str]],
    query_params: Optional[Mapping[str, str]] = None,
    provider: str = PROVIDER_NAME,
) -> AccessResult:
    """
    Access check in front of the admission controller.

    Raises:
        NoCredentials: If the request carries no API key
        InvalidCredential: If the key is unknown, disabled, or supplied
            through a source the key does not trust
    """
    value, source = extract_credential(headers, query_params)
    if not value:
        raise NoCredentials()

    api_key = store.find_api_key(value)
    if api_key is None or not api_key.enabled:
        raise InvalidCredential()
    if not is_trusted_source(api_key, source):
        raise InvalidCredential("api key not accepted from this location")

    metadata = {}
    if api_key.user_id:
        metadata["user_id"] = api_key.user_id
    if api_key.label:
        metadata["label"] = api_key.label

    return AccessResult(
        provider=provider,
        principal=api_key.key,
        source=source,
        api_key=api_key,
        metadata=metadata,
    )
