import hashlib
import hmac
import json
from typing import Any

from fastapi import Depends, Header, HTTPException, status

from termsync.core.auth import ROLE_SCOPES, Principal, scopes_for_role
from termsync.core.config import Settings, get_settings


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def parse_api_keys(raw: str | None) -> dict[str, str]:
    """Map of sha256 key hash -> role; unknown roles and malformed entries are dropped."""
    if not raw:
        return {}
    try:
        decoded: Any = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}

    parsed: dict[str, str] = {}
    for key_hash, role in decoded.items():
        if not isinstance(key_hash, str) or not isinstance(role, str):
            continue
        normalized_hash = key_hash.strip().lower()
        normalized_role = role.strip().lower()
        if normalized_hash and normalized_role in ROLE_SCOPES:
            parsed[normalized_hash] = normalized_role
    return parsed


async def get_api_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"api auth requires {settings.api_key_header}",
        )

    key_hash = hash_api_key(x_api_key)
    credentials = parse_api_keys(settings.api_keys_json)
    matched = next(
        (
            (stored_hash, role)
            for stored_hash, role in credentials.items()
            if hmac.compare_digest(stored_hash, key_hash)
        ),
        None,
    )
    if not matched:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")

    stored_hash, role = matched
    return Principal(subject=stored_hash[:12], role=role, scopes=scopes_for_role(role))
