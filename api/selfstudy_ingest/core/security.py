import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from selfstudy_ingest.core.auth import Principal, PrincipalType
from selfstudy_ingest.core.config import Settings, get_settings

ROLE_SCOPES: dict[str, set[str]] = {
    "user": {"imports:read", "imports:write"},
    "reviewer": {"imports:read", "imports:write", "imports:review"},
    "admin": {"imports:read", "imports:write", "imports:review"},
}
CALLBACK_SECRET_HEADER = "X-Webhook-Secret"


async def get_callback_principal(
    settings: Settings = Depends(get_settings),
    x_webhook_secret: str | None = Header(default=None, alias=CALLBACK_SECRET_HEADER),
) -> Principal:
    if settings.callback_secret:
        if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.callback_secret):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid callback secret")
    return Principal(
        principal_type=PrincipalType.CALLBACK,
        subject="document-matcher",
        scopes={"imports:callback"},
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.identity_url or not settings.identity_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="identity provider is not configured",
        )

    user = await _fetch_identity_user(
        identity_url=settings.identity_url,
        identity_anon_key=settings.identity_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=ROLE_SCOPES.get(role, ROLE_SCOPES["user"]),
        actor_id=user_id,
    )


async def _fetch_identity_user(
    *,
    identity_url: str,
    identity_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": identity_anon_key,
    }
    url = f"{identity_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="identity verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="identity verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> str:
    for key in ("app_metadata", "user_metadata"):
        metadata = user.get(key)
        if isinstance(metadata, dict):
            role = metadata.get("role")
            if isinstance(role, str) and role:
                return role
    return "user"
