"""
Утилиты безопасности и авторизации.

Ядро не аутентифицирует пользователей само: на вход приходит уже
проверенный принципал (user_id, role). Здесь только извлечение принципала
из запроса.

Поддерживаемые режимы (AUTH_MODE):
- api_key: X-API-Key, ключи в API_KEYS как "key:user_id:role"
- jwt: Bearer JWT (shared secret или OIDC/JWKS), роль в JWT_ROLE_CLAIM
- none: без авторизации (ТОЛЬКО dev), принципал из X-User-Id/X-User-Role
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import jwt
import requests

from counseling_engine.domain.enums import Role

from .config import get_settings
from .errors import ForbiddenError, UnauthorizedError


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: Role
    auth_type: str
    claims: dict[str, Any] | None = None


def _parse_api_keys(raw: str) -> dict[str, tuple[str, str]]:
    """
    Разбор строки API_KEYS: "k1:user-1:client,k2:admin-1:admin".
    """
    out: dict[str, tuple[str, str]] = {}
    for item in (raw or "").split(","):
        parts = [p.strip() for p in item.split(":")]
        if len(parts) != 3 or not all(parts):
            continue
        key, user_id, role = parts
        out[key] = (user_id, role)
    return out


def _parse_role(raw: Any) -> Role:
    try:
        return Role(str(raw or "").strip().lower())
    except ValueError as e:
        raise UnauthorizedError("Неизвестная роль", {"role": str(raw)[:32]}) from e


def _jwt_algorithms(raw: str) -> list[str]:
    algos = [a.strip() for a in (raw or "").split(",") if a.strip()]
    return algos or ["RS256"]


def _extract_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    prefix = "bearer "
    if authorization.lower().startswith(prefix):
        return authorization[len(prefix) :].strip()
    return None


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


@lru_cache(maxsize=8)
def _get_jwks_client(jwks_url: str):
    return jwt.PyJWKClient(jwks_url)


@lru_cache(maxsize=8)
def _discover_jwks_url(issuer_url: str, timeout_s: int) -> str:
    discovery = issuer_url.rstrip("/") + "/.well-known/openid-configuration"
    try:
        resp = requests.get(discovery, timeout=timeout_s)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise UnauthorizedError("Не удалось получить OIDC discovery", {"err": str(e)}) from e

    jwks = data.get("jwks_uri")
    if not jwks:
        raise UnauthorizedError("OIDC discovery не содержит jwks_uri")
    return str(jwks)


def _verify_jwt(token: str) -> dict[str, Any]:
    s = get_settings()
    audience = s.oidc_audience
    issuer = s.oidc_issuer_url
    kwargs: dict[str, Any] = {
        "algorithms": _jwt_algorithms(s.oidc_algorithms),
        "options": {"verify_aud": bool(audience)},
        "leeway": int(s.jwt_clock_skew_sec or 30),
    }
    if audience:
        kwargs["audience"] = audience
    if issuer:
        kwargs["issuer"] = issuer

    secret = (s.jwt_shared_secret or "").strip()
    if secret:
        try:
            return jwt.decode(token, secret, **kwargs)
        except jwt.PyJWTError as e:
            raise UnauthorizedError("JWT не прошёл проверку", {"err": str(e)}) from e

    jwks_url = (s.oidc_jwks_url or "").strip()
    if not jwks_url:
        if not issuer:
            raise UnauthorizedError("JWT/OIDC не настроен: укажи OIDC_JWKS_URL или OIDC_ISSUER_URL")
        jwks_url = _discover_jwks_url(issuer, int(s.oidc_discovery_timeout_sec or 5))

    try:
        key = _get_jwks_client(jwks_url).get_signing_key_from_jwt(token).key
        return jwt.decode(token, key=key, **kwargs)
    except jwt.PyJWTError as e:
        raise UnauthorizedError("JWT не прошёл проверку", {"err": str(e)}) from e


def require_auth(
    *,
    authorization: str | None,
    x_api_key: str | None,
    x_user_id: str | None = None,
    x_user_role: str | None = None,
) -> AuthContext:
    """
    Универсальная проверка авторизации, возвращает принципала.
    """
    settings = get_settings()
    mode = (settings.auth_mode or "api_key").lower().strip()

    if mode == "none":
        if _is_prod_env(settings.app_env):
            raise UnauthorizedError("AUTH_MODE=none запрещён в APP_ENV=prod")
        if not x_user_id:
            raise UnauthorizedError("В AUTH_MODE=none нужен X-User-Id")
        return AuthContext(user_id=x_user_id, role=_parse_role(x_user_role), auth_type="none")

    if mode == "api_key":
        keys = _parse_api_keys(settings.api_keys)
        entry = keys.get(x_api_key or "")
        if entry is None:
            raise UnauthorizedError("Неверный API ключ")
        user_id, role = entry
        return AuthContext(user_id=user_id, role=_parse_role(role), auth_type="api_key")

    if mode != "jwt":
        raise UnauthorizedError("Неизвестный режим авторизации")

    token = _extract_bearer(authorization)
    if not token:
        raise UnauthorizedError("Требуется Bearer JWT")
    claims = _verify_jwt(token)
    sub = str(claims.get("sub") or "").strip()
    if not sub:
        raise UnauthorizedError("JWT без sub")
    role = _parse_role(claims.get(settings.jwt_role_claim or "role"))
    return AuthContext(user_id=sub, role=role, auth_type="jwt", claims=claims)


def require_role(ctx: AuthContext, *roles: Role) -> None:
    if ctx.role not in roles:
        raise ForbiddenError(
            "Недостаточно прав",
            {"role": ctx.role.value, "allowed": ",".join(r.value for r in roles)},
        )
