"""
Runtime readiness checks for production rollout.
"""

from __future__ import annotations

from dataclasses import dataclass

from counseling_engine.common.config import get_settings
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.time import parse_hhmm, resolve_tz

log = get_project_logger()


@dataclass
class ReadinessIssue:
    severity: str  # error|warning
    code: str
    message: str


@dataclass
class ReadinessState:
    ready: bool
    issues: list[ReadinessIssue]


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


def _booking_issues() -> list[ReadinessIssue]:
    s = get_settings()
    issues: list[ReadinessIssue] = []
    try:
        if parse_hhmm(s.booking_default_work_start) >= parse_hhmm(s.booking_default_work_end):
            raise ValueError("empty_working_day")
    except ValueError:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="booking_default_hours_invalid",
                message="BOOKING_DEFAULT_WORK_START/END должны задавать непустой рабочий день",
            )
        )
    if s.booking_slot_interval_min <= 0:
        issues.append(
            ReadinessIssue(
                severity="error",
                code="booking_slot_interval_invalid",
                message="BOOKING_SLOT_INTERVAL_MIN должен быть > 0",
            )
        )
    if str(resolve_tz(s.booking_default_timezone, fallback="UTC")) != (
        s.booking_default_timezone or "UTC"
    ):
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="booking_default_timezone_unknown",
                message="BOOKING_DEFAULT_TIMEZONE не распознан, используется UTC",
            )
        )
    return issues


def evaluate_readiness() -> ReadinessState:
    s = get_settings()
    issues: list[ReadinessIssue] = []
    is_prod = _is_prod_env(s.app_env)

    if (s.auth_mode or "").strip().lower() == "api_key" and not (s.api_keys or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error",
                code="auth_api_keys_empty",
                message="AUTH_MODE=api_key требует непустой API_KEYS",
            )
        )

    issues.extend(_booking_issues())

    provider = (s.video_provider or "").strip().lower()
    if provider == "daily" and not (s.daily_api_key or "").strip():
        issues.append(
            ReadinessIssue(
                severity="error" if is_prod else "warning",
                code="daily_api_key_empty",
                message="VIDEO_PROVIDER=daily требует DAILY_API_KEY",
            )
        )

    if (s.notify_provider or "").strip().lower() == "email" and not (s.smtp_host or "").strip():
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="smtp_host_empty",
                message="NOTIFY_PROVIDER=email без SMTP_HOST: письма не будут отправляться",
            )
        )
    if not (s.admin_email or "").strip():
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="admin_email_empty",
                message="ADMIN_EMAIL пустой, администратор не получит уведомления о запросах",
            )
        )

    if is_prod:
        auth_mode = (s.auth_mode or "").strip().lower()
        if auth_mode == "none":
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="auth_none_in_prod",
                    message="AUTH_MODE=none запрещен в prod",
                )
            )
        if auth_mode == "jwt" and not (
            (s.oidc_issuer_url or "").strip()
            or (s.oidc_jwks_url or "").strip()
            or (s.jwt_shared_secret or "").strip()
        ):
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="jwt_not_configured",
                    message="AUTH_MODE=jwt требует OIDC_ISSUER_URL, OIDC_JWKS_URL или JWT_SHARED_SECRET",
                )
            )
        if "*" in (s.cors_allowed_origins or ""):
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="cors_wildcard_in_prod",
                    message="CORS wildcard '*' запрещен в prod",
                )
            )
        if provider == "mock":
            issues.append(
                ReadinessIssue(
                    severity="warning",
                    code="mock_video_provider_in_prod",
                    message="В prod используется VIDEO_PROVIDER=mock",
                )
            )
        if provider == "daily" and (s.daily_api_base or "").strip().lower().startswith("http://"):
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code="daily_api_base_not_https",
                    message="В prod DAILY_API_BASE должен использовать https://",
                )
            )
        if (s.database_dsn or "").startswith("sqlite"):
            issues.append(
                ReadinessIssue(
                    severity="warning",
                    code="sqlite_in_prod",
                    message="В prod рекомендуется PostgreSQL",
                )
            )

    ready = all(i.severity != "error" for i in issues)
    return ReadinessState(ready=ready, issues=issues)


def enforce_startup_readiness(*, service_name: str) -> ReadinessState:
    s = get_settings()
    state = evaluate_readiness()
    errors = [i for i in state.issues if i.severity == "error"]

    if errors:
        log.error(
            "startup_readiness_failed",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "error_codes": [e.code for e in errors],
                }
            },
        )
    else:
        log.info(
            "startup_readiness_ok",
            extra={"payload": {"service": service_name, "app_env": s.app_env}},
        )

    if _is_prod_env(s.app_env) and errors:
        msg = ", ".join(e.code for e in errors)
        raise RuntimeError(f"startup readiness failed for {service_name}: {msg}")
    return state
