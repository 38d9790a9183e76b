"""
Service layer для провайдера видеокомнат.

Содержит:
- выбор провайдера (daily/mock)
- retry/backoff с ограниченным числом попыток
- circuit breaker (in-memory + Redis), общий для всех реплик
- best-effort удаление комнаты
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from counseling_engine.common.config import get_settings
from counseling_engine.common.errors import ErrCode, ProviderError
from counseling_engine.common.logging import get_project_logger
from counseling_engine.common.metrics import record_video_call
from counseling_engine.connectors.base import (
    RoomWindow,
    VideoRoom,
    VideoRoomProvider,
    room_name_for,
)
from counseling_engine.connectors.daily.adapter import DailyVideoProvider
from counseling_engine.connectors.daily.mock import MockVideoProvider
from counseling_engine.realtime.redis import redis_client

log = get_project_logger()

T = TypeVar("T")

_CIRCUIT_BREAKER_KEY = "video:daily:circuit_breaker"
_CB_TTL_SEC = 86_400


@dataclass
class VideoCircuitBreakerState:
    state: str  # closed|open|half_open
    consecutive_failures: int
    opened_at: str | None
    last_error: str | None
    updated_at: str


_CIRCUIT_BREAKER: VideoCircuitBreakerState | None = None
_MOCK_PROVIDER: MockVideoProvider | None = None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _resolve_provider() -> tuple[str, VideoRoomProvider]:
    global _MOCK_PROVIDER

    s = get_settings()
    provider = (s.video_provider or "mock").strip().lower()
    if provider == "daily":
        return provider, DailyVideoProvider()
    if provider == "mock":
        if _MOCK_PROVIDER is None:
            _MOCK_PROVIDER = MockVideoProvider()
        return provider, _MOCK_PROVIDER
    raise ProviderError(
        ErrCode.VIDEO_PROVIDER_ERROR,
        f"Неизвестный provider: {provider}",
        details={"allowed": "daily,mock"},
    )


def _retry_config() -> tuple[int, float]:
    s = get_settings()
    attempts = max(1, int(s.daily_retries) + 1)
    backoff_sec = max(0, int(s.daily_retry_backoff_ms)) / 1000.0
    return attempts, backoff_sec


def room_window(scheduled_at: datetime, duration_min: int) -> RoomWindow:
    s = get_settings()
    return RoomWindow(
        scheduled_at=scheduled_at,
        duration_min=int(duration_min),
        join_early_min=int(s.join_early_min),
        expiry_after_end=timedelta(hours=max(1, int(s.daily_room_expiry_hours))),
    )


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================
def _parse_dt(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return datetime.now(UTC)


def _cb_failure_threshold() -> int:
    return max(1, int(get_settings().daily_cb_failure_threshold))


def _cb_open_sec() -> int:
    return max(5, int(get_settings().daily_cb_open_sec))


def _default_cb_state() -> VideoCircuitBreakerState:
    return VideoCircuitBreakerState(
        state="closed",
        consecutive_failures=0,
        opened_at=None,
        last_error=None,
        updated_at=_now_iso(),
    )


def _save_cb_state_redis(state: VideoCircuitBreakerState) -> None:
    payload = json.dumps(asdict(state), ensure_ascii=False)
    redis_client().set(_CIRCUIT_BREAKER_KEY, payload, ex=_CB_TTL_SEC)


def _load_cb_state_redis() -> VideoCircuitBreakerState | None:
    raw = redis_client().get(_CIRCUIT_BREAKER_KEY)
    if not raw:
        return None
    data = json.loads(raw)
    if not isinstance(data, dict):
        return None
    try:
        return VideoCircuitBreakerState(
            state=str(data["state"]),
            consecutive_failures=int(data["consecutive_failures"]),
            opened_at=str(data["opened_at"]) if data.get("opened_at") else None,
            last_error=str(data["last_error"]) if data.get("last_error") else None,
            updated_at=str(data["updated_at"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _save_cb_state(state: VideoCircuitBreakerState) -> VideoCircuitBreakerState:
    global _CIRCUIT_BREAKER

    _CIRCUIT_BREAKER = state
    try:
        _save_cb_state_redis(state)
    except Exception as e:
        log.warning(
            "video_cb_redis_write_failed",
            extra={"payload": {"error": str(e)[:200]}},
        )
    return state


def get_video_circuit_breaker_state() -> VideoCircuitBreakerState:
    global _CIRCUIT_BREAKER

    try:
        state = _load_cb_state_redis()
        if state:
            _CIRCUIT_BREAKER = state
            return state
    except Exception as e:
        log.warning(
            "video_cb_redis_read_failed",
            extra={"payload": {"error": str(e)[:200]}},
        )
    if _CIRCUIT_BREAKER:
        return _CIRCUIT_BREAKER
    return _default_cb_state()


def reset_video_circuit_breaker(*, reason: str = "manual_reset") -> VideoCircuitBreakerState:
    saved = _save_cb_state(_default_cb_state())
    log.info("video_cb_reset", extra={"payload": {"reason": reason, "state": saved.state}})
    return saved


def _before_provider_call(operation: str) -> None:
    state = get_video_circuit_breaker_state()
    if state.state != "open":
        return

    opened_at = _parse_dt(state.opened_at or _now_iso())
    age_sec = max(0, int((datetime.now(UTC) - opened_at).total_seconds()))
    cooldown = _cb_open_sec()
    if age_sec < cooldown:
        record_video_call(operation, "cb_open")
        raise ProviderError(
            ErrCode.VIDEO_PROVIDER_ERROR,
            "Video provider circuit breaker is open",
            details={
                "operation": operation,
                "retry_after_sec": max(0, cooldown - age_sec),
                "consecutive_failures": state.consecutive_failures,
            },
        )

    _save_cb_state(
        VideoCircuitBreakerState(
            state="half_open",
            consecutive_failures=state.consecutive_failures,
            opened_at=state.opened_at,
            last_error=state.last_error,
            updated_at=_now_iso(),
        )
    )
    log.info("video_cb_half_open", extra={"payload": {"operation": operation}})


def _on_provider_success() -> None:
    state = get_video_circuit_breaker_state()
    if state.state == "closed" and state.consecutive_failures == 0:
        return
    _save_cb_state(_default_cb_state())
    log.info("video_cb_closed", extra={"payload": {"reason": "success"}})


def _on_provider_failure(*, operation: str, error: str | None) -> None:
    prev = get_video_circuit_breaker_state()
    failures = max(1, prev.consecutive_failures + 1)
    threshold = _cb_failure_threshold()

    should_open = failures >= threshold or prev.state == "half_open"
    next_state = VideoCircuitBreakerState(
        state="open" if should_open else "closed",
        consecutive_failures=failures,
        opened_at=_now_iso() if should_open else None,
        last_error=error,
        updated_at=_now_iso(),
    )
    _save_cb_state(next_state)
    log.warning(
        "video_cb_failure",
        extra={
            "payload": {
                "operation": operation,
                "failures": failures,
                "threshold": threshold,
                "state": next_state.state,
            }
        },
    )


# =============================================================================
# ВЫЗОВЫ С RETRY
# =============================================================================
def _call_with_retry(operation: str, meeting_ref: str, fn) -> T:
    _before_provider_call(operation)
    attempts, backoff_sec = _retry_config()
    last_error: str | None = None

    for attempt in range(1, attempts + 1):
        try:
            result = fn()
            record_video_call(operation, "ok")
            _on_provider_success()
            return result
        except Exception as e:
            last_error = str(e)[:300]
            record_video_call(operation, "retry")
            log.warning(
                "video_call_retry",
                extra={
                    "payload": {
                        "operation": operation,
                        "ref": meeting_ref,
                        "attempt": attempt,
                        "error": last_error,
                    }
                },
            )
            if attempt < attempts and backoff_sec > 0:
                time.sleep(backoff_sec * attempt)

    record_video_call(operation, "failed")
    _on_provider_failure(operation=operation, error=last_error)
    raise ProviderError(
        ErrCode.VIDEO_PROVIDER_ERROR,
        "Видеопровайдер недоступен после retries",
        details={"operation": operation, "ref": meeting_ref, "attempts": attempts},
    )


def create_room_for_meeting(
    meeting_id: str, *, scheduled_at: datetime, duration_min: int
) -> VideoRoom:
    """
    Создать (или переиспользовать) комнату meeting-<id>.
    Бросает ProviderError, вызывающий не должен коммитить переход.
    """
    _, provider = _resolve_provider()
    name = room_name_for(meeting_id)
    window = room_window(scheduled_at, duration_min)
    room = _call_with_retry("create_room", meeting_id, lambda: provider.create_room(name, window))
    log.info(
        "video_room_ready",
        extra={"payload": {"meeting_id": meeting_id, "room": room.name}},
    )
    return room


def issue_token(
    room_name: str, *, is_client: bool, scheduled_at: datetime, duration_min: int
) -> str:
    _, provider = _resolve_provider()
    window = room_window(scheduled_at, duration_min)
    return _call_with_retry(
        "create_token",
        room_name,
        lambda: provider.create_token(room_name, is_client=is_client, window=window),
    )


def delete_room(room_name: str | None) -> bool:
    """
    Best-effort: ошибка логируется, не пробрасывается.
    """
    if not room_name:
        return False
    try:
        _, provider = _resolve_provider()
        provider.delete_room(room_name)
        record_video_call("delete_room", "ok")
        return True
    except Exception as e:
        record_video_call("delete_room", "failed")
        log.warning(
            "video_room_delete_failed",
            extra={"payload": {"room": room_name, "error": str(e)[:300]}},
        )
        return False
