"""
Машина состояний встречи.

Назначение:
- Централизованный граф разрешённых переходов
- Вычисление итогового статуса по флагам присутствия
- Никакого I/O: сервисный слой применяет переходы условным UPDATE
"""

from __future__ import annotations

from dataclasses import dataclass

from .enums import MeetingStatus


# =============================================================================
# ГРАФ ПЕРЕХОДОВ
# =============================================================================
_TRANSITIONS: dict[MeetingStatus, frozenset[MeetingStatus]] = {
    MeetingStatus.request_pending: frozenset(
        {MeetingStatus.counselor_assigned, MeetingStatus.cancelled}
    ),
    MeetingStatus.counselor_assigned: frozenset(
        {MeetingStatus.time_selected, MeetingStatus.cancelled}
    ),
    MeetingStatus.time_selected: frozenset({MeetingStatus.confirmed, MeetingStatus.cancelled}),
    MeetingStatus.confirmed: frozenset(
        {
            MeetingStatus.completed,
            MeetingStatus.abandoned,
            MeetingStatus.client_only,
            MeetingStatus.counselor_only,
            MeetingStatus.incomplete,
        }
    ),
}


def allowed_targets(current: MeetingStatus) -> frozenset[MeetingStatus]:
    return _TRANSITIONS.get(current, frozenset())


def sources_for(target: MeetingStatus) -> frozenset[MeetingStatus]:
    """
    Все статусы, из которых target достижим одним шагом.
    """
    return frozenset(src for src, targets in _TRANSITIONS.items() if target in targets)


def is_terminal(status: MeetingStatus) -> bool:
    return not allowed_targets(status)


# =============================================================================
# РЕЗУЛЬТАТ ПЕРЕХОДА
# =============================================================================
@dataclass
class TransitionResult:
    ok: bool
    status: MeetingStatus
    reason: str | None = None


def transition(current: MeetingStatus, target: MeetingStatus) -> TransitionResult:
    """
    Проверка ребра графа:
    - ребро есть  → ok, status=target
    - ребра нет   → not ok, status остаётся current
    """
    if target in allowed_targets(current):
        return TransitionResult(ok=True, status=target)
    reason = "terminal_state" if is_terminal(current) else "edge_not_allowed"
    return TransitionResult(ok=False, status=current, reason=reason)


# =============================================================================
# ИТОГИ ПО ПРИСУТСТВИЮ
# =============================================================================
def grace_outcome(*, client_joined: bool, counselor_joined: bool) -> MeetingStatus:
    """
    Итог по истечении grace-окна:
    - оба зашли       → completed
    - только клиент   → client_only
    - только консультант → counselor_only
    - никто           → incomplete
    """
    if client_joined and counselor_joined:
        return MeetingStatus.completed
    if client_joined:
        return MeetingStatus.client_only
    if counselor_joined:
        return MeetingStatus.counselor_only
    return MeetingStatus.incomplete


def overdue_outcome(*, client_joined: bool, counselor_joined: bool) -> MeetingStatus:
    """
    Просроченная встреча без grace: completed только если зашли оба.
    """
    if client_joined and counselor_joined:
        return MeetingStatus.completed
    return MeetingStatus.abandoned
