"""
Доменные перечисления (enum).

Используются во всей системе:
- статус встречи
- формат встречи
- роли участников
"""

from __future__ import annotations

import enum


class MeetingStatus(str, enum.Enum):
    """
    Статус встречи.

    client_only / counselor_only / incomplete это внутренние уточнения
    "закончилась без полного завершения", их выставляет только reconciler.
    """

    request_pending = "request_pending"
    counselor_assigned = "counselor_assigned"
    time_selected = "time_selected"
    confirmed = "confirmed"
    cancelled = "cancelled"
    completed = "completed"
    abandoned = "abandoned"
    client_only = "client_only"
    counselor_only = "counselor_only"
    incomplete = "incomplete"


class MeetingType(str, enum.Enum):
    virtual = "virtual"
    physical = "physical"


class Role(str, enum.Enum):
    client = "client"
    counselor = "counselor"
    admin = "admin"


# Статусы, которые удерживают слот (counselor_id, date, time)
SLOT_HOLDING_STATUSES: frozenset[MeetingStatus] = frozenset(
    {MeetingStatus.time_selected, MeetingStatus.confirmed}
)

# Статусы, на которые действует auto_expire_at
EXPIRABLE_STATUSES: frozenset[MeetingStatus] = frozenset(
    {
        MeetingStatus.request_pending,
        MeetingStatus.counselor_assigned,
        MeetingStatus.time_selected,
    }
)

TERMINAL_STATUSES: frozenset[MeetingStatus] = frozenset(
    {
        MeetingStatus.cancelled,
        MeetingStatus.completed,
        MeetingStatus.abandoned,
        MeetingStatus.client_only,
        MeetingStatus.counselor_only,
        MeetingStatus.incomplete,
    }
)
