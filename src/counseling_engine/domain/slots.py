"""
Арифметика слотов (без I/O).

Слот это фиксированный по ширине интервал, начинающийся с шагом interval
от начала рабочего дня. Слоты не пересекаются, поэтому занятость
проверяется точным совпадением "HH:MM".
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta

from counseling_engine.common.time import format_hhmm, parse_hhmm


def generate_slots(
    start: str,
    end: str,
    *,
    interval_min: int,
    booked: Iterable[str] = (),
) -> list[str]:
    """
    Кандидаты от start (включительно) до end (исключительно) с шагом interval,
    минус уже занятые. Порядок хронологический.
    """
    if interval_min <= 0:
        raise ValueError("interval_min must be positive")
    start_t = parse_hhmm(start)
    end_t = parse_hhmm(end)
    taken = {b.strip() for b in booked if b}

    # Дата-якорь нужна только для арифметики со временем
    anchor = date(1970, 1, 1)
    cur = datetime.combine(anchor, start_t)
    stop = datetime.combine(anchor, end_t)
    step = timedelta(minutes=interval_min)

    out: list[str] = []
    while cur < stop:
        hhmm = format_hhmm(cur.time())
        if hhmm not in taken:
            out.append(hhmm)
        cur += step
    return out


def within_working_hours(value: str, start: str, end: str) -> bool:
    """
    value ∈ [start, end).
    """
    t = parse_hhmm(value)
    return parse_hhmm(start) <= t < parse_hhmm(end)


def is_unavailable(day: date, unavailable: Iterable[date | str]) -> bool:
    for item in unavailable:
        if isinstance(item, str):
            try:
                item = date.fromisoformat(item[:10])
            except ValueError:
                continue
        elif isinstance(item, datetime):
            item = item.date()
        if item == day:
            return True
    return False


def consecutive_run(grid: list[str], booked: Iterable[str], candidate: str) -> int:
    """
    Длина серии подряд идущих занятых слотов сетки, если занять candidate.
    Кандидат вне сетки даёт 1.
    """
    if candidate not in grid:
        return 1
    taken = {b.strip() for b in booked if b}
    idx = grid.index(candidate)
    run = 1
    i = idx - 1
    while i >= 0 and grid[i] in taken:
        run += 1
        i -= 1
    i = idx + 1
    while i < len(grid) and grid[i] in taken:
        run += 1
        i += 1
    return run
