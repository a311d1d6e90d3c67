# dose_engine.py
# Dose scheduling & status engine.
#
# Pure functions only: nothing here reads the clock, the DB or Android.
# Callers pass `now` in and persist whatever comes back.

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger("medreminder.engine")

MATCH_WINDOW = timedelta(hours=1)
MIN_DOSE_TIMES = 1
MAX_DOSE_TIMES = 5


class InvalidSchedule(ValueError):
    pass


# -------------------------
# Time-of-day & instant normalization
# -------------------------
@dataclass(frozen=True, order=True)
class TimeOfDay:
    hour: int
    minute: int

    def __post_init__(self):
        if not (0 <= int(self.hour) <= 23 and 0 <= int(self.minute) <= 59):
            raise InvalidSchedule(f"time out of range: {self.hour}:{self.minute}")

    @property
    def minute_of_day(self) -> int:
        return self.hour * 60 + self.minute

    def on(self, day: date, tzinfo=None) -> datetime:
        return datetime.combine(day, dtime(self.hour, self.minute), tzinfo=tzinfo)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    @classmethod
    def parse(cls, value: Any) -> "TimeOfDay":
        """
        Accepts "HH:MM", time, datetime (date part ignored), (h, m) pairs,
        {"hour": h, "minute": m} mappings and TimeOfDay itself.
        """
        if isinstance(value, TimeOfDay):
            return value
        if isinstance(value, (datetime, dtime)):
            return cls(value.hour, value.minute)
        if isinstance(value, str):
            parts = value.strip().split(":")
            if len(parts) not in (2, 3):
                raise InvalidSchedule(f"bad time string: {value!r}")
            try:
                return cls(int(parts[0]), int(parts[1]))
            except ValueError:
                raise InvalidSchedule(f"bad time string: {value!r}") from None
        if isinstance(value, Mapping):
            try:
                return cls(int(value["hour"]), int(value["minute"]))
            except (KeyError, TypeError, ValueError):
                raise InvalidSchedule(f"bad time mapping: {value!r}") from None
        if isinstance(value, (tuple, list)) and len(value) == 2:
            try:
                return cls(int(value[0]), int(value[1]))
            except (TypeError, ValueError):
                raise InvalidSchedule(f"bad time pair: {value!r}") from None
        instant = normalize_instant(value)
        if instant is not None and not isinstance(value, (int, float)):
            return cls(instant.hour, instant.minute)
        raise InvalidSchedule(f"unsupported time value: {value!r}")


def normalize_instant(value: Any) -> Optional[datetime]:
    # Stored logs mix native datetimes, ISO strings, epoch numbers and
    # cloud timestamp objects; everything past this point is a datetime.
    try:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime.combine(value, dtime())
        if isinstance(value, (int, float)):
            if math.isnan(value) or math.isinf(value):
                return None
            return datetime.fromtimestamp(value)
        if isinstance(value, str):
            s = value.strip()
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            return datetime.fromisoformat(s)
        for attr in ("to_datetime", "ToDatetime"):
            conv = getattr(value, attr, None)
            if callable(conv):
                out = conv()
                return out if isinstance(out, datetime) else None
    except (ValueError, TypeError, OverflowError, OSError):
        return None
    return None


def _align(instant: datetime, now: datetime) -> datetime:
    if now.tzinfo is None:
        if instant.tzinfo is not None:
            return instant.astimezone().replace(tzinfo=None)
        return instant
    if instant.tzinfo is None:
        return instant.replace(tzinfo=now.tzinfo)
    return instant.astimezone(now.tzinfo)


def normalize_taken_events(events: Optional[Iterable[Any]], now: Optional[datetime] = None) -> List[datetime]:
    out: List[datetime] = []
    for raw in events or ():
        ts = normalize_instant(raw)
        if ts is None:
            logger.warning(f"dropping unparseable taken event: {raw!r}")
            continue
        out.append(_align(ts, now) if now is not None else ts)
    return out


def sort_schedule(times: Optional[Iterable[Any]]) -> List[TimeOfDay]:
    parsed = set()
    for raw in times or ():
        try:
            parsed.add(TimeOfDay.parse(raw))
        except InvalidSchedule:
            logger.warning(f"dropping invalid dose time: {raw!r}")
    return sorted(parsed, key=lambda t: t.minute_of_day)


def validate_schedule(times: Optional[Sequence[Any]], duration_days: Any) -> List[TimeOfDay]:
    """Write-side check for a new or edited medicine. Returns the sorted schedule."""
    raw = list(times or [])
    schedule = [TimeOfDay.parse(t) for t in raw]
    if len(set(schedule)) != len(schedule):
        raise InvalidSchedule("dose times must be distinct")
    if not (MIN_DOSE_TIMES <= len(schedule) <= MAX_DOSE_TIMES):
        raise InvalidSchedule(f"need {MIN_DOSE_TIMES}-{MAX_DOSE_TIMES} dose times, got {len(schedule)}")
    if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days < 1:
        raise InvalidSchedule(f"duration_days must be an integer >= 1, got {duration_days!r}")
    return sorted(schedule, key=lambda t: t.minute_of_day)


# -------------------------
# Trigger planner
# -------------------------
@dataclass(frozen=True)
class Trigger:
    when: datetime
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    day_offset: int = 0
    time_of_day: Optional[TimeOfDay] = None

    def payload(self) -> Dict[str, Any]:
        return {"title": self.title, "body": self.body, "data": dict(self.data)}


@dataclass
class PlanResult:
    scheduled: List[Tuple[Trigger, Any]] = field(default_factory=list)
    failures: int = 0
    failed: List[Trigger] = field(default_factory=list)

    @property
    def handles(self) -> List[Any]:
        return [h for _, h in self.scheduled]


@dataclass
class CancelResult:
    cancelled: int = 0
    ignored: int = 0


def _first_name(user_name: Optional[str]) -> str:
    parts = (user_name or "").split()
    return parts[0] if parts else ""


def medicine_title(name: str, user_name: Optional[str] = None) -> str:
    first = _first_name(user_name)
    return f"{first}, time for {name}" if first else f"Time for {name}"


def plan_triggers(dose_times: Iterable[Any], duration_days: int, now: datetime, name: str,
                  dosage: str = "", user_name: Optional[str] = None,
                  medicine_id: Any = None) -> List[Trigger]:
    schedule = sort_schedule(dose_times)
    title = medicine_title(name, user_name)
    body = f"{dosage} - Tap to mark taken." if dosage else "Tap to mark taken."
    today = now.date()

    out: List[Trigger] = []
    for d in range(max(0, int(duration_days))):
        day = today + timedelta(days=d)
        for t in schedule:
            when = t.on(day, tzinfo=now.tzinfo)
            if when < now:
                continue
            out.append(Trigger(
                when=when,
                title=title,
                body=body,
                data={
                    "type": "medicine",
                    "medicine_id": medicine_id,
                    "medicine_name": name,
                    "dose_time": str(t),
                    "day_offset": d,
                },
                day_offset=d,
                time_of_day=t,
            ))
    return out


def schedule_medicine(scheduler, dose_times: Iterable[Any], duration_days: int, now: datetime,
                      name: str, dosage: str = "", user_name: Optional[str] = None,
                      medicine_id: Any = None) -> PlanResult:
    """
    Plans every future slot and asks `scheduler.create(when, payload)` for each.
    One failing slot never aborts the rest; failures are counted.
    """
    result = PlanResult()
    for trig in plan_triggers(dose_times, duration_days, now, name, dosage, user_name, medicine_id):
        try:
            handle = scheduler.create(trig.when, trig.payload())
        except Exception:
            logger.exception(f"trigger create failed: {name} @ {trig.when}")
            result.failures += 1
            result.failed.append(trig)
            continue
        result.scheduled.append((trig, handle))
    logger.info(f"scheduled {len(result.scheduled)} reminders for {name} ({result.failures} failed)")
    return result


async def schedule_medicine_async(scheduler, dose_times: Iterable[Any], duration_days: int, now: datetime,
                                  name: str, dosage: str = "", user_name: Optional[str] = None,
                                  medicine_id: Any = None) -> PlanResult:
    triggers = plan_triggers(dose_times, duration_days, now, name, dosage, user_name, medicine_id)
    outcomes = await asyncio.gather(
        *(scheduler.create(t.when, t.payload()) for t in triggers),
        return_exceptions=True,
    )
    result = PlanResult()
    for trig, outcome in zip(triggers, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(f"trigger create failed: {name} @ {trig.when}: {outcome!r}")
            result.failures += 1
            result.failed.append(trig)
        else:
            result.scheduled.append((trig, outcome))
    logger.info(f"scheduled {len(result.scheduled)} reminders for {name} ({result.failures} failed)")
    return result


def cancel_handles(scheduler, handles: Optional[Iterable[Any]]) -> CancelResult:
    result = CancelResult()
    for h in handles or ():
        try:
            ok = scheduler.cancel(h)
        except Exception:
            logger.warning(f"cancel failed for handle {h!r}; ignoring", exc_info=True)
            result.ignored += 1
            continue
        if ok is False:
            result.ignored += 1
        else:
            result.cancelled += 1
    return result


def plan_appointment_trigger(when: Any, with_whom: str, now: datetime, location: str = "",
                             advance_minutes: int = 60, user_name: Optional[str] = None,
                             appointment_id: Any = None) -> Optional[Trigger]:
    at = normalize_instant(when)
    if at is None or not with_whom:
        logger.warning("invalid appointment data for reminder")
        return None
    at = _align(at, now)
    fire = at - timedelta(minutes=advance_minutes)
    if fire <= now:
        logger.warning(f"appointment reminder for {with_whom} is in the past; skipping")
        return None
    first = _first_name(user_name)
    title = f"{first}, appointment with {with_whom}" if first else f"Appointment with {with_whom}"
    body = f"{at.strftime('%Y-%m-%d %H:%M')} - {location or 'Location not specified'}. Tap for details."
    return Trigger(
        when=fire,
        title=title,
        body=body,
        data={
            "type": "appointment",
            "appointment_id": appointment_id,
            "appointment_time": at.isoformat(),
            "appointment_with": with_whom,
            "appointment_location": location,
        },
    )


# -------------------------
# Dose status evaluator
# -------------------------
class DoseStatus(str, Enum):
    DUE = "due"
    AVAILABLE = "available"
    NEXT = "next"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class DoseState:
    status: DoseStatus
    dose_time: Optional[datetime] = None
    time_until_dose: Optional[int] = None
    reason: Optional[str] = None

    @property
    def is_actionable(self) -> bool:
        return self.status in (DoseStatus.DUE, DoseStatus.AVAILABLE)


def _minutes_until(target: datetime, now: datetime) -> int:
    return math.ceil((target - now).total_seconds() / 60.0)


def _claim_taken(slots: List[datetime], taken: List[datetime]) -> List[bool]:
    # Each taken event satisfies at most one slot; earlier slots claim first.
    used = [False] * len(taken)
    claimed = []
    for dose in slots:
        lo, hi = dose - MATCH_WINDOW, dose + MATCH_WINDOW
        hit = False
        for i, ts in enumerate(taken):
            if not used[i] and lo <= ts <= hi:
                used[i] = True
                hit = True
                break
        claimed.append(hit)
    return claimed


def evaluate_dose_status(dose_times: Optional[Iterable[Any]], taken_events: Optional[Iterable[Any]],
                         now: datetime) -> DoseState:
    try:
        schedule = sort_schedule(dose_times)
        if not schedule:
            return DoseState(DoseStatus.ERROR, reason="no valid dose times")

        taken = sorted(normalize_taken_events(taken_events, now))
        today = now.date()
        slots = [t.on(today, tzinfo=now.tzinfo) for t in schedule]
        claimed = _claim_taken(slots, taken)

        for dose, already_taken in zip(slots, claimed):
            # A taken slot only loses its due/available state; it can still be "next".
            if not already_taken and dose - MATCH_WINDOW <= now <= dose + MATCH_WINDOW:
                if now >= dose:
                    return DoseState(DoseStatus.DUE, dose_time=dose, time_until_dose=0)
                return DoseState(DoseStatus.AVAILABLE, dose_time=dose,
                                 time_until_dose=_minutes_until(dose, now))
            if dose > now:
                return DoseState(DoseStatus.NEXT, dose_time=dose,
                                 time_until_dose=_minutes_until(dose, now))
        return DoseState(DoseStatus.COMPLETED)
    except Exception as e:
        logger.exception("dose status evaluation failed")
        return DoseState(DoseStatus.ERROR, reason=str(e))


# -------------------------
# Course bookkeeping
# -------------------------
@dataclass(frozen=True)
class CourseProgress:
    days_remaining: int
    finished: bool
    label: str


def course_progress(created_at: Any, duration_days: int, now: datetime) -> Optional[CourseProgress]:
    start = normalize_instant(created_at)
    if start is None or not duration_days:
        return None
    start = _align(start, now)
    end_day = start.date() + timedelta(days=int(duration_days))
    diff = (end_day - now.date()).days
    if diff < 0:
        return CourseProgress(diff, True, "Course finished")
    if diff == 0:
        return CourseProgress(0, False, "Last day")
    return CourseProgress(diff, False, f"{diff} day{'s' if diff > 1 else ''} remaining")


def remaining_doses(quantity: Optional[int], taken_events: Optional[Sequence[Any]]) -> Optional[int]:
    if quantity is None:
        return None
    return max(0, int(quantity) - len(taken_events or ()))


@dataclass(frozen=True)
class MedicineStatus:
    medicine_id: Any
    name: str
    state: DoseState
    course: Optional[CourseProgress] = None
    doses_left: Optional[int] = None


def _field(record: Any, key: str, default=None):
    if isinstance(record, Mapping):
        return record.get(key, default)
    return getattr(record, key, default)


def evaluate_medicine(record: Any, now: datetime) -> MedicineStatus:
    """Status plus course/quantity figures for one stored medicine (mapping or record object)."""
    taken = _field(record, "taken_events") or []
    return MedicineStatus(
        medicine_id=_field(record, "id"),
        name=_field(record, "name", ""),
        state=evaluate_dose_status(_field(record, "times"), taken, now),
        course=course_progress(_field(record, "created_at"), _field(record, "duration_days"), now),
        doses_left=remaining_doses(_field(record, "quantity"), taken),
    )


def pick_dashboard_dose(records: Iterable[Any], now: datetime) -> Optional[MedicineStatus]:
    # Earliest actionable dose across all medicines wins, then the earliest upcoming one.
    best_action: Optional[MedicineStatus] = None
    best_next: Optional[MedicineStatus] = None
    for rec in records:
        ms = evaluate_medicine(rec, now)
        st = ms.state
        if st.is_actionable:
            if best_action is None or st.dose_time < best_action.state.dose_time:
                best_action = ms
        elif st.status is DoseStatus.NEXT:
            if best_next is None or st.dose_time < best_next.state.dose_time:
                best_next = ms
    return best_action or best_next
