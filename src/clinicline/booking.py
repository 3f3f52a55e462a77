"""Slot offers and booking commits.

The coordinator owns the two scheduling round-trips a booking needs:

``offer``   resolve the caller's time preference to a window, fetch free
            slots for the right appointment type, keep the two earliest.
``commit``  re-query availability for exactly the chosen slot and, if it is
            still free, book it in the same call with nothing in between.

Neither method raises; scheduling failures come back as result dicts.
"""

import logging
from dataclasses import asdict
from datetime import timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from clinicline.scheduling import SchedulingError
from clinicline.session import CallSession, Slot
from clinicline.states import Objective
from clinicline.time_window import (
    DEFAULT_TZ,
    TimeWindow,
    now_local,
    parse_iso,
    resolve_time_window,
    speakable_time,
)
from clinicline.validation import SLOT_OPTION, SlotChoice

logger = logging.getLogger(__name__)

MAX_OFFERED = 2
UNKNOWN_CALLER_NAME = "Unknown Caller"

OFFERED = "offered"
NO_SLOTS = "no_slots"
BOOKED = "booked"
STALE = "stale"
FAILED = "failed"


def select_slots(available: list[Slot], window: TimeWindow, limit: int = MAX_OFFERED) -> list[Slot]:
    """Earliest ``limit`` distinct slots inside the window, in time order."""
    seen = set()
    chosen = []
    for slot in sorted(available, key=lambda s: parse_iso(s.start)):
        if slot.slot_id in seen or not window.contains(parse_iso(slot.start)):
            continue
        seen.add(slot.slot_id)
        chosen.append(slot)
        if len(chosen) == limit:
            break
    return chosen


def pick_offered(session: CallSession, choice: SlotChoice) -> Optional[Slot]:
    if choice.kind != SLOT_OPTION or choice.index is None:
        return None
    if 0 <= choice.index < len(session.candidate_slots):
        return session.candidate_slots[choice.index]
    return None


class SlotCoordinator:
    def __init__(
        self,
        scheduler,
        *,
        standard_type_id: str,
        new_patient_type_id: str = "",
        tz: str = DEFAULT_TZ,
        clock: Callable = None,
    ):
        self.scheduler = scheduler
        self.standard_type_id = standard_type_id
        self.new_patient_type_id = new_patient_type_id or standard_type_id
        self.tz = tz
        self._clock = clock or (lambda: now_local(self.tz))

    def appointment_type_for(self, session: CallSession) -> str:
        """Returning, verified callers get the standard type; everyone else is treated as new."""
        returning = session.identity.verified and session.collected.get("is_new_patient") is not True
        return self.standard_type_id if returning else self.new_patient_type_id

    async def offer(self, session: CallSession) -> dict:
        preference = session.collected.get("time_preference", "")
        window = resolve_time_window(preference, self._clock(), self.tz)
        type_id = self.appointment_type_for(session)
        logger.info("[%s] offering slots %s (%s)", session.state.value, window.description, preference or "any")

        try:
            available = await self.scheduler.get_availability(window, type_id)
        except SchedulingError as e:
            return {"status": FAILED, "error": str(e), "window": window.description}

        slots = select_slots(available, window)
        for slot in slots:
            slot.speakable = speakable_time(slot.start, self.tz)
        return {
            "status": OFFERED if slots else NO_SLOTS,
            "slots": [asdict(s) for s in slots],
            "window": window.description,
        }

    async def commit(self, session: CallSession, slot_id: str) -> dict:
        if session.objective_complete and session.booked_appointment_id:
            logger.info("commit replayed for %s, already booked %s", session.call_sid, session.booked_appointment_id)
            return {"status": BOOKED, "appointment_id": session.booked_appointment_id, "replayed": True}

        slot = next((s for s in session.candidate_slots if s.slot_id == slot_id), None)
        if slot is None:
            logger.warning("commit for a slot that was never offered: %s", slot_id)
            return {"status": STALE}

        rescheduling = (
            session.locked_objective == Objective.RESCHEDULE
            and session.identity.upcoming_appointment is not None
        )
        try:
            patient_id = "" if rescheduling else await self._ensure_patient(session)
        except SchedulingError as e:
            return {"status": FAILED, "error": str(e)}

        # Cliniko reports UTC; the revalidation query is by clinic-local date
        start = parse_iso(slot.start).astimezone(ZoneInfo(self.tz))
        exact = TimeWindow(start, start + timedelta(minutes=1), "revalidation")
        try:
            fresh = await self.scheduler.get_availability(exact, slot.appointment_type_id)
            if not any(f.slot_id == slot.slot_id for f in fresh):
                logger.info("slot %s no longer free", slot.slot_id)
                return {"status": STALE}
            if rescheduling:
                appt = await self.scheduler.reschedule_appointment(
                    session.identity.upcoming_appointment.appointment_id, slot
                )
            else:
                appt = await self.scheduler.create_appointment(patient_id, slot, notes="Booked by phone")
        except SchedulingError as e:
            return {"status": FAILED, "error": str(e)}

        return {"status": BOOKED, "appointment_id": appt["id"], "slot": asdict(slot)}

    async def _ensure_patient(self, session: CallSession) -> str:
        if session.identity.matched_id:
            return session.identity.matched_id
        if session.collected.get("created_patient_id"):
            return session.collected["created_patient_id"]
        name = (
            session.collected.get("name")
            or session.collected.get("provided_search_name")
            or UNKNOWN_CALLER_NAME
        )
        patient_id = await self.scheduler.create_patient(name, session.phone_number)
        session.collected["created_patient_id"] = patient_id
        logger.info("Created patient %s for %s", patient_id, session.call_sid)
        return patient_id
