import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from clinicline.states import Objective, RecoveryLevel, State

logger = logging.getLogger(__name__)


@dataclass
class Slot:
    """A bookable time offered to the caller.

    ``slot_id`` is stable across the offer and the commit: the slot read aloud
    as "option two" is the one revalidated and booked.
    """

    slot_id: str
    start: str
    practitioner_id: str = ""
    appointment_type_id: str = ""
    duration_minutes: int = 30
    speakable: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        return cls(**data)


@dataclass
class Appointment:
    appointment_id: str
    starts_at: str
    practitioner_id: str = ""
    appointment_type_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Appointment":
        return cls(**data)


@dataclass
class Identity:
    verified: bool = False
    matched_name: str = ""
    matched_id: str = ""
    upcoming_appointment: Optional[Appointment] = None
    # patients sharing the caller's number, when the phone lookup found more than one
    phone_candidates: list = field(default_factory=list)
    scrubbed: bool = False
    awaiting_manual_name: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "Identity":
        data = dict(data)
        appt = data.get("upcoming_appointment")
        if appt:
            data["upcoming_appointment"] = Appointment.from_dict(appt)
        return cls(**data)


@dataclass
class CallSession:
    call_sid: str
    phone_number: str = ""
    state: State = State.INITIAL

    # Objective lock and recovery
    locked_objective: Optional[Objective] = None
    recovery_level: RecoveryLevel = RecoveryLevel.DIRECT_MATCH
    turns_in_state: int = 0

    # Identity
    identity: Identity = field(default_factory=Identity)

    # Caller-supplied fields (name, time_preference, provided_search_name, ...)
    collected: dict = field(default_factory=dict)

    # Offer
    candidate_slots: list = field(default_factory=list)
    slot_choice_retries: int = 0
    stale_restarts: int = 0
    intent_retries: int = 0
    intent_confidence: float = 0.0

    # Completion and side-effect flags
    appointment_created: bool = False
    reschedule_completed: bool = False
    cancel_completed: bool = False
    confirmation_sent: bool = False
    handoff_sms_sent: bool = False
    # operator alert reasons already delivered; one alert per reason
    alerts_sent: list = field(default_factory=list)
    booked_appointment_id: str = ""
    booked_slot: Optional[Slot] = None

    # Diagnostics
    last_utterance: str = ""
    last_state_change_at: float = 0.0
    start_time: float = 0.0
    turn_count: int = 0
    transcript_log: list = field(default_factory=list)

    # Webhook redelivery detection
    last_turn_key: str = ""
    last_response: dict = field(default_factory=dict)

    @property
    def objective_complete(self) -> bool:
        if self.locked_objective == Objective.BOOK:
            return self.appointment_created
        if self.locked_objective == Objective.RESCHEDULE:
            return self.reschedule_completed
        if self.locked_objective == Objective.CANCEL:
            return self.cancel_completed
        return False

    def to_dict(self) -> dict:
        """Convert to a JSON-safe dict for the session store."""
        result = asdict(self)
        result["state"] = self.state.value
        result["locked_objective"] = self.locked_objective.value if self.locked_objective else None
        result["recovery_level"] = int(self.recovery_level)
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "CallSession":
        data = dict(data)
        data["state"] = State(data.get("state", State.INITIAL.value))
        objective = data.get("locked_objective")
        data["locked_objective"] = Objective(objective) if objective else None
        data["recovery_level"] = RecoveryLevel(data.get("recovery_level", 1))
        data["identity"] = Identity.from_dict(data.get("identity") or {})
        data["candidate_slots"] = [Slot.from_dict(s) for s in data.get("candidate_slots") or []]
        booked = data.get("booked_slot")
        data["booked_slot"] = Slot.from_dict(booked) if booked else None
        return cls(**data)


def transition(session: CallSession, new_state: State, reason: str = ""):
    """Move to a new state and reset the stuck counter."""
    if session.state != new_state:
        logger.info("[%s] -> %s %s", session.state.value, new_state.value, reason)
    session.state = new_state
    session.turns_in_state = 0
    session.last_state_change_at = time.time()
