"""Caller identity: phone/name lookup results, confirmation and scrubbing."""

import logging
from typing import Optional

from clinicline.session import Appointment, CallSession, transition
from clinicline.states import RecoveryLevel, State
from clinicline.validation import (
    first_name,
    match_any_keyword,
    name_similarity,
    names_match,
    strip_name_prefix,
    validate_name,
)

logger = logging.getLogger(__name__)

# Keys in ``collected`` that belong to a (possibly wrong) identity.
IDENTITY_KEYS = ("name", "provided_search_name")


def apply_lookup(session: CallSession, result: dict) -> bool:
    """Record a phone or name lookup result. Returns True on a usable match.

    A match is a candidate only; ``identity.verified`` stays False until the
    caller confirms it (phone match) or the name they gave found it.
    """
    identity = session.identity
    name = validate_name(result.get("name", ""))
    if not result.get("found") or not result.get("patient_id") or not name:
        if result.get("error"):
            logger.warning("[%s] lookup failed, treating as no match: %s", session.state.value, result["error"])
        return False

    identity.matched_name = name
    identity.matched_id = str(result["patient_id"])
    appt = result.get("upcoming_appointment")
    identity.upcoming_appointment = Appointment.from_dict(appt) if appt else None
    identity.scrubbed = False
    identity.awaiting_manual_name = False
    return True


def confirm_identity(session: CallSession):
    identity = session.identity
    identity.verified = True
    identity.awaiting_manual_name = False
    session.collected["name"] = identity.matched_name
    session.collected["is_new_patient"] = False


def scrub_identity(session: CallSession):
    """Atomically drop every trace of a denied identity.

    Keeps the locked objective and the time preference; the caller still
    wants the same thing, they just are not who the phone lookup said.
    """
    identity = session.identity
    identity.verified = False
    identity.matched_name = ""
    identity.matched_id = ""
    identity.upcoming_appointment = None
    identity.phone_candidates = []
    identity.scrubbed = True
    identity.awaiting_manual_name = True
    for key in IDENTITY_KEYS:
        session.collected.pop(key, None)

    transition(session, State.MANUAL_SEARCH, "identity denied")
    session.recovery_level = max(session.recovery_level, RecoveryLevel.IDENTITY_PIVOT)
    logger.info("Identity scrubbed for %s", session.call_sid)


def is_scrub_complete(session: CallSession) -> bool:
    identity = session.identity
    return (
        identity.scrubbed
        and not identity.matched_name
        and not identity.matched_id
        and identity.upcoming_appointment is None
        and not identity.phone_candidates
        and "name" not in session.collected
    )


# ── Name search and shared phone numbers ──

MAX_PHONE_CANDIDATES = 3
SOMEONE_ELSE_KEYWORDS = {
    "someone else", "somebody else", "someone new", "new patient", "different person",
    "none of them", "neither", "not me", "none of those",
}


def best_name_match(spoken: str, patients: list[dict]) -> Optional[dict]:
    """The search result that is the patient the caller named, or None.

    A search that only turns up someone with the same first name is not a
    match: binding the caller to that record would book under someone else.
    """
    matches = [p for p in patients if names_match(spoken, p.get("name", ""))]
    if not matches:
        return None
    return max(matches, key=lambda p: name_similarity(spoken, p["name"]))


def spoken_choices(candidates: list[dict]) -> str:
    """Names to read out: first names, or full names when two patients share one."""
    firsts = [first_name(c["name"]) for c in candidates]
    names = firsts if len(set(firsts)) == len(firsts) else [c["name"] for c in candidates]
    if len(names) == 1:
        return names[0]
    return f"{', '.join(names[:-1])} or {names[-1]}"


def pick_candidate(candidates: list[dict], text: str, digits: str = "") -> Optional[dict]:
    """Which patient on a shared number the caller said they are, if any."""
    if digits.isdigit() and 1 <= int(digits) <= len(candidates):
        return candidates[int(digits) - 1]

    spoken = strip_name_prefix(text)
    full = [c for c in candidates if names_match(spoken, c["name"])]
    if len(full) == 1:
        return full[0]

    lower = text.lower()
    by_first = [c for c in candidates if match_any_keyword(lower, {first_name(c["name"]).lower()})]
    if len(by_first) == 1:
        return by_first[0]
    return None


def is_someone_else(text: str, digits: str, count: int) -> bool:
    """Caller is none of the patients on the shared number."""
    if digits == str(count + 1):
        return True
    return match_any_keyword(text, SOMEONE_ELSE_KEYWORDS)
