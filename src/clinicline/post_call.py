import json
import logging
import time
from datetime import datetime, timezone

from clinicline.dashboard_sync import DashboardClient
from clinicline.session import CallSession
from clinicline.states import State
from clinicline.transcript import spoken_turns, to_plain_text, to_timestamped_dump

logger = logging.getLogger(__name__)

LOG_LINE_MAX_BYTES = 3500


def derive_outcome(session: CallSession) -> str:
    """Map the final session to a call outcome for the dashboard."""
    if session.appointment_created:
        return "booked"
    if session.reschedule_completed:
        return "rescheduled"
    if session.cancel_completed:
        return session.collected.get("outcome", "cancelled")
    if session.handoff_sms_sent or session.recovery_level == 4:
        return "handed_off"
    if session.collected.get("outcome"):
        return session.collected["outcome"]
    if session.state == State.GOODBYE and session.collected.get("intent") == "escalate":
        return "callback_requested"
    return "caller_hangup"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def build_call_payload(session: CallSession, end_time: float) -> dict:
    start = session.start_time if session.start_time > 0 else end_time
    payload = {
        "call_id": session.call_sid,
        "phone_number": session.phone_number or "unknown",
        "customer_name": session.identity.matched_name or session.collected.get("provided_search_name", ""),
        "identity_verified": session.identity.verified,
        "started_at": _iso(start),
        "ended_at": _iso(end_time),
        "duration_seconds": int(end_time - start),
        "direction": "inbound",
        "intent": session.collected.get("intent", ""),
        "outcome": derive_outcome(session),
        "final_state": session.state.value,
        "recovery_level": int(session.recovery_level),
        "turn_count": session.turn_count,
        "call_transcript": to_plain_text(session.transcript_log),
        "transcript_object": spoken_turns(session.transcript_log),
    }
    if session.booked_appointment_id:
        payload["appointment_id"] = session.booked_appointment_id
    if session.booked_slot:
        payload["scheduled_at"] = session.booked_slot.start
    return payload


def chunk_transcript_dump(dump: dict, max_bytes: int = LOG_LINE_MAX_BYTES) -> list[str]:
    """Split a transcript dump into ``TRANSCRIPT_DUMP|n/m|{json}`` log lines.

    The first line carries the header fields; every line stays under
    ``max_bytes`` unless a single entry is larger on its own.
    """
    header = {k: v for k, v in dump.items() if k != "entries"}
    groups: list[list[dict]] = [[]]
    size = len(json.dumps({**header, "entries": []}).encode("utf-8"))

    for entry in dump.get("entries", []):
        entry_size = len(json.dumps(entry).encode("utf-8")) + 2
        if groups[-1] and size + entry_size > max_bytes:
            groups.append([])
            size = len(json.dumps({"entries": []}).encode("utf-8"))
        groups[-1].append(entry)
        size += entry_size

    lines = []
    for i, entries in enumerate(groups):
        body = {**header, "entries": entries} if i == 0 else {"entries": entries}
        lines.append(f"TRANSCRIPT_DUMP|{i + 1}/{len(groups)}|{json.dumps(body)}")
    return lines


async def handle_call_ended(session: CallSession, dashboard: DashboardClient | None, end_time: float = 0.0):
    """Post-call work: call record sync and the structured transcript dump."""
    end_time = end_time or time.time()

    if dashboard is not None:
        result = await dashboard.send_call(build_call_payload(session, end_time))
        logger.info("Dashboard call sync for %s: %s", session.call_sid, result)
    else:
        logger.warning("Dashboard not configured, skipping call sync")

    for line in chunk_transcript_dump(to_timestamped_dump(session, end_time)):
        logger.info(line)

    logger.info(
        "Post-call complete for %s: state=%s outcome=%s",
        session.call_sid, session.state.value, derive_outcome(session),
    )
