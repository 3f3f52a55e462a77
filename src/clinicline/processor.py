import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from clinicline import transcript
from clinicline.booking import SlotCoordinator
from clinicline.identity import IDENTITY_KEYS, MAX_PHONE_CANDIDATES, best_name_match
from clinicline.messaging import MessagingError
from clinicline.post_call import handle_call_ended
from clinicline.recovery import goodbye_allowed
from clinicline.scheduling import SchedulingError
from clinicline.session import CallSession
from clinicline.session_store import SessionStore
from clinicline.state_machine import Action, StateMachine
from clinicline.time_window import DEFAULT_TZ, now_local

logger = logging.getLogger(__name__)

MAX_TOOL_HOPS = 6


@dataclass
class TurnResponse:
    say: str
    keep_listening: bool = True
    end_call: bool = False
    state: str = ""
    seq: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TurnResponse":
        return cls(**data)


def turn_key(state_tag: str, seq: str, speech: str, digits: str) -> str:
    """Fingerprint of one webhook delivery."""
    return f"{state_tag}|{seq}|{speech.strip().lower()}|{digits}"


def is_replay(session: CallSession, key: str, state_tag: str, seq: str) -> bool:
    """Is this request a redelivery of the turn already applied?

    With a sequence tag the fingerprint is exact.  Without one, an identical
    fingerprint only counts as a replay once the session has moved on, so a
    caller genuinely repeating themselves in a stuck state is still processed.
    """
    if not session.last_response or key != session.last_turn_key:
        return False
    return bool(seq) or state_tag != session.state.value


class TurnProcessor:
    """Runs one webhook turn: load, machine, tools, guard, persist, respond.

    Each tool runs through a collaborator; typed collaborator errors are
    caught here and handed to the machine as ``{"error": ...}`` results so
    the machine never sees an exception.
    """

    def __init__(
        self,
        store: SessionStore,
        machine: StateMachine,
        *,
        scheduler,
        coordinator: SlotCoordinator,
        classifier,
        messenger,
        dashboard=None,
        booking_link: str = "",
        tz: str = DEFAULT_TZ,
        clock: Optional[Callable] = None,
    ):
        self.store = store
        self.machine = machine
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.classifier = classifier
        self.messenger = messenger
        self.dashboard = dashboard
        self.booking_link = booking_link
        self.tz = tz
        self._clock = clock or (lambda: now_local(self.tz))

    async def start_call(self, call_sid: str, phone: str) -> TurnResponse:
        session = await self.store.read(call_sid)
        if session is not None and session.last_response:
            logger.info("Repeated call start for %s, returning cached response", call_sid)
            return TurnResponse.from_dict(session.last_response)

        session = session or CallSession(call_sid=call_sid, phone_number=phone)
        session.start_time = session.start_time or time.time()
        action = self.machine.greet(session)
        transcript.record(session, "agent", action.speak)
        response = TurnResponse(say=action.speak, state=session.state.value, seq=session.turn_count)
        session.last_response = response.to_dict()
        await self.store.write(call_sid, session)
        logger.info("Call started %s from %s", call_sid, phone)
        return response

    async def handle_turn(
        self,
        call_sid: str,
        phone: str = "",
        speech: str = "",
        digits: str = "",
        state_tag: str = "",
        seq: str = "",
    ) -> TurnResponse:
        session = await self.store.read_or_create(call_sid, phone)
        session.start_time = session.start_time or time.time()
        if phone and not session.phone_number:
            session.phone_number = phone

        key = turn_key(state_tag, seq, speech, digits)
        if is_replay(session, key, state_tag, seq):
            logger.info("[%s] Redelivered webhook for %s, returning cached response", session.state.value, call_sid)
            return TurnResponse.from_dict(session.last_response)

        collected_before = dict(session.collected)
        t_start = time.time()
        logger.info("[%s] Caller: %s%s", session.state.value, speech, f" (digits {digits})" if digits else "")
        transcript.record(session, "caller", speech or digits)

        action = self.machine.process(session, speech, digits)
        lines, end_call = await self._run(session, action)

        if end_call and not goodbye_allowed(session):
            valve = self.machine.safety_valve(session, "call ending with objective open")
            more, _ = await self._run(session, valve)
            lines.extend(more)
            end_call = True

        say = " ".join(lines) or self.machine.reprompt(session)
        response = TurnResponse(
            say=say,
            keep_listening=not end_call,
            end_call=end_call,
            state=session.state.value,
            seq=session.turn_count,
        )
        transcript.record(session, "agent", say)
        session.last_turn_key = key
        session.last_response = response.to_dict()

        await self._persist(session, collected_before)
        logger.info(
            "[%s] Turn %d for %s took %.0fms",
            session.state.value, session.turn_count, call_sid, (time.time() - t_start) * 1000,
        )
        return response

    async def finish_call(self, call_sid: str, status: str = "completed"):
        """Provider reported the call over: run post-call work and drop the session."""
        session = await self.store.read(call_sid)
        if session is None:
            logger.info("Status %s for unknown call %s", status, call_sid)
            return
        session.collected.setdefault("call_status", status)
        try:
            await handle_call_ended(session, self.dashboard)
        finally:
            await self.store.delete(call_sid)

    async def _run(self, session: CallSession, action: Action) -> tuple[list[str], bool]:
        """Execute the action's tool chain. Returns (spoken lines, end call)."""
        lines = [action.speak] if action.speak else []
        end_call = action.end_call
        hops = 0
        while action.call_tool:
            hops += 1
            if hops > MAX_TOOL_HOPS:
                logger.error("[%s] tool chain too long, stopping at %s", session.state.value, action.call_tool)
                break
            result = await self._execute_tool(session, action)
            follow = self.machine.handle_tool_result(session, action.call_tool, result)
            if follow is None:
                break
            if follow.speak:
                lines.append(follow.speak)
            end_call = end_call or follow.end_call
            action = follow
        return lines, end_call

    async def _persist(self, session: CallSession, collected_before: dict):
        """Write the turn, keeping ``collected`` keys another handler changed meanwhile."""
        latest = await self.store.read(session.call_sid)
        if latest is not None:
            for k, v in latest.collected.items():
                if session.identity.scrubbed and k in IDENTITY_KEYS:
                    continue
                changed_elsewhere = v != collected_before.get(k)
                untouched_here = session.collected.get(k) == collected_before.get(k)
                if changed_elsewhere and untouched_here:
                    logger.info("Merging concurrent update of %s for %s", k, session.call_sid)
                    session.collected[k] = v
        await self.store.write(session.call_sid, session)

    async def _execute_tool(self, session: CallSession, action: Action) -> dict:
        tool = action.call_tool
        args = action.tool_args
        logger.info("[%s] Executing tool: %s", session.state.value, tool)

        try:
            if tool == "classify_intent":
                result = await self.classifier.classify_intent(args.get("text", ""))
            elif tool == "lookup_caller":
                result = await self._lookup_by_phone(session)
            elif tool == "search_patient":
                result = await self._search_by_name(args.get("name", ""))
            elif tool == "select_patient":
                result = await self._with_upcoming({"id": args["patient_id"], "name": args.get("name", "")})
            elif tool == "offer_slots":
                result = await self.coordinator.offer(session)
            elif tool == "commit_slot":
                result = await self.coordinator.commit(session, args.get("slot_id", ""))
            elif tool == "cancel_appointment":
                result = await self._cancel(session)
            elif tool == "send_confirmation":
                result = await self._send_confirmation(session, args)
            elif tool == "send_handoff_sms":
                result = await self._send_handoff(session)
            elif tool == "send_alert":
                result = await self._send_alert(session, args.get("reason", ""))
            else:
                logger.error("Unknown tool %s", tool)
                result = {"error": f"unknown tool {tool}"}
        except (SchedulingError, MessagingError) as e:
            logger.error("[%s] %s failed: %s", session.state.value, tool, e)
            result = {"error": str(e)}

        logger.info("Tool result (%s): %s", tool, result)
        transcript.record_tool(session, tool, result)
        return result

    async def _with_upcoming(self, patient: dict) -> dict:
        upcoming = await self.scheduler.find_upcoming_appointment(patient["id"], self._clock())
        return {
            "found": True,
            "patient_id": patient["id"],
            "name": patient["name"],
            "upcoming_appointment": asdict(upcoming) if upcoming else None,
        }

    async def _lookup_by_phone(self, session: CallSession) -> dict:
        patients = await self.scheduler.find_patients_by_phone(session.phone_number)
        if not patients:
            return {"found": False}
        if len(patients) == 1:
            return await self._with_upcoming(patients[0])
        logger.info("[%s] %d patients share this number", session.state.value, len(patients))
        return {"found": False, "candidates": patients[:MAX_PHONE_CANDIDATES]}

    async def _search_by_name(self, name: str) -> dict:
        if not name.strip():
            return {"found": False}
        patients = await self.scheduler.find_patients_by_name(name)
        match = best_name_match(name, patients)
        if not match:
            if patients:
                logger.info("Name search for %r returned %d patients, none close enough", name, len(patients))
            return {"found": False}
        return await self._with_upcoming(match)

    async def _cancel(self, session: CallSession) -> dict:
        if session.cancel_completed:
            return {"success": True, "skipped": True}
        appt = session.identity.upcoming_appointment
        if appt is None:
            return {"success": False, "error": "no appointment to cancel"}
        await self.scheduler.cancel_appointment(appt.appointment_id)
        return {"success": True, "appointment_id": appt.appointment_id}

    async def _send_confirmation(self, session: CallSession, args: dict) -> dict:
        if session.confirmation_sent:
            return {"success": True, "skipped": True}
        sid = await self.messenger.send_confirmation(session.phone_number, args)
        return {"success": True, "sid": sid}

    async def _send_handoff(self, session: CallSession) -> dict:
        if session.handoff_sms_sent:
            return {"success": True, "skipped": True}
        sid = await self.messenger.send_handoff_link(session.phone_number, self.booking_link)
        return {"success": True, "sid": sid}

    async def _send_alert(self, session: CallSession, reason: str) -> dict:
        if reason in session.alerts_sent:
            return {"success": True, "skipped": True, "reason": reason}
        if self.dashboard is None:
            logger.warning("Operator alert not sent, dashboard not configured: %s", reason)
            return {"success": False, "error": "not configured", "reason": reason}
        result = await self.dashboard.send_alert({
            "call_id": session.call_sid,
            "phone_number": session.phone_number or "unknown",
            "customer_name": session.identity.matched_name,
            "reason": reason,
            "state": session.state.value,
            "objective": session.locked_objective.value if session.locked_objective else "",
            "time_preference": session.collected.get("time_preference", ""),
        })
        return {**result, "success": result.get("success", True) is not False, "reason": reason}
