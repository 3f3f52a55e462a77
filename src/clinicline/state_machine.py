import logging
from dataclasses import dataclass, field

from clinicline import prompts
from clinicline.booking import BOOKED, FAILED, NO_SLOTS, STALE, pick_offered
from clinicline.identity import (
    apply_lookup,
    confirm_identity,
    is_someone_else,
    pick_candidate,
    scrub_identity,
    spoken_choices,
)
from clinicline.recovery import (
    count_unproductive_turn,
    escalate,
    goodbye_allowed,
    needs_safety_valve,
    reset_recovery,
)
from clinicline.session import CallSession, Slot, transition
from clinicline.states import Objective, RecoveryLevel, State
from clinicline.time_window import DEFAULT_TZ, speakable_time
from clinicline.validation import (
    SLOT_ALTERNATE_DAY,
    SLOT_OPTION,
    SLOT_REJECT,
    SLOT_UNKNOWN,
    SlotChoice,
    Utterance,
    classify,
    detect_escalation,
    detect_goodbye,
    detect_new_patient,
    extract_corrected_name,
    first_name,
    strip_name_prefix,
)

logger = logging.getLogger(__name__)

MAX_INTENT_RETRIES = 2
MAX_SLOT_CHOICE_RETRIES = 2
MAX_STALE_RESTARTS = 2

OBJECTIVES = {
    "book": Objective.BOOK,
    "reschedule": Objective.RESCHEDULE,
    "cancel": Objective.CANCEL,
}


@dataclass
class Action:
    """What one turn (or one tool result) asks the processor to do.

    ``needs_llm`` is False when the reply must wait for a deterministic tool
    result instead of a free-form line composed for the current state.
    """

    speak: str = ""
    call_tool: str = ""
    tool_args: dict = field(default_factory=dict)
    end_call: bool = False
    needs_llm: bool = True


TRANSITIONS = {
    State.INITIAL: {State.VERIFYING, State.MANUAL_SEARCH, State.SOFT_BOOKING, State.OFFERING_SLOTS,
                    State.CONFIRMING_CANCEL, State.COMPLETED, State.GOODBYE, State.SAFETY_VALVE},
    State.VERIFYING: {State.OFFERING_SLOTS, State.CONFIRMING_CANCEL, State.MANUAL_SEARCH, State.SEARCHING,
                      State.COMPLETED, State.SAFETY_VALVE, State.GOODBYE},
    State.MANUAL_SEARCH: {State.SEARCHING, State.SAFETY_VALVE, State.GOODBYE},
    State.SEARCHING: {State.OFFERING_SLOTS, State.CONFIRMING_CANCEL, State.SOFT_BOOKING, State.COMPLETED,
                      State.SAFETY_VALVE, State.GOODBYE},
    State.SOFT_BOOKING: {State.OFFERING_SLOTS, State.SAFETY_VALVE, State.GOODBYE},
    State.OFFERING_SLOTS: {State.OFFERING_SLOTS, State.SLOT_SELECTED, State.SAFETY_VALVE, State.GOODBYE},
    State.SLOT_SELECTED: {State.COMPLETED, State.OFFERING_SLOTS, State.INITIAL, State.SAFETY_VALVE, State.GOODBYE},
    State.CONFIRMING_CANCEL: {State.COMPLETED, State.SAFETY_VALVE, State.GOODBYE},
    State.SAFETY_VALVE: {State.COMPLETED},
    State.COMPLETED: {State.GOODBYE},
    State.GOODBYE: set(),
}

STATE_TOOLS = {
    State.INITIAL: ["classify_intent", "lookup_caller", "send_alert"],
    State.VERIFYING: ["select_patient", "search_patient", "offer_slots"],
    State.MANUAL_SEARCH: ["search_patient"],
    State.SEARCHING: ["search_patient", "offer_slots"],
    State.SOFT_BOOKING: ["offer_slots"],
    State.OFFERING_SLOTS: ["offer_slots", "commit_slot"],
    State.SLOT_SELECTED: ["commit_slot", "offer_slots", "send_confirmation", "send_alert"],
    State.CONFIRMING_CANCEL: ["cancel_appointment", "send_confirmation", "send_alert"],
    State.SAFETY_VALVE: ["send_handoff_sms", "send_alert"],
    State.COMPLETED: ["send_confirmation", "send_alert"],
    State.GOODBYE: [],
}


class StateMachine:
    """Drives one caller turn at a time against a persisted CallSession.

    ``process`` runs the recovery pre-check, the handler for the current
    state and the recovery post-check.  A handler may ask for one tool; the
    processor runs it and feeds the result to ``handle_tool_result``, which
    may in turn ask for a follow-up tool.
    """

    def __init__(self, clinic_name: str = "the clinic", tz: str = DEFAULT_TZ):
        self.clinic_name = clinic_name
        self.tz = tz

    def valid_transitions(self, state: State) -> set[State]:
        return TRANSITIONS.get(state, set())

    def available_tools(self, state: State) -> list[str]:
        return STATE_TOOLS.get(state, [])

    def greet(self, session: CallSession) -> Action:
        return Action(speak=prompts.say("greeting", clinic=self.clinic_name), needs_llm=False)

    def process(self, session: CallSession, user_text: str, digits: str = "") -> Action:
        session.turn_count += 1
        session.last_utterance = user_text
        utterance = classify(user_text, digits)

        if needs_safety_valve(session):
            return self.safety_valve(session, "stuck in state")

        if not session.state.is_terminal and session.state != State.SAFETY_VALVE:
            if detect_escalation(user_text) and session.locked_objective is not None:
                return self.safety_valve(session, "caller asked for a person")
            if self._is_goodbye(session, utterance):
                return self._caller_goodbye(session)

        handler = getattr(self, f"_handle_{session.state.value}", None)
        if handler:
            return handler(session, utterance)
        return Action()

    def handle_tool_result(self, session: CallSession, tool: str, result: dict):
        """Apply a tool result. Returns a follow-up Action, or None."""
        handler = getattr(self, f"_tool_result_{tool}", None)
        if handler:
            return handler(session, result)
        return None

    def safety_valve(self, session: CallSession, reason: str, prefix: str = "") -> Action:
        logger.warning("[%s] SAFETY VALVE: %s", session.state.value, reason)
        escalate(session, RecoveryLevel.SAFETY_VALVE)
        session.collected["handoff_reason"] = reason
        transition(session, State.SAFETY_VALVE, reason)
        speak = f"{prefix} {prompts.say('safety_valve')}".strip()
        return Action(speak=speak, call_tool="send_handoff_sms", end_call=True, needs_llm=False)

    # ── Helpers ──

    def _is_goodbye(self, session: CallSession, u: Utterance) -> bool:
        if not detect_goodbye(u.text):
            return False
        # "no thanks" answers a yes/no question
        if u.is_denial and session.state in (State.VERIFYING, State.CONFIRMING_CANCEL):
            return False
        # "the second one, thanks, bye" is still a choice
        return not (session.state.is_booking and u.slot_choice.kind == SLOT_OPTION)

    def _caller_goodbye(self, session: CallSession) -> Action:
        if goodbye_allowed(session):
            transition(session, State.GOODBYE, "caller said goodbye")
            return Action(speak=prompts.say("closing", clinic=self.clinic_name), end_call=True, needs_llm=False)
        finish = f"{prompts.say('finish_first')} {self.reprompt(session)}"
        return self._stuck(session, Action(speak=finish, needs_llm=False))

    def _stuck(self, session: CallSession, action: Action) -> Action:
        count_unproductive_turn(session)
        if needs_safety_valve(session):
            return self.safety_valve(session, f"stuck in {session.state.value}")
        return action

    def _when(self, session: CallSession) -> str:
        appt = session.identity.upcoming_appointment
        return speakable_time(appt.starts_at, self.tz) if appt else ""

    def _offer_line(self, session: CallSession, reprompt: bool = False) -> str:
        slots = session.candidate_slots
        suffix = "_reprompt" if reprompt else ""
        if len(slots) >= 2:
            return prompts.say(f"offer_two{suffix}", one=slots[0].speakable, two=slots[1].speakable)
        return prompts.say(f"offer_one{suffix}", one=slots[0].speakable)

    def reprompt(self, session: CallSession) -> str:
        if session.state == State.OFFERING_SLOTS and session.candidate_slots:
            return self._offer_line(session, reprompt=True)
        if session.state == State.VERIFYING and session.identity.phone_candidates:
            return prompts.say("which_patient_reprompt", names=spoken_choices(session.identity.phone_candidates))
        key = prompts.STATE_REPROMPTS.get(session.state, "intent_reprompt")
        return prompts.say(key, name=session.identity.matched_name, when=self._when(session))

    def _offer(self, session: CallSession) -> Action:
        return Action(call_tool="offer_slots", needs_llm=False)

    def _after_identity(self, session: CallSession) -> Action:
        """Route a verified caller to the step their objective needs next."""
        objective = session.locked_objective
        upcoming = session.identity.upcoming_appointment

        if objective == Objective.CANCEL:
            if upcoming:
                transition(session, State.CONFIRMING_CANCEL, "identity verified")
                return Action(speak=prompts.say("cancel_confirm", when=self._when(session)), needs_llm=False)
            session.cancel_completed = True
            session.collected["outcome"] = "nothing_to_cancel"
            transition(session, State.COMPLETED, "no upcoming appointment")
            speak = f"{prompts.say('nothing_to_cancel')} {prompts.say('closing', clinic=self.clinic_name)}"
            return Action(speak=speak, end_call=True, needs_llm=False)

        transition(session, State.OFFERING_SLOTS, "identity verified")
        if objective == Objective.RESCHEDULE and not upcoming:
            logger.info("No upcoming appointment to move, re-locking as a new booking")
            session.locked_objective = Objective.BOOK
            if not session.collected.get("time_preference"):
                return Action(speak=prompts.say("no_upcoming_reschedule"), needs_llm=False)
        if session.collected.get("time_preference"):
            return self._offer(session)
        return Action(
            speak=prompts.say("ask_time", first_name=first_name(session.identity.matched_name)),
            needs_llm=False,
        )

    def _restart_from_intent(self, session: CallSession) -> Action:
        """The chosen slot went stale: drop the booking attempt and ask again from the top."""
        session.locked_objective = None
        session.candidate_slots = []
        session.intent_retries = 0
        session.slot_choice_retries = 0
        for key in ("selected_slot_id", "time_preference", "intent"):
            session.collected.pop(key, None)
        transition(session, State.INITIAL, "chosen slot taken")
        return Action(speak=prompts.say("stale_slot"), needs_llm=False)

    # ── State handlers ──

    def _handle_initial(self, session: CallSession, u: Utterance) -> Action:
        if u.time_preference:
            session.collected["time_preference"] = u.time_preference
        new_patient = detect_new_patient(u.text)
        if new_patient is not None:
            session.collected["is_new_patient"] = new_patient
        if session.locked_objective is not None:
            # objective locked on an earlier attempt whose lookup never landed
            return Action(call_tool="lookup_caller", needs_llm=False)
        return Action(call_tool="classify_intent", tool_args={"text": u.text}, needs_llm=False)

    def _handle_verifying(self, session: CallSession, u: Utterance) -> Action:
        candidates = session.identity.phone_candidates
        someone_else = bool(candidates) and is_someone_else(u.text, u.digits, len(candidates))
        if candidates and not someone_else:
            chosen = pick_candidate(candidates, u.text, u.digits)
            if chosen:
                return Action(
                    call_tool="select_patient",
                    tool_args={"patient_id": chosen["id"], "name": chosen["name"]},
                    needs_llm=False,
                )
            if not u.is_denial:
                return self._stuck(session, Action(
                    speak=prompts.say("which_patient_reprompt", names=spoken_choices(candidates)),
                ))

        if u.is_denial or someone_else:
            corrected = extract_corrected_name(u.text)
            scrub_identity(session)
            if corrected:
                session.collected["provided_search_name"] = corrected
                session.identity.awaiting_manual_name = False
                transition(session, State.SEARCHING, "corrected name given")
                return Action(call_tool="search_patient", tool_args={"name": corrected}, needs_llm=False)
            return Action(speak=prompts.say("ask_name"), needs_llm=False)

        if u.is_confirmation:
            confirm_identity(session)
            reset_recovery(session)
            return self._after_identity(session)

        return self._stuck(session, Action(
            speak=prompts.say("verify_reprompt", name=session.identity.matched_name),
        ))

    def _handle_manual_search(self, session: CallSession, u: Utterance) -> Action:
        if u.looks_like_name:
            name = strip_name_prefix(u.text)
            session.collected["provided_search_name"] = name
            session.identity.awaiting_manual_name = False
            transition(session, State.SEARCHING, "name provided")
            return Action(call_tool="search_patient", tool_args={"name": name}, needs_llm=False)
        return self._stuck(session, Action(speak=prompts.say("ask_name_reprompt")))

    def _handle_searching(self, session: CallSession, u: Utterance) -> Action:
        # the search runs in the turn that entered this state; a turn landing
        # here means it never completed, so run it again
        name = session.collected.get("provided_search_name", "")
        return Action(call_tool="search_patient", tool_args={"name": name}, needs_llm=False)

    def _handle_soft_booking(self, session: CallSession, u: Utterance) -> Action:
        if u.time_preference:
            session.collected["time_preference"] = u.time_preference
            return self._offer(session)
        return self._stuck(session, Action(speak=prompts.say("ask_time_reprompt")))

    def _handle_offering_slots(self, session: CallSession, u: Utterance) -> Action:
        if not session.candidate_slots:
            if u.time_preference:
                session.collected["time_preference"] = u.time_preference
                return self._offer(session)
            return self._stuck(session, Action(speak=prompts.say("ask_time_reprompt")))

        choice = u.slot_choice
        if len(session.candidate_slots) == 1 and choice.kind == SLOT_UNKNOWN and u.is_confirmation:
            choice = SlotChoice(SLOT_OPTION, 0)

        slot = pick_offered(session, choice)
        if slot:
            session.collected["selected_slot_id"] = slot.slot_id
            transition(session, State.SLOT_SELECTED, f"chose {slot.slot_id}")
            return Action(call_tool="commit_slot", tool_args={"slot_id": slot.slot_id}, needs_llm=False)

        if choice.kind == SLOT_ALTERNATE_DAY:
            session.collected["time_preference"] = choice.day
            session.candidate_slots = []
            return self._offer(session)

        if choice.kind == SLOT_REJECT:
            session.candidate_slots = []
            transition(session, State.OFFERING_SLOTS, "offer rejected")
            return Action(speak=prompts.say("ask_time_reprompt"), needs_llm=False)

        session.slot_choice_retries += 1
        if session.slot_choice_retries >= MAX_SLOT_CHOICE_RETRIES:
            return self.safety_valve(session, "slot choice not understood")
        return self._stuck(session, Action(speak=self._offer_line(session, reprompt=True)))

    def _handle_slot_selected(self, session: CallSession, u: Utterance) -> Action:
        # only reached after a failed commit asked "try again?"
        choice = u.slot_choice
        if choice.kind == SLOT_ALTERNATE_DAY:
            session.collected["time_preference"] = choice.day
            session.candidate_slots = []
            return self._offer(session)
        if u.is_denial or choice.kind == SLOT_REJECT:
            session.candidate_slots = []
            transition(session, State.OFFERING_SLOTS, "retry declined")
            return Action(speak=prompts.say("ask_time_reprompt"), needs_llm=False)
        slot_id = session.collected.get("selected_slot_id", "")
        return Action(call_tool="commit_slot", tool_args={"slot_id": slot_id}, needs_llm=False)

    def _handle_confirming_cancel(self, session: CallSession, u: Utterance) -> Action:
        if u.is_confirmation:
            return Action(call_tool="cancel_appointment", needs_llm=False)
        if u.is_denial:
            session.locked_objective = None
            session.collected["outcome"] = "cancel_declined"
            transition(session, State.COMPLETED, "caller kept appointment")
            speak = f"{prompts.say('cancel_kept')} {prompts.say('closing', clinic=self.clinic_name)}"
            return Action(speak=speak, end_call=True, needs_llm=False)
        return self._stuck(session, Action(speak=prompts.say("cancel_confirm_reprompt", when=self._when(session))))

    def _handle_safety_valve(self, session: CallSession, u: Utterance) -> Action:
        return Action(speak=prompts.say("safety_valve"), call_tool="send_handoff_sms", end_call=True, needs_llm=False)

    def _handle_completed(self, session: CallSession, u: Utterance) -> Action:
        transition(session, State.GOODBYE, "wrap up")
        return Action(speak=prompts.say("closing", clinic=self.clinic_name), end_call=True, needs_llm=False)

    def _handle_goodbye(self, session: CallSession, u: Utterance) -> Action:
        return Action(speak=prompts.say("closing", clinic=self.clinic_name), end_call=True, needs_llm=False)

    # ── Tool result handlers ──

    def _tool_result_classify_intent(self, session: CallSession, result: dict):
        intent = result.get("action", "unknown")
        session.intent_confidence = float(result.get("confidence", 0.0))
        session.collected["intent"] = intent

        if intent in OBJECTIVES:
            session.locked_objective = OBJECTIVES[intent]
            session.intent_retries = 0
            logger.info("Objective locked: %s (%.2f)", intent, session.intent_confidence)
            if session.identity.verified:
                # caller already confirmed who they are before a restart
                return self._after_identity(session)
            return Action(call_tool="lookup_caller", needs_llm=False)

        if intent == "escalate":
            transition(session, State.GOODBYE, "caller asked for a person")
            return Action(
                speak=prompts.say("escalate", clinic=self.clinic_name),
                call_tool="send_alert",
                tool_args={"reason": "caller asked for a person"},
                end_call=True,
                needs_llm=False,
            )

        session.intent_retries += 1
        if session.intent_retries > MAX_INTENT_RETRIES:
            return self.safety_valve(session, "intent not understood")
        key = "intent_reprompt" if session.intent_retries == 1 else "intent_menu"
        return Action(speak=prompts.say(key), needs_llm=False)

    def _tool_result_lookup_caller(self, session: CallSession, result: dict):
        if result.get("candidates"):
            session.identity.phone_candidates = result["candidates"]
            transition(session, State.VERIFYING, "shared phone number")
            return Action(speak=prompts.say("which_patient", names=spoken_choices(result["candidates"])), needs_llm=False)

        if apply_lookup(session, result):
            transition(session, State.VERIFYING, "phone match")
            return Action(speak=prompts.say("verify_identity", name=session.identity.matched_name), needs_llm=False)

        if session.locked_objective == Objective.BOOK:
            transition(session, State.SOFT_BOOKING, "no phone match")
            if session.collected.get("time_preference"):
                return self._offer(session)
            return Action(speak=prompts.say("ask_time_anon"), needs_llm=False)

        session.identity.awaiting_manual_name = True
        transition(session, State.MANUAL_SEARCH, "no phone match")
        return Action(speak=prompts.say("ask_name"), needs_llm=False)

    def _tool_result_select_patient(self, session: CallSession, result: dict):
        session.identity.phone_candidates = []
        if apply_lookup(session, result):
            confirm_identity(session)
            reset_recovery(session)
            return self._after_identity(session)
        scrub_identity(session)
        return Action(speak=prompts.say("ask_name"), needs_llm=False)

    def _tool_result_search_patient(self, session: CallSession, result: dict):
        if apply_lookup(session, result):
            confirm_identity(session)
            reset_recovery(session)
            return self._after_identity(session)

        escalate(session, RecoveryLevel.SEARCH_FALLBACK)
        if session.locked_objective == Objective.CANCEL:
            return self.safety_valve(session, "no patient found to cancel for")
        if session.locked_objective == Objective.RESCHEDULE:
            logger.info("No patient found, re-locking reschedule as a new booking")
            session.locked_objective = Objective.BOOK
        transition(session, State.SOFT_BOOKING, "name search failed")
        if session.collected.get("time_preference"):
            return self._offer(session)
        return Action(speak=prompts.say("search_not_found"), needs_llm=False)

    def _tool_result_offer_slots(self, session: CallSession, result: dict):
        status = result.get("status")
        if status == FAILED:
            return self.safety_valve(session, "availability lookup failed", prefix=prompts.say("availability_error"))

        session.slot_choice_retries = 0
        transition(session, State.OFFERING_SLOTS, f"offer {status}")
        if status == NO_SLOTS:
            session.candidate_slots = []
            return Action(speak=prompts.say("no_slots", window=result.get("window", "then")), needs_llm=False)

        session.candidate_slots = [Slot.from_dict(s) for s in result.get("slots", [])]
        return Action(speak=self._offer_line(session), needs_llm=False)

    def _tool_result_commit_slot(self, session: CallSession, result: dict):
        status = result.get("status")
        if status == BOOKED:
            slot_id = session.collected.get("selected_slot_id", "")
            slot = next((s for s in session.candidate_slots if s.slot_id == slot_id), session.booked_slot)
            session.booked_slot = slot
            session.booked_appointment_id = result.get("appointment_id", "")
            rescheduled = (
                session.locked_objective == Objective.RESCHEDULE
                and session.identity.upcoming_appointment is not None
            )
            if rescheduled:
                session.reschedule_completed = True
            else:
                session.appointment_created = True
            session.candidate_slots = []
            transition(session, State.COMPLETED, "booked")
            when = slot.speakable if slot else ""
            key = "reschedule_confirmed" if rescheduled else "booking_confirmed"
            return Action(
                speak=prompts.say(key, when=when),
                call_tool="send_confirmation",
                tool_args={"kind": "reschedule" if rescheduled else "book", "when": when},
                needs_llm=False,
            )

        if status == STALE:
            session.stale_restarts += 1
            if session.stale_restarts >= MAX_STALE_RESTARTS:
                return self.safety_valve(session, "chosen slots keep being taken", prefix=prompts.say("stale_slot_again"))
            return self._restart_from_intent(session)

        return self._stuck(session, Action(
            speak=prompts.say("commit_failed"),
            call_tool="send_alert",
            tool_args={"reason": "booking commit failed"},
            needs_llm=False,
        ))

    def _tool_result_cancel_appointment(self, session: CallSession, result: dict):
        if result.get("success"):
            session.cancel_completed = True
            transition(session, State.COMPLETED, "cancelled")
            return Action(
                speak=prompts.say("cancel_done"),
                call_tool="send_confirmation",
                tool_args={"kind": "cancel"},
                needs_llm=False,
            )
        return self._stuck(session, Action(
            speak=prompts.say("cancel_failed"),
            call_tool="send_alert",
            tool_args={"reason": "cancellation failed"},
            needs_llm=False,
        ))

    def _tool_result_send_confirmation(self, session: CallSession, result: dict):
        session.confirmation_sent = bool(result.get("success"))

    def _tool_result_send_alert(self, session: CallSession, result: dict):
        reason = result.get("reason", "")
        if result.get("success") and reason not in session.alerts_sent:
            session.alerts_sent.append(reason)

    def _tool_result_send_handoff_sms(self, session: CallSession, result: dict):
        session.handoff_sms_sent = bool(result.get("success"))
        session.locked_objective = None
        transition(session, State.COMPLETED, "safety valve, sms sent")
        reason = session.collected.get("handoff_reason", "safety valve")
        if reason not in session.alerts_sent:
            return Action(call_tool="send_alert", tool_args={"reason": reason}, end_call=True, needs_llm=False)
        return None
