from unittest.mock import AsyncMock

import pytest

from clinicline.booking import SlotCoordinator
from clinicline.messaging import MessagingError
from clinicline.processor import TurnProcessor, TurnResponse, is_replay, turn_key
from clinicline.scheduling import SchedulingError
from clinicline.session import CallSession
from clinicline.session_store import InMemorySessionStore
from clinicline.state_machine import Action, StateMachine
from clinicline.states import Objective, State

from conftest import TZ, make_slot

PHONE = "+61412345678"
LINK = "https://book.example.com/harbour"


def slots():
    return [
        make_slot("2026-03-03T09:00:00+10:00"),
        make_slot("2026-03-03T10:30:00+10:00"),
    ]


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def scheduler():
    scheduler = AsyncMock()
    scheduler.find_patients_by_phone.return_value = [{"id": "P42", "name": "Jane Doe"}]
    scheduler.find_upcoming_appointment.return_value = None
    return scheduler


@pytest.fixture
def classifier():
    classifier = AsyncMock()
    classifier.classify_intent.return_value = {"action": "book", "confidence": 0.9, "source": "llm"}
    return classifier


@pytest.fixture
def messenger():
    messenger = AsyncMock()
    messenger.send_confirmation.return_value = "SM_confirm"
    messenger.send_handoff_link.return_value = "SM_handoff"
    return messenger


@pytest.fixture
def dashboard():
    dashboard = AsyncMock()
    dashboard.send_alert.return_value = {"success": True}
    dashboard.send_call.return_value = {"success": True}
    return dashboard


@pytest.fixture
def processor(store, scheduler, classifier, messenger, dashboard, clock):
    machine = StateMachine(clinic_name="Harbour Physio", tz=TZ)
    coordinator = SlotCoordinator(scheduler, standard_type_id="T1", new_patient_type_id="T2", tz=TZ, clock=clock)
    return TurnProcessor(
        store,
        machine,
        scheduler=scheduler,
        coordinator=coordinator,
        classifier=classifier,
        messenger=messenger,
        dashboard=dashboard,
        booking_link=LINK,
        tz=TZ,
        clock=clock,
    )


class TestStartCall:
    @pytest.mark.asyncio
    async def test_greets_and_persists(self, processor, store):
        response = await processor.start_call("CA1", PHONE)
        assert response.say.startswith("Thanks for calling Harbour Physio")
        assert response.keep_listening
        assert response.state == "initial"
        session = await store.read("CA1")
        assert session.phone_number == PHONE
        assert session.transcript_log[0]["role"] == "agent"

    @pytest.mark.asyncio
    async def test_repeated_start_returns_cached_greeting(self, processor, store):
        first = await processor.start_call("CA1", PHONE)
        second = await processor.start_call("CA1", PHONE)
        assert first == second
        assert len((await store.read("CA1")).transcript_log) == 1


class TestBookingCall:
    @pytest.mark.asyncio
    async def test_confirm_offer_choose_and_book(self, processor, scheduler, messenger, store):
        s1, s2 = slots()
        scheduler.get_availability.side_effect = [slots(), [s2]]
        scheduler.create_appointment.return_value = {"id": "A900", "starts_at": s2.start}

        await processor.start_call("CA1", PHONE)

        r = await processor.handle_turn("CA1", PHONE, "I'd like to book an appointment", state_tag="initial", seq="0")
        assert r.say == "I can help with that. Am I speaking with Jane Doe?"
        assert r.state == "verifying"

        r = await processor.handle_turn("CA1", PHONE, "yes that's me", state_tag=r.state, seq=str(r.seq))
        assert r.state == "offering_slots"
        assert r.say == "Thanks Jane. What day and time would suit you?"

        r = await processor.handle_turn("CA1", PHONE, "Tuesday morning", state_tag=r.state, seq=str(r.seq))
        assert r.say == (
            "I have Tuesday the 3rd at 9 am, or Tuesday the 3rd at 10:30 am. "
            "Would you like option one or option two?"
        )

        r = await processor.handle_turn("CA1", PHONE, "option two", state_tag=r.state, seq=str(r.seq))
        assert r.state == "completed"
        assert r.say.startswith("You're all set for Tuesday the 3rd at 10:30 am.")
        assert not r.end_call

        # revalidated immediately before booking, for the slot read out as option two
        names = [c[0] for c in scheduler.mock_calls]
        assert names[-2:] == ["get_availability", "create_appointment"]
        window, _ = scheduler.get_availability.call_args[0]
        assert window.start.isoformat() == s2.start
        assert scheduler.create_appointment.call_args[0][1].slot_id == s2.slot_id

        messenger.send_confirmation.assert_awaited_once()
        session = await store.read("CA1")
        assert session.appointment_created
        assert session.confirmation_sent
        assert session.booked_appointment_id == "A900"

        r = await processor.handle_turn("CA1", PHONE, "no that's all", state_tag=r.state, seq=str(r.seq))
        assert r.end_call
        assert not r.keep_listening
        assert r.state == "goodbye"


class TestSafetyValve:
    @pytest.mark.asyncio
    async def test_two_unintelligible_name_turns_hand_off(
        self, processor, scheduler, classifier, messenger, dashboard, store
    ):
        classifier.classify_intent.return_value = {"action": "cancel", "confidence": 0.9, "source": "llm"}
        scheduler.find_patients_by_phone.return_value = []

        await processor.start_call("CA1", PHONE)
        r = await processor.handle_turn("CA1", PHONE, "I need to cancel", state_tag="initial", seq="0")
        assert r.state == "manual_search"

        r = await processor.handle_turn("CA1", PHONE, "um", state_tag=r.state, seq=str(r.seq))
        assert r.state == "manual_search"
        assert not r.end_call

        r = await processor.handle_turn("CA1", PHONE, "uh", state_tag=r.state, seq=str(r.seq))
        assert r.end_call
        assert r.state == "completed"
        assert "direct booking link" in r.say

        messenger.send_handoff_link.assert_awaited_once_with(PHONE, LINK)
        dashboard.send_alert.assert_awaited_once()
        session = await store.read("CA1")
        assert session.handoff_sms_sent
        assert len(session.alerts_sent) == 1
        assert session.locked_objective is None

    @pytest.mark.asyncio
    async def test_end_call_with_open_objective_is_guarded(self, processor, store, messenger):
        class HangsUp(StateMachine):
            def process(self, session, user_text, digits=""):
                session.turn_count += 1
                return Action(speak="Goodbye!", end_call=True)

        processor.machine = HangsUp()
        session = CallSession(call_sid="CA1", phone_number=PHONE)
        session.locked_objective = Objective.BOOK
        session.state = State.OFFERING_SLOTS
        await store.write("CA1", session)

        r = await processor.handle_turn("CA1", PHONE, "whatever")

        assert r.end_call
        assert "direct booking link" in r.say
        messenger.send_handoff_link.assert_awaited_once()
        assert (await store.read("CA1")).state == State.COMPLETED

    @pytest.mark.asyncio
    async def test_slot_taken_twice_hands_off_without_booking(self, processor, scheduler, messenger, store):
        def availability(window, type_id):
            return [] if window.description == "revalidation" else slots()

        scheduler.get_availability.side_effect = availability

        await processor.start_call("CA1", PHONE)
        r = await processor.handle_turn("CA1", PHONE, "I'd like to book", state_tag="initial", seq="0")
        r = await processor.handle_turn("CA1", PHONE, "yes", state_tag=r.state, seq=str(r.seq))
        r = await processor.handle_turn("CA1", PHONE, "Tuesday morning", state_tag=r.state, seq=str(r.seq))
        r = await processor.handle_turn("CA1", PHONE, "option one", state_tag=r.state, seq=str(r.seq))
        assert r.state == "initial"
        assert "start again" in r.say

        r = await processor.handle_turn("CA1", PHONE, "book please", state_tag=r.state, seq=str(r.seq))
        assert r.state == "offering_slots"
        r = await processor.handle_turn("CA1", PHONE, "Tuesday morning", state_tag=r.state, seq=str(r.seq))
        r = await processor.handle_turn("CA1", PHONE, "option one", state_tag=r.state, seq=str(r.seq))

        assert r.end_call
        assert r.state == "completed"
        assert r.say.startswith("Sorry, that time has just been taken as well.")
        scheduler.create_appointment.assert_not_awaited()
        messenger.send_handoff_link.assert_awaited_once_with(PHONE, LINK)
        session = await store.read("CA1")
        assert session.stale_restarts == 2
        assert session.locked_objective is None


class TestSharedPhone:
    @pytest.mark.asyncio
    async def test_caller_picks_themselves_from_family_on_one_number(self, processor, scheduler, store):
        scheduler.find_patients_by_phone.return_value = [
            {"id": "P42", "name": "Jane Doe"},
            {"id": "P43", "name": "Tom Doe"},
        ]

        await processor.start_call("CA1", PHONE)
        r = await processor.handle_turn("CA1", PHONE, "I'd like to book", state_tag="initial", seq="0")
        assert r.state == "verifying"
        assert r.say == "I can see a few people on this number. Is this for Jane or Tom, or someone else?"

        r = await processor.handle_turn("CA1", PHONE, "it's Tom", state_tag=r.state, seq=str(r.seq))
        assert r.state == "offering_slots"
        assert r.say.startswith("Thanks Tom.")

        scheduler.find_upcoming_appointment.assert_awaited_once()
        assert scheduler.find_upcoming_appointment.call_args[0][0] == "P43"
        session = await store.read("CA1")
        assert session.identity.verified
        assert session.identity.matched_id == "P43"
        assert session.identity.phone_candidates == []

    @pytest.mark.asyncio
    async def test_someone_else_asks_for_a_name(self, processor, scheduler, store):
        scheduler.find_patients_by_phone.return_value = [
            {"id": "P42", "name": "Jane Doe"},
            {"id": "P43", "name": "Tom Doe"},
        ]

        await processor.start_call("CA1", PHONE)
        r = await processor.handle_turn("CA1", PHONE, "I'd like to book", state_tag="initial", seq="0")
        r = await processor.handle_turn("CA1", PHONE, "no, someone else", state_tag=r.state, seq=str(r.seq))

        assert r.state == "manual_search"
        assert r.say.startswith("No worries! What name")
        session = await store.read("CA1")
        assert not session.identity.verified
        assert session.identity.phone_candidates == []
        scheduler.find_upcoming_appointment.assert_not_awaited()


class TestNameSearch:
    @pytest.mark.asyncio
    async def test_same_first_name_is_not_the_caller(self, processor, scheduler, store):
        scheduler.find_patients_by_name.return_value = [{"id": "P9", "name": "Roger Smith"}]

        await processor.start_call("CA1", PHONE)
        r = await processor.handle_turn("CA1", PHONE, "I'd like to book", state_tag="initial", seq="0")
        r = await processor.handle_turn("CA1", PHONE, "no", state_tag=r.state, seq=str(r.seq))
        assert r.state == "manual_search"

        r = await processor.handle_turn("CA1", PHONE, "Roger Moore", state_tag=r.state, seq=str(r.seq))

        assert r.state == "soft_booking"
        session = await store.read("CA1")
        assert not session.identity.verified
        assert session.identity.matched_id == ""
        assert "name" not in session.collected


class TestToolErrors:
    @pytest.mark.asyncio
    async def test_lookup_failure_is_no_match(self, processor, scheduler):
        scheduler.find_patients_by_phone.side_effect = SchedulingError("timeout")
        await processor.start_call("CA1", PHONE)
        r = await processor.handle_turn("CA1", PHONE, "book please", state_tag="initial", seq="0")
        assert r.state == "soft_booking"
        assert r.say == "When would you like to come in?"

    @pytest.mark.asyncio
    async def test_sms_failure_does_not_break_turn(self, processor, messenger, store):
        messenger.send_handoff_link.side_effect = MessagingError("blocked")

        session = CallSession(call_sid="CA1", phone_number=PHONE)
        session.locked_objective = Objective.BOOK
        session.state = State.MANUAL_SEARCH
        session.turns_in_state = 1
        await store.write("CA1", session)

        r = await processor.handle_turn("CA1", PHONE, "um")

        assert r.end_call
        assert not (await store.read("CA1")).handoff_sms_sent


class TestReplay:
    @pytest.mark.asyncio
    async def test_redelivered_turn_is_not_reapplied(self, processor, classifier):
        await processor.start_call("CA1", PHONE)
        first = await processor.handle_turn("CA1", PHONE, "book please", state_tag="initial", seq="0")
        second = await processor.handle_turn("CA1", PHONE, "book please", state_tag="initial", seq="0")
        assert first == second
        classifier.classify_intent.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redelivered_booking_does_not_double_book(self, processor, scheduler, store):
        s1, s2 = slots()
        session = CallSession(call_sid="CA1", phone_number=PHONE)
        session.locked_objective = Objective.BOOK
        session.state = State.OFFERING_SLOTS
        session.identity.matched_id = "P42"
        session.identity.verified = True
        session.candidate_slots = [s1, s2]
        await store.write("CA1", session)
        scheduler.get_availability.return_value = [s1]
        scheduler.create_appointment.return_value = {"id": "A900", "starts_at": s1.start}

        await processor.handle_turn("CA1", PHONE, "option one", state_tag="offering_slots", seq="3")
        await processor.handle_turn("CA1", PHONE, "option one", state_tag="offering_slots", seq="3")

        scheduler.create_appointment.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeat_without_seq_in_same_state_is_processed(self, processor, store):
        session = CallSession(call_sid="CA1", phone_number=PHONE)
        session.locked_objective = Objective.BOOK
        session.state = State.SOFT_BOOKING
        await store.write("CA1", session)

        await processor.handle_turn("CA1", PHONE, "hmm", state_tag="soft_booking")
        await processor.handle_turn("CA1", PHONE, "hmm", state_tag="soft_booking")

        assert (await store.read("CA1")).turn_count == 2

    def test_turn_key_normalises_speech(self):
        assert turn_key("initial", "0", " Book Please ", "") == "initial|0|book please|"

    def test_is_replay_requires_prior_response(self):
        session = CallSession(call_sid="CA1")
        assert not is_replay(session, "k", "initial", "0")
        session.last_turn_key = "k"
        session.last_response = TurnResponse(say="hi").to_dict()
        assert is_replay(session, "k", "initial", "0")
        assert not is_replay(session, "k", "initial", "")


class TestPersist:
    @pytest.mark.asyncio
    async def test_concurrent_collected_update_is_kept(self, processor, store):
        session = CallSession(call_sid="CA1")
        await store.write("CA1", session)
        await store.merge_collected("CA1", {"callback_note": "prefers mornings"})

        session.collected["time_preference"] = "friday"
        await processor._persist(session, {})

        saved = await store.read("CA1")
        assert saved.collected == {"time_preference": "friday", "callback_note": "prefers mornings"}

    @pytest.mark.asyncio
    async def test_scrubbed_identity_is_not_restored(self, processor, store):
        stale = CallSession(call_sid="CA1")
        await store.write("CA1", stale)
        await store.merge_collected("CA1", {"name": "Jane Doe"})

        session = CallSession(call_sid="CA1")
        session.identity.scrubbed = True
        await processor._persist(session, {})

        assert "name" not in (await store.read("CA1")).collected


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_confirmation_sent_once(self, processor, messenger):
        session = CallSession(call_sid="CA1", phone_number=PHONE)
        session.confirmation_sent = True
        result = await processor._send_confirmation(session, {"kind": "book", "when": "x"})
        assert result == {"success": True, "skipped": True}
        messenger.send_confirmation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_alert_without_dashboard(self, processor):
        processor.dashboard = None
        result = await processor._send_alert(CallSession(call_sid="CA1"), "test")
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_alert_sent_once_per_reason(self, processor, dashboard):
        session = CallSession(call_sid="CA1", phone_number=PHONE)
        session.alerts_sent = ["cancellation failed"]
        skipped = await processor._send_alert(session, "cancellation failed")
        assert skipped["skipped"]
        dashboard.send_alert.assert_not_awaited()

        result = await processor._send_alert(session, "caller asked for a person")
        assert result == {"success": True, "reason": "caller asked for a person"}
        assert dashboard.send_alert.call_args[0][0]["reason"] == "caller asked for a person"

    @pytest.mark.asyncio
    async def test_name_search_picks_closest_name(self, processor, scheduler):
        scheduler.find_patients_by_name.return_value = [
            {"id": "P1", "name": "Jane Doerr"},
            {"id": "P2", "name": "Jane Doe"},
        ]
        result = await processor._search_by_name("jane doe")
        assert result["patient_id"] == "P2"


class TestFinishCall:
    @pytest.mark.asyncio
    async def test_syncs_and_deletes_session(self, processor, dashboard, store):
        await processor.start_call("CA1", PHONE)
        await processor.finish_call("CA1", "completed")
        dashboard.send_call.assert_awaited_once()
        payload = dashboard.send_call.call_args[0][0]
        assert payload["call_id"] == "CA1"
        assert await store.read("CA1") is None

    @pytest.mark.asyncio
    async def test_unknown_call_is_ignored(self, processor, dashboard):
        await processor.finish_call("CA_missing", "completed")
        dashboard.send_call.assert_not_awaited()
