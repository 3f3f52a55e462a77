import json
import logging
from unittest.mock import AsyncMock

import pytest

from clinicline.post_call import build_call_payload, chunk_transcript_dump, derive_outcome, handle_call_ended
from clinicline.session import CallSession
from clinicline.states import Objective, RecoveryLevel, State

from conftest import S2


@pytest.fixture
def booked_session():
    """A session that went through a full happy-path booking."""
    s = CallSession(call_sid="CA_test_123", phone_number="+61412345678")
    s.start_time = 1000.0
    s.state = State.GOODBYE
    s.locked_objective = Objective.BOOK
    s.identity.matched_name = "Jane Doe"
    s.identity.verified = True
    s.collected["intent"] = "book"
    s.appointment_created = True
    s.booked_appointment_id = "A900"
    s.booked_slot = S2
    s.turn_count = 5
    s.transcript_log = [
        {"role": "agent", "content": "Thanks for calling Harbour Physio.", "timestamp": 1000.0, "state": "initial"},
        {"role": "caller", "content": "I'd like to book.", "timestamp": 1002.0, "state": "initial"},
        {"role": "tool", "name": "commit_slot", "result": {"status": "booked"}, "timestamp": 1010.0, "state": "slot_selected"},
        {"role": "agent", "content": "You're all set.", "timestamp": 1012.0, "state": "completed"},
    ]
    return s


class TestDeriveOutcome:
    def test_booked(self, booked_session):
        assert derive_outcome(booked_session) == "booked"

    def test_rescheduled(self):
        s = CallSession(call_sid="CA1")
        s.reschedule_completed = True
        assert derive_outcome(s) == "rescheduled"

    def test_nothing_to_cancel(self):
        s = CallSession(call_sid="CA1")
        s.cancel_completed = True
        s.collected["outcome"] = "nothing_to_cancel"
        assert derive_outcome(s) == "nothing_to_cancel"

    def test_handed_off(self):
        s = CallSession(call_sid="CA1")
        s.recovery_level = RecoveryLevel.SAFETY_VALVE
        assert derive_outcome(s) == "handed_off"

    def test_callback_requested(self):
        s = CallSession(call_sid="CA1")
        s.state = State.GOODBYE
        s.collected["intent"] = "escalate"
        assert derive_outcome(s) == "callback_requested"

    def test_hangup(self):
        assert derive_outcome(CallSession(call_sid="CA1")) == "caller_hangup"


class TestBuildCallPayload:
    def test_payload_fields(self, booked_session):
        payload = build_call_payload(booked_session, 1045.0)
        assert payload["call_id"] == "CA_test_123"
        assert payload["customer_name"] == "Jane Doe"
        assert payload["duration_seconds"] == 45
        assert payload["outcome"] == "booked"
        assert payload["appointment_id"] == "A900"
        assert payload["scheduled_at"] == S2.start
        assert payload["started_at"].startswith("1970-01-01T00:16:40")
        assert "[Tool: commit_slot]" in payload["call_transcript"]
        assert len(payload["transcript_object"]) == 3

    def test_unknown_phone(self):
        payload = build_call_payload(CallSession(call_sid="CA1"), 1000.0)
        assert payload["phone_number"] == "unknown"
        assert payload["duration_seconds"] == 0


class TestChunkTranscriptDump:
    def test_small_dump_is_one_line(self):
        lines = chunk_transcript_dump({"call_sid": "CA1", "entries": [{"t": 0, "role": "agent"}]})
        assert len(lines) == 1
        assert lines[0].startswith("TRANSCRIPT_DUMP|1/1|")
        assert json.loads(lines[0].split("|", 2)[2])["call_sid"] == "CA1"

    def test_large_dump_is_split_under_limit(self):
        entries = [{"t": i, "role": "caller", "content": "x" * 200} for i in range(40)]
        lines = chunk_transcript_dump({"call_sid": "CA1", "entries": entries}, max_bytes=1000)
        assert len(lines) > 1
        assert lines[-1].startswith(f"TRANSCRIPT_DUMP|{len(lines)}/{len(lines)}|")
        restored = [e for line in lines for e in json.loads(line.split("|", 2)[2])["entries"]]
        assert restored == entries
        for line in lines:
            assert len(line.split("|", 2)[2].encode()) <= 1000


class TestHandleCallEnded:
    @pytest.mark.asyncio
    async def test_syncs_call_and_logs_dump(self, booked_session, caplog):
        dashboard = AsyncMock()
        dashboard.send_call.return_value = {"success": True}
        with caplog.at_level(logging.INFO, logger="clinicline.post_call"):
            await handle_call_ended(booked_session, dashboard, end_time=1045.0)
        dashboard.send_call.assert_awaited_once()
        assert dashboard.send_call.call_args[0][0]["outcome"] == "booked"
        assert any(r.getMessage().startswith("TRANSCRIPT_DUMP|1/1|") for r in caplog.records)

    @pytest.mark.asyncio
    async def test_without_dashboard(self, booked_session):
        await handle_call_ended(booked_session, None, end_time=1045.0)
