from clinicline import transcript
from clinicline.session import CallSession
from clinicline.states import State


def session_with_log():
    s = CallSession(call_sid="CA1", phone_number="+61412345678")
    s.start_time = 1000.0
    s.transcript_log = [
        {"role": "agent", "content": "Thanks for calling.", "state": "initial", "timestamp": 1000.0},
        {"role": "caller", "content": "I'd like to book", "state": "initial", "timestamp": 1003.2},
        {"role": "tool", "name": "classify_intent", "result": {"action": "book"}, "state": "initial", "timestamp": 1004.0},
        {"role": "caller", "state": "soft_booking", "timestamp": 1010.0},
    ]
    return s


def test_record_tags_state_and_time():
    s = CallSession(call_sid="CA1")
    s.state = State.MANUAL_SEARCH
    transcript.record(s, "caller", "Jane Doe")
    entry = s.transcript_log[0]
    assert entry["role"] == "caller"
    assert entry["content"] == "Jane Doe"
    assert entry["state"] == "manual_search"
    assert entry["timestamp"] > 0


def test_record_tool():
    s = CallSession(call_sid="CA1")
    transcript.record_tool(s, "offer_slots", {"status": "offered"})
    assert s.transcript_log[0]["name"] == "offer_slots"
    assert "content" not in s.transcript_log[0]


def test_plain_text():
    text = transcript.to_plain_text(session_with_log().transcript_log)
    assert text == "Agent: Thanks for calling.\nCaller: I'd like to book\n[Tool: classify_intent]"


def test_spoken_turns_skip_tools_and_silence():
    turns = transcript.spoken_turns(session_with_log().transcript_log)
    assert turns == [
        {"role": "agent", "content": "Thanks for calling."},
        {"role": "caller", "content": "I'd like to book"},
    ]


def test_timestamped_dump_offsets():
    s = session_with_log()
    s.state = State.COMPLETED
    dump = transcript.to_timestamped_dump(s, end_time=1030.0)
    assert dump["final_state"] == "completed"
    assert [e["t"] for e in dump["entries"]] == [0.0, 3.2, 4.0, 10.0]
    assert "timestamp" not in dump["entries"][0]
    assert dump["duration_s"] == 30.0
