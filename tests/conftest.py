from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from clinicline.session import Appointment, CallSession, Slot
from clinicline.state_machine import StateMachine

TZ = "Australia/Brisbane"

# Monday 2 March 2026, 9am clinic time
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=ZoneInfo(TZ))


def make_slot(start: str, type_id: str = "T1", speakable: str = "") -> Slot:
    return Slot(
        slot_id=f"P1:{type_id}:{start}",
        start=start,
        practitioner_id="P1",
        appointment_type_id=type_id,
        speakable=speakable,
    )


S1 = make_slot("2026-03-03T09:00:00+10:00", speakable="Tuesday the 3rd at 9 am")
S2 = make_slot("2026-03-03T10:30:00+10:00", speakable="Tuesday the 3rd at 10:30 am")

UPCOMING = Appointment(appointment_id="A100", starts_at="2026-03-05T14:00:00+10:00", practitioner_id="P1")


@pytest.fixture
def session():
    return CallSession(call_sid="CA_test_1", phone_number="+61412345678")


@pytest.fixture
def sm():
    return StateMachine(clinic_name="Harbour Physio", tz=TZ)


@pytest.fixture
def clock():
    return lambda: NOW
