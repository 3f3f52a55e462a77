from enum import Enum, IntEnum

IDENTITY_STATES = {"verifying", "manual_search", "searching"}
BOOKING_STATES = {"offering_slots", "soft_booking", "slot_selected", "confirming_cancel"}
TERMINAL_STATES = {"completed", "goodbye"}


class State(Enum):
    INITIAL = "initial"
    VERIFYING = "verifying"
    MANUAL_SEARCH = "manual_search"
    SEARCHING = "searching"
    SOFT_BOOKING = "soft_booking"
    OFFERING_SLOTS = "offering_slots"
    SLOT_SELECTED = "slot_selected"
    CONFIRMING_CANCEL = "confirming_cancel"
    SAFETY_VALVE = "safety_valve"
    COMPLETED = "completed"
    GOODBYE = "goodbye"

    @property
    def is_identity(self) -> bool:
        return self.value in IDENTITY_STATES

    @property
    def is_booking(self) -> bool:
        return self.value in BOOKING_STATES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATES


class Objective(Enum):
    BOOK = "book"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"


class RecoveryLevel(IntEnum):
    DIRECT_MATCH = 1
    IDENTITY_PIVOT = 2
    SEARCH_FALLBACK = 3
    SAFETY_VALVE = 4
