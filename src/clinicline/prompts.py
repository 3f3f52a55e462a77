"""Spoken lines, one per state / situation.

Responses are fixed scripts; nothing here is generated.  ``say`` fills the
placeholders and falls back to the generic re-prompt for an unknown key.
"""

from clinicline.states import State

SCRIPTS = {
    # Opening and intent
    "greeting": "Thanks for calling {clinic}. Would you like to book, reschedule or cancel an appointment?",
    "intent_reprompt": "Sorry, I didn't quite catch that. Would you like to book, reschedule or cancel an appointment?",
    "intent_menu": (
        "I can book a new appointment, move an existing one, or cancel one for you. "
        "Just say book, reschedule or cancel."
    ),
    "escalate": "No problem. I've let the team know and someone will call you back shortly. Thanks for calling {clinic}.",

    # Identity
    "verify_identity": "I can help with that. Am I speaking with {name}?",
    "verify_reprompt": "Sorry, just to check, am I speaking with {name}? A yes or no is fine.",
    "which_patient": "I can see a few people on this number. Is this for {names}, or someone else?",
    "which_patient_reprompt": "Sorry, who am I speaking with? Is it {names}, or someone else?",
    "ask_name": "No worries! What name is the appointment under so I can find it for you?",
    "ask_name_reprompt": "I'm sorry, I didn't catch that. Could you please tell me the full name the appointment is under?",
    "search_not_found": "No worries! Let's find you a time that works. When would you like to come in?",

    # Time collection and offers
    "ask_time": "Thanks {first_name}. What day and time would suit you?",
    "ask_time_anon": "When would you like to come in?",
    "ask_time_reprompt": "Sorry, which day works best for you? For example, tomorrow morning or Thursday afternoon.",
    "offer_two": "I have {one}, or {two}. Would you like option one or option two?",
    "offer_one": "I have {one}. Would that work for you?",
    "offer_two_reprompt": "Sorry, was that option one, {one}, or option two, {two}?",
    "offer_one_reprompt": "Sorry, does {one} work for you? Yes or no is fine.",
    "no_slots": "I don't have anything free {window}. Is there another day that suits?",
    "stale_slot": (
        "Sorry, someone has just taken that time. Let's start again. "
        "Would you like to book, reschedule or cancel an appointment?"
    ),
    "stale_slot_again": "Sorry, that time has just been taken as well.",
    "commit_failed": "Sorry, I couldn't lock that time in just now. Would you like me to try again?",

    # Outcomes
    "booking_confirmed": "You're all set for {when}. I'll text you the details. Is there anything else I can help with?",
    "reschedule_confirmed": "Done, your appointment is now {when}. I'll text you the details. Is there anything else I can help with?",
    "cancel_confirm": "I can see your appointment on {when}. Would you like me to cancel it?",
    "cancel_confirm_reprompt": "Sorry, should I cancel your appointment on {when}? Yes or no is fine.",
    "cancel_done": "That's cancelled for you. Is there anything else I can help with?",
    "cancel_kept": "No problem, I'll leave it as it is.",
    "cancel_failed": "Sorry, I couldn't cancel that just now. Would you like me to try again?",
    "nothing_to_cancel": "I couldn't find an upcoming appointment under that name, so there's nothing to cancel.",
    "no_upcoming_reschedule": "I couldn't find an upcoming appointment to move, so let's book a new one. When would you like to come in?",

    # Guards and exits
    "finish_first": "Before you go, let me just finish getting this sorted for you.",
    "safety_valve": (
        "I'm having a bit of trouble with my system, so I've just sent a direct booking link to "
        "your phone to save you time. Just tap the link and you're all set! Have a great day!"
    ),
    "availability_error": "Sorry, I can't reach our booking system right now.",
    "closing": "Thanks for calling {clinic}. Have a great day!",
    "system_error": "Sorry, something went wrong on our end. Please call us back in a moment.",
}

# Line re-spoken when a turn produces nothing new to say.
STATE_REPROMPTS = {
    State.INITIAL: "intent_reprompt",
    State.VERIFYING: "verify_reprompt",
    State.MANUAL_SEARCH: "ask_name_reprompt",
    State.SOFT_BOOKING: "ask_time_reprompt",
    State.OFFERING_SLOTS: "ask_time_reprompt",
    State.CONFIRMING_CANCEL: "cancel_confirm_reprompt",
}


def say(key: str, **values) -> str:
    template = SCRIPTS.get(key, SCRIPTS["intent_reprompt"])
    return template.format(**values)

