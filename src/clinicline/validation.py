"""Utterance classification.

Pure, deterministic functions over the caller's recognised speech.  Nothing
here touches the session or any collaborator, so every rule can be pinned
down against literal strings in tests.
"""

import re
from dataclasses import dataclass
from typing import Optional


def match_any_keyword(text: str, keywords: set[str]) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf"\b{re.escape(kw)}\b", lower) for kw in keywords)


def _normalize(text: str) -> str:
    lower = text.lower().strip()
    lower = lower.replace("’", "'")
    return re.sub(r"\s+", " ", lower)


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "tbd",
    "{{name}}", "{{patient_name}}", "patient_name",
}

FILLER_WORDS = {
    "yes", "no", "yeah", "yep", "nope", "ok", "okay", "um", "uh", "umm",
    "hmm", "well", "hello", "hi", "sorry", "what", "pardon",
}

NON_NAME_WORDS = {
    "i", "don't", "dont", "know", "what", "you", "can", "could", "repeat",
    "again", "the", "appointment", "please", "sorry", "hello", "yes", "no",
    "not", "sure", "is", "was", "that", "this", "it", "my", "to",
}

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

WORD_TO_DIGIT = {
    "zero": "0", "oh": "0", "o": "0",
    "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}

# ── Denial / confirmation ──

DENIAL_PATTERNS = [
    re.compile(r"^no\b(?![-\s]+(problem|worries))"),
    re.compile(r"^(nope|nah)\b"),
    re.compile(r"^not\s+(me|him|her)\b"),
    re.compile(r"that'?s\s+not\s+me"),
    re.compile(r"this\s+(isn'?t|is\s+not)\s+me"),
    re.compile(r"\bi'?m\s+not\s+(?!sure\b)\w+"),
    re.compile(r"\bi\s+am\s+not\s+(?!sure\b)\w+"),
    re.compile(r"wrong\s+(person|name|number)"),
    re.compile(r"some(one|body)\s+else"),
    re.compile(r"different\s+person"),
    re.compile(r"^no[,.]?\s+(i'?m|this\s+is|my\s+name\s+is|it'?s|it\s+is)\s+"),
    re.compile(r"^actually[,.]?\s+(i'?m|this\s+is|my\s+name\s+is)\s+"),
]

CONFIRMATION_PATTERNS = [
    re.compile(r"^(yes|yeah|yep|yup|yea|correct|speaking|absolutely|sure)\b"),
    re.compile(r"^that'?s\s+(me|right|correct)\b"),
    re.compile(r"^it\s+is\b"),
    re.compile(r"^this\s+is\s+\w+"),
    re.compile(r"^(uh\s*-?\s*huh|mm\s*-?\s*hmm|mhm)\b"),
]

CORRECTED_NAME_PATTERN = re.compile(
    r"^(?:no|nope|actually)[,.]?\s+(?:i'?m|this\s+is|my\s+name\s+is|it'?s|it\s+is)\s+(.+)$"
)

NAME_PREFIX_PATTERN = re.compile(
    r"^(?:it'?s\s+under|it\s+is\s+under|under|the\s+name\s+is|my\s+name\s+is|"
    r"name'?s|it'?s|it\s+is|this\s+is|i'?m)\s+",
)


def is_denial(text: str) -> bool:
    lower = _normalize(text)
    if not lower:
        return False
    return any(p.search(lower) for p in DENIAL_PATTERNS)


def is_confirmation(text: str) -> bool:
    lower = _normalize(text)
    if not lower or is_denial(lower):
        return False
    return any(p.search(lower) for p in CONFIRMATION_PATTERNS)


def looks_like_name(text: str) -> bool:
    cleaned = text.strip()
    if cleaned.lower().rstrip(".!?") in FILLER_WORDS:
        return False
    if len(cleaned) < 3 or len(cleaned) > 50:
        return False
    words = cleaned.lower().split()
    if len(words) > 4 or any(w.strip(".") in NON_NAME_WORDS for w in words):
        return False
    return bool(re.match(r"^[A-Za-z][A-Za-z.\s'-]*[A-Za-z.]$", cleaned))


def strip_name_prefix(text: str) -> str:
    """Drop lead-ins like "my name is" or "it's under" from a spoken name."""
    cleaned = text.strip().rstrip(".!?")
    stripped = NAME_PREFIX_PATTERN.sub("", cleaned.lower(), count=1)
    if stripped == cleaned.lower():
        return cleaned
    return cleaned[len(cleaned) - len(stripped):].strip()


def extract_corrected_name(text: str) -> str:
    """Name carried by a corrective denial ("no, this is Jane Doe"), else ""."""
    lower = _normalize(text).rstrip(".!?")
    match = CORRECTED_NAME_PATTERN.match(lower)
    if not match:
        return ""
    start = len(lower) - len(match.group(1))
    candidate = text.strip().rstrip(".!?")[start:].strip()
    return candidate if looks_like_name(candidate) else ""


def validate_name(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    if re.match(r"^[\d+\-() ]{7,}$", cleaned):
        return ""
    if "{{" in cleaned or "}}" in cleaned:
        return ""
    return cleaned


def first_name(full_name: str) -> str:
    parts = full_name.strip().split()
    return parts[0] if parts else ""


def _name_tokens(name: str) -> list[str]:
    cleaned = re.sub(r"[.,!?;:'\"]", "", (name or "").lower())
    return cleaned.split()


def name_similarity(a: str, b: str) -> float:
    """Token overlap (Jaccard) of two names: 1.0 identical, 0.0 nothing shared."""
    tokens_a, tokens_b = _name_tokens(a), _name_tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    if tokens_a == tokens_b:
        return 1.0
    set_a, set_b = set(tokens_a), set(tokens_b)
    return len(set_a & set_b) / len(set_a | set_b)


def names_match(spoken: str, stored: str) -> bool:
    """Is ``stored`` the patient the caller named?

    "Roger Moore" against "Roger Smith" shares only a first name and is not a
    match; a middle name or initial on one side still is.
    """
    similarity = name_similarity(spoken, stored)
    if similarity < 0.5:
        return False
    len_a, len_b = len(_name_tokens(spoken)), len(_name_tokens(stored))
    return similarity >= 0.8 or min(len_a, len_b) / max(len_a, len_b) >= 0.6


def words_to_digits(text: str) -> str:
    """Convert number words and single digits to a digit string.

    Example: "one two" → "12"
    """
    tokens = re.findall(r"[a-zA-Z]+|\d", text.lower())
    digits = []
    for tok in tokens:
        if tok in WORD_TO_DIGIT:
            digits.append(WORD_TO_DIGIT[tok])
        elif tok.isdigit():
            digits.append(tok)
    return "".join(digits)


# ── Time preference ──

SOONEST_KEYWORDS = {
    "asap", "soonest", "earliest", "as soon as possible", "next available",
    "whenever", "any time", "anytime", "first available",
}
PART_OF_DAY = ("morning", "afternoon", "evening")
CLOCK_TIME = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\b\.?")


def find_weekday(text: str) -> str:
    lower = _normalize(text)
    for day in WEEKDAYS:
        if re.search(rf"\b{day}s?\b", lower):
            return day
    return ""


def day_phrase(text: str) -> str:
    """The day part of a preference: today, tomorrow, [next] weekday, next week."""
    lower = _normalize(text)
    weekday = find_weekday(lower)
    if re.search(r"\btoday\b|\bthis (morning|afternoon|evening)\b", lower):
        return "today"
    if re.search(r"\btomorrow\b", lower):
        return "tomorrow"
    if weekday:
        if re.search(rf"\bnext\s+{weekday}", lower):
            return f"next {weekday}"
        return weekday
    if re.search(r"\bnext week\b", lower):
        return "next week"
    return ""


def extract_time_preference(text: str) -> str:
    """Normalise the day / part-of-day phrase in an utterance, or "".

    "Could I come in Tuesday morning please" → "tuesday morning"
    """
    lower = _normalize(text)
    if not lower:
        return ""

    parts = []
    day = day_phrase(lower)
    if day:
        parts.append(day)

    for part in PART_OF_DAY:
        if re.search(rf"\b{part}\b", lower):
            parts.append(part)
            break

    clock = CLOCK_TIME.search(lower)
    if clock:
        hour, minute, meridiem = clock.group(1), clock.group(2), clock.group(3)
        parts.append(f"{int(hour)}:{minute or '00'} {meridiem}m")

    if parts:
        return " ".join(parts)
    if match_any_keyword(lower, SOONEST_KEYWORDS):
        return "soonest"
    return ""


# ── Slot choice ──

SLOT_OPTION = "option"
SLOT_REJECT = "reject"
SLOT_ALTERNATE_DAY = "alternate_day"
SLOT_UNKNOWN = "unknown"

EXPLICIT_OPTION = re.compile(r"\b(?:option|number|choice)\s+(one|two|1|2)\b")
ORDINAL_WORDS = {
    0: {"first", "1st", "former"},
    1: {"second", "2nd", "latter"},
}
# "the earlier one" picks an offered slot, "anything earlier" asks for another
COMPARATIVE_OPTION = re.compile(r"\b(earlier|earliest|later|latest)\s+(?:one|time|slot|option|appointment)\b")
COMPARATIVE_REQUEST = re.compile(r"\b(earlier|later|sooner)\b")
# a cardinal only counts when it is the whole answer
BARE_CARDINAL = re.compile(
    r"^(?:(?:yes|yeah|yep|ok|okay|um|uh)[,.]?\s+)?(?:the\s+)?(one|two|1|2)"
    r"(?:\s+one)?(?:[,.]?\s+(?:please|thanks|thank you))?[.!?]*$"
)
REJECTION_KEYWORDS = {
    "no", "nope", "neither", "none", "none of them", "neither of them",
    "different day", "another day", "other day", "different time",
    "another time", "something else", "doesn't work", "don't work",
    "not those", "nothing else",
}


@dataclass
class SlotChoice:
    kind: str = SLOT_UNKNOWN
    index: Optional[int] = None
    day: str = ""


def interpret_slot_choice(text: str, digits: str = "") -> SlotChoice:
    """Map the caller's answer to an offer of up to two slots.

    Ordinals win over rejection ("no, the second one" is option two); a day
    mention wins over a bare number ("have you got one on Thursday") and over
    a bare rejection ("no, how about Friday").  "Anything later?" asks for a
    different time, it does not pick the later slot.
    """
    if digits in ("1", "2"):
        return SlotChoice(SLOT_OPTION, int(digits) - 1)

    lower = _normalize(text)
    if not lower:
        return SlotChoice()

    explicit = EXPLICIT_OPTION.search(lower)
    if explicit:
        return SlotChoice(SLOT_OPTION, 0 if explicit.group(1) in ("one", "1") else 1)

    for index, words in ORDINAL_WORDS.items():
        if match_any_keyword(lower, words):
            return SlotChoice(SLOT_OPTION, index)

    comparative = COMPARATIVE_OPTION.search(lower)
    if comparative:
        return SlotChoice(SLOT_OPTION, 0 if comparative.group(1).startswith("earl") else 1)

    if day_phrase(lower):
        return SlotChoice(SLOT_ALTERNATE_DAY, day=extract_time_preference(lower))

    cardinal = BARE_CARDINAL.match(lower)
    if cardinal:
        return SlotChoice(SLOT_OPTION, 0 if cardinal.group(1) in ("one", "1") else 1)

    if COMPARATIVE_REQUEST.search(lower) or match_any_keyword(lower, REJECTION_KEYWORDS):
        return SlotChoice(SLOT_REJECT)

    return SlotChoice()


# ── Intent / conversation control ──

CANCEL_KEYWORDS = {"cancel", "cancellation", "cancel my", "call off"}
RESCHEDULE_KEYWORDS = {
    "reschedule", "re-schedule", "move my appointment", "change my appointment",
    "change the time", "move it", "push back", "different time for my",
}
ESCALATE_KEYWORDS = {
    "speak to someone", "speak to a person", "talk to someone", "talk to a person",
    "real person", "human", "receptionist", "operator", "front desk",
    "speak with someone", "talk to reception",
}
BOOK_KEYWORDS = {
    "book", "booking", "appointment", "schedule", "make an appointment",
    "come in", "see the doctor", "see someone", "consultation", "new patient",
    "check up", "checkup",
}
GOODBYE_KEYWORDS = {
    "goodbye", "bye", "good bye", "see ya", "see you", "that's all", "thats all",
    "that's it", "thats it", "nothing else", "no thanks", "no thank you",
    "i'm good", "im good", "that's everything", "hang up",
}
NEW_PATIENT_KEYWORDS = {"new patient", "first time", "never been", "first visit", "haven't been"}
RETURNING_PATIENT_KEYWORDS = {
    "been before", "existing patient", "returning", "regular", "seen before", "been there before",
}


def classify_intent(text: str) -> str:
    """Keyword intent fallback.

    Returns: book, reschedule, cancel, escalate, unknown
    """
    if match_any_keyword(text, CANCEL_KEYWORDS):
        return "cancel"
    if match_any_keyword(text, RESCHEDULE_KEYWORDS):
        return "reschedule"
    if match_any_keyword(text, ESCALATE_KEYWORDS):
        return "escalate"
    if match_any_keyword(text, BOOK_KEYWORDS):
        return "book"
    return "unknown"


def detect_goodbye(text: str) -> bool:
    return match_any_keyword(text, GOODBYE_KEYWORDS)


def detect_escalation(text: str) -> bool:
    return match_any_keyword(text, ESCALATE_KEYWORDS)


def detect_new_patient(text: str) -> Optional[bool]:
    """True for a new patient, False for a returning one, None if not said."""
    if match_any_keyword(text, NEW_PATIENT_KEYWORDS):
        return True
    if match_any_keyword(text, RETURNING_PATIENT_KEYWORDS):
        return False
    return None


@dataclass
class Utterance:
    text: str
    is_denial: bool = False
    is_confirmation: bool = False
    looks_like_name: bool = False
    day_of_week: str = ""
    slot_choice: SlotChoice = None
    time_preference: str = ""
    digits: str = ""


def classify(text: str, digits: str = "") -> Utterance:
    text = text or ""
    return Utterance(
        text=text,
        is_denial=is_denial(text),
        is_confirmation=is_confirmation(text),
        looks_like_name=looks_like_name(strip_name_prefix(text)),
        day_of_week=find_weekday(text),
        slot_choice=interpret_slot_choice(text, digits),
        time_preference=extract_time_preference(text),
        digits=digits,
    )
