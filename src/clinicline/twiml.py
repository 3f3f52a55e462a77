"""TwiML rendering for turn responses."""

from urllib.parse import urlencode
from xml.sax.saxutils import escape, quoteattr

VOICE = "Polly.Olivia-Neural"
LANGUAGE = "en-AU"
SPEECH_HINTS = (
    "book,reschedule,cancel,appointment,yes,no,option one,option two,first,second,"
    "Monday,Tuesday,Wednesday,Thursday,Friday,Saturday,Sunday,morning,afternoon,tomorrow"
)


def _say(text: str) -> str:
    return f'<Say voice="{VOICE}" language="{LANGUAGE}">{escape(text)}</Say>'


def turn_url(base_url: str, state: str, seq: int) -> str:
    return f"{base_url}/voice/turn?{urlencode({'state': state, 'seq': seq})}"


def gather(text: str, action_url: str, timeout: int = 6) -> str:
    """Speak, then listen for speech or keypad input posted to ``action_url``.

    An empty result still posts back so silence counts as a turn.
    """
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Response>"
        f'<Gather input="speech dtmf" action={quoteattr(action_url)} method="POST" '
        f'language="{LANGUAGE}" speechTimeout="auto" timeout="{timeout}" numDigits="1" '
        f'actionOnEmptyResult="true" hints="{SPEECH_HINTS}">'
        f"{_say(text)}"
        "</Gather>"
        "</Response>"
    )


def hangup(text: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<Response>"
        f"{_say(text)}"
        "<Hangup/>"
        "</Response>"
    )


def render(response, base_url: str = "") -> str:
    """TwiML for a processor TurnResponse."""
    if response.end_call or not response.keep_listening:
        return hangup(response.say)
    return gather(response.say, turn_url(base_url, response.state, response.seq))
