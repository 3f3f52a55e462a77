"""Per-call transcript log.

Entries are plain dicts kept on the session so they survive between webhook
turns: ``{"role", "state", "timestamp", ...}`` with ``content`` for spoken
lines and ``name`` / ``result`` for tool calls.
"""

import time

from clinicline.session import CallSession

SPEAKER_LABELS = {"caller": "Caller", "agent": "Agent"}


def record(session: CallSession, role: str, content: str = "", **extra):
    entry = {"role": role, "state": session.state.value, "timestamp": time.time()}
    if content:
        entry["content"] = content
    entry.update(extra)
    session.transcript_log.append(entry)


def record_tool(session: CallSession, name: str, result: dict):
    record(session, "tool", name=name, result=result)


def to_plain_text(log: list[dict]) -> str:
    """One line per entry: "Caller: ...", "Agent: ...", "[Tool: name]"."""
    lines = []
    for entry in log:
        role = entry.get("role", "")
        if role in SPEAKER_LABELS and entry.get("content"):
            lines.append(f"{SPEAKER_LABELS[role]}: {entry['content']}")
        elif role == "tool":
            lines.append(f"[Tool: {entry.get('name', '?')}]")
    return "\n".join(lines)


def spoken_turns(log: list[dict]) -> list[dict]:
    return [
        {"role": e["role"], "content": e["content"]}
        for e in log
        if e.get("role") in SPEAKER_LABELS and e.get("content")
    ]


def to_timestamped_dump(session: CallSession, end_time: float = 0.0) -> dict:
    """Transcript with offsets in seconds from call start, for log retrieval."""
    log = session.transcript_log
    base = session.start_time
    if base <= 0 and log:
        base = log[0].get("timestamp", 0.0)

    entries = []
    for entry in log:
        if "timestamp" not in entry:
            continue
        item = {k: v for k, v in entry.items() if k != "timestamp"}
        item["t"] = round(entry["timestamp"] - base, 1)
        entries.append(item)

    dump = {
        "call_sid": session.call_sid,
        "phone": session.phone_number,
        "final_state": session.state.value,
        "entries": entries,
    }
    if end_time and session.start_time > 0:
        dump["duration_s"] = round(end_time - session.start_time, 1)
    return dump
