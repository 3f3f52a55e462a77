import logging
import re
from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import httpx

from clinicline.circuit_breaker import CircuitBreaker
from clinicline.session import Appointment, Slot
from clinicline.time_window import DEFAULT_TZ, TimeWindow, parse_iso

logger = logging.getLogger(__name__)

# Cliniko rejects available_times ranges longer than a week.
MAX_RANGE_DAYS = 7


class SchedulingError(Exception):
    """The scheduling system could not answer or refused a change."""


def _digits(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def _full_name(patient: dict) -> str:
    return f"{patient.get('first_name', '')} {patient.get('last_name', '')}".strip()


def _split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.strip().split()
    if not parts:
        return "Unknown", "Caller"
    if len(parts) == 1:
        return parts[0], ""
    return " ".join(parts[:-1]), parts[-1]


class ClinikoClient:
    """HTTP client for the Cliniko practice-management API.

    Every call goes through one circuit breaker: after 3 consecutive
    failures calls are refused for 60s.  Failures raise ``SchedulingError``;
    the booking coordinator and the turn processor turn them into result
    dicts the state machine understands.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        business_id: str,
        practitioner_id: str,
        tz: str = DEFAULT_TZ,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.business_id = business_id
        self.practitioner_id = practitioner_id
        self.zone = ZoneInfo(tz)
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="Cliniko",
        )
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(api_key, ""),
                headers={"Accept": "application/json", "User-Agent": "clinicline"},
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, label: str, **kwargs) -> dict:
        if not self._circuit.should_try():
            logger.warning("Cliniko circuit breaker open, refusing %s", label)
            raise SchedulingError("scheduling system unavailable")
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, e)
            raise SchedulingError(f"{label} failed: {e}") from e
        self._circuit.record_success()
        if not resp.content:
            return {}
        return resp.json()

    # ── Patients ──

    async def find_patients_by_phone(self, phone: str) -> list[dict]:
        """Every patient whose stored number matches the caller id.

        Family members often share one mobile, so more than one patient can
        come back; the caller picks which of them they are.
        """
        digits = _digits(phone)
        if len(digits) < 8:
            return []
        data = await self._request(
            "GET", "/patients", "find_patients_by_phone",
            params={"q": digits[-9:], "per_page": 50},
        )
        matches = []
        for patient in data.get("patients", []):
            for number in patient.get("phone_numbers") or []:
                stored = _digits(number.get("number", ""))
                if stored and (digits.endswith(stored) or stored.endswith(digits[-9:])):
                    matches.append({"id": str(patient["id"]), "name": _full_name(patient)})
                    break
        return matches

    async def find_patients_by_name(self, name: str) -> list[dict]:
        data = await self._request(
            "GET", "/patients", "find_patients_by_name",
            params={"q": name.strip(), "per_page": 10},
        )
        return [
            {"id": str(p["id"]), "name": _full_name(p)}
            for p in data.get("patients", [])
        ]

    async def create_patient(self, full_name: str, phone: str) -> str:
        first, last = _split_name(full_name)
        data = await self._request(
            "POST", "/patients", "create_patient",
            json={
                "first_name": first,
                "last_name": last,
                "patient_phone_numbers": [{"number": phone, "phone_type": "Mobile"}],
            },
        )
        return str(data["id"])

    # ── Appointments ──

    async def find_upcoming_appointment(self, patient_id: str, now) -> Optional[Appointment]:
        """Soonest non-cancelled appointment for the patient starting after ``now``."""
        data = await self._request(
            "GET", "/individual_appointments", "find_upcoming_appointment",
            params={
                "q[]": [f"patient_id:={patient_id}", f"starts_at:>{now.isoformat()}"],
                "sort": "starts_at",
                "per_page": 50,
            },
        )
        upcoming = [
            a for a in data.get("individual_appointments", [])
            if not a.get("cancelled_at") and parse_iso(a["starts_at"]) > now
        ]
        if not upcoming:
            return None
        first = min(upcoming, key=lambda a: parse_iso(a["starts_at"]))
        return Appointment(
            appointment_id=str(first["id"]),
            starts_at=first["starts_at"],
            practitioner_id=str(first.get("practitioner_id", "")),
            appointment_type_id=str(first.get("appointment_type_id", "")),
        )

    async def get_availability(self, window: TimeWindow, appointment_type_id: str) -> list[Slot]:
        """Free slots for the appointment type starting inside the window.

        Cliniko reads ``from`` and ``to`` as dates in the business's own
        timezone, so the window bounds are converted before taking the date.
        """
        path = (
            f"/businesses/{self.business_id}/practitioners/{self.practitioner_id}"
            f"/appointment_types/{appointment_type_id}/available_times"
        )
        slots = []
        day = window.start.astimezone(self.zone).date()
        last = window.end.astimezone(self.zone).date()
        while day <= last:
            to = min(day + timedelta(days=MAX_RANGE_DAYS - 1), last)
            data = await self._request(
                "GET", path, "get_availability",
                params={"from": day.isoformat(), "to": to.isoformat(), "per_page": 100},
            )
            for item in data.get("available_times", []):
                start = item["appointment_start"]
                if window.contains(parse_iso(start)):
                    slots.append(Slot(
                        slot_id=f"{self.practitioner_id}:{appointment_type_id}:{start}",
                        start=start,
                        practitioner_id=self.practitioner_id,
                        appointment_type_id=appointment_type_id,
                    ))
            day = to + timedelta(days=1)
        return slots

    async def create_appointment(self, patient_id: str, slot: Slot, notes: str = "") -> dict:
        starts = parse_iso(slot.start)
        ends = starts + timedelta(minutes=slot.duration_minutes)
        data = await self._request(
            "POST", "/individual_appointments", "create_appointment",
            json={
                "business_id": self.business_id,
                "patient_id": patient_id,
                "practitioner_id": slot.practitioner_id or self.practitioner_id,
                "appointment_type_id": slot.appointment_type_id,
                "starts_at": slot.start,
                "ends_at": ends.isoformat(),
                "notes": notes or None,
            },
        )
        return {"id": str(data["id"]), "starts_at": data.get("starts_at", slot.start)}

    async def reschedule_appointment(self, appointment_id: str, slot: Slot) -> dict:
        starts = parse_iso(slot.start)
        ends = starts + timedelta(minutes=slot.duration_minutes)
        data = await self._request(
            "PATCH", f"/individual_appointments/{appointment_id}", "reschedule_appointment",
            json={"starts_at": slot.start, "ends_at": ends.isoformat()},
        )
        return {"id": str(data.get("id", appointment_id)), "starts_at": data.get("starts_at", slot.start)}

    async def cancel_appointment(self, appointment_id: str, reason: str = "") -> None:
        await self._request(
            "PATCH", f"/individual_appointments/{appointment_id}/cancel", "cancel_appointment",
            json={"cancellation_reason": 50, "cancellation_note": reason or "Cancelled by phone"},
        )
