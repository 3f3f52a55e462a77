import logging

import httpx

from clinicline.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

TWILIO_API = "https://api.twilio.com/2010-04-01"

TEMPLATES = {
    "book": "Your appointment at {clinic} has been confirmed for {when}. We look forward to seeing you!",
    "reschedule": "Your appointment at {clinic} has been rescheduled to {when}. See you then!",
    "cancel": "Your appointment at {clinic} has been cancelled. If this was a mistake, please call us back.",
    "handoff": "Sorry we couldn't finish your booking over the phone. You can book with {clinic} here: {link}",
    "handoff_no_link": "Sorry we couldn't finish your booking over the phone. {clinic} will call you back shortly.",
}


class MessagingError(Exception):
    """An SMS could not be handed to the provider."""


class TwilioMessenger:
    """Sends outbound SMS through the Twilio Messages REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        clinic_name: str = "the clinic",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.clinic_name = clinic_name
        self._circuit = CircuitBreaker(label="Twilio SMS")
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=TWILIO_API,
                auth=(account_sid, auth_token),
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def send_sms(self, to: str, body: str) -> str:
        """Send one message, returning the provider's message sid."""
        if not to:
            raise MessagingError("no destination number")
        if not self._circuit.should_try():
            logger.warning("Twilio circuit breaker open, not sending SMS")
            raise MessagingError("messaging unavailable")
        try:
            resp = await self._client.post(
                f"/Accounts/{self.account_sid}/Messages.json",
                data={"From": self.from_number, "To": to, "Body": body},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            self._circuit.record_failure()
            logger.error("send_sms failed: %s", e)
            raise MessagingError(str(e)) from e
        self._circuit.record_success()
        sid = resp.json().get("sid", "")
        logger.info("SMS %s sent", sid)
        return sid

    async def send_confirmation(self, phone: str, details: dict) -> str:
        """details: {"kind": book|reschedule|cancel, "when": spoken time}."""
        template = TEMPLATES.get(details.get("kind", "book"), TEMPLATES["book"])
        return await self.send_sms(phone, template.format(clinic=self.clinic_name, when=details.get("when", "")))

    async def send_handoff_link(self, phone: str, link: str) -> str:
        template = TEMPLATES["handoff"] if link else TEMPLATES["handoff_no_link"]
        return await self.send_sms(phone, template.format(clinic=self.clinic_name, link=link))
