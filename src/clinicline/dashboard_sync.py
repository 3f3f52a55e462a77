import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)


class DashboardClient:
    """HTTP client for operator alerts and call records on the clinic dashboard.

    Uses separate URL env vars per endpoint and retries once with a 2-second
    backoff on failure.  Never raises: failures come back as
    ``{"success": False, "error": ...}``.
    """

    def __init__(
        self,
        *,
        calls_url: str,
        alerts_url: str,
        webhook_secret: str,
        timeout: float = 15.0,
        retry_delay: float = 2.0,
    ):
        self.calls_url = calls_url
        self.alerts_url = alerts_url
        self.secret = webhook_secret
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Webhook-Secret": self.secret,
        }

    async def _post_with_retry(self, url: str, payload: dict, label: str) -> dict:
        if not url:
            logger.warning("%s skipped: no URL configured", label)
            return {"success": False, "error": "not configured"}
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                    return resp.json() if resp.content else {"success": True}
            except (httpx.HTTPError, ValueError) as e:
                if attempt == 0:
                    logger.warning("%s failed (attempt 1), retrying in %.0fs: %s", label, self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("%s failed after retry: %s", label, e)
                    return {"success": False, "error": str(e)}
        return {"success": False, "error": "unreachable"}

    async def send_alert(self, payload: dict) -> dict:
        """Raise an operator alert (hand-off, booking failure, callback request)."""
        return await self._post_with_retry(self.alerts_url, payload, "Dashboard alert")

    async def send_call(self, payload: dict) -> dict:
        """Send the end-of-call record."""
        return await self._post_with_retry(self.calls_url, payload, "Dashboard call sync")
