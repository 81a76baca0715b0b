"""Best-effort push of commit outcomes to the user's Omi device."""

import logging

import httpx

logger = logging.getLogger(__name__)

OMI_API_URL = "https://api.omi.me"


class DeviceNotifier:
    """Sends outcome strings through the Omi integration notification API.

    Failures are logged and swallowed: a lost notification must never undo an
    action that already happened.
    """

    def __init__(self, app_id: str = "", app_secret: str = "", base_url: str = OMI_API_URL,
                 transport: httpx.AsyncBaseTransport = None, timeout: float = 10):
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.app_id and self.app_secret)

    async def notify(self, uid: str, message: str) -> bool:
        """Push a message to the device owned by uid.

        Returns:
            True if the notification API accepted it.
        """
        if not self.enabled:
            logger.debug(f"[NOTIFY] Not configured, skipping: {message[:80]}")
            return False
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/v2/integrations/{self.app_id}/notification",
                    params={"uid": uid, "message": message},
                    headers={"Authorization": f"Bearer {self.app_secret}"},
                )
            if resp.status_code >= 400:
                logger.error(f"[NOTIFY] Rejected ({resp.status_code}): {resp.text[:200]}")
                return False
            logger.info(f"[NOTIFY] Sent to {uid[:10]}...")
            return True
        except Exception as e:
            logger.error(f"[NOTIFY] Failed: {e}")
            return False
