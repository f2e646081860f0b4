# provisioning/core/sms.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from provisioning.core.config import Settings
from provisioning.core.errors import DeliveryError

logger = logging.getLogger("provisioning")


class SmsSender:
    """
    SMS_PROVIDER=http posts {to, from, body} as JSON to SMS_GATEWAY_URL with a
    bearer SMS_API_KEY. SMS_PROVIDER=log writes the message to the log.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.settings = settings
        self.provider = (settings.sms_provider or "log").strip().lower()
        self._http_client = http_client
        self._timeout = timeout

    async def send_sms(self, *, to_number: str, body: str) -> None:
        to_number = (to_number or "").strip()
        if not to_number:
            raise DeliveryError("sms", "", "missing recipient")

        if self.provider != "http":
            logger.info("SMS (log mode) to=%s body=%s", to_number, body)
            return

        url = self.settings.sms_gateway_url
        if not url:
            raise DeliveryError("sms", to_number, "SMS_GATEWAY_URL is not set")

        payload = {"to": to_number, "body": body}
        if self.settings.sms_from:
            payload["from"] = self.settings.sms_from
        headers = {}
        if self.settings.sms_api_key:
            headers["Authorization"] = f"Bearer {self.settings.sms_api_key}"

        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("SMS gateway request failed to=%s error=%s", to_number, exc)
            raise DeliveryError("sms", to_number, "gateway unreachable") from exc

        if response.status_code >= 400:
            logger.error("SMS gateway HTTP error status=%s", response.status_code)
            raise DeliveryError("sms", to_number, f"gateway returned {response.status_code}")

        logger.info("SMS sent to=%s", to_number)
