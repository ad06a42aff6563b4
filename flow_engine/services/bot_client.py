"""Client for the WeWork bot command API."""

from typing import Any, Dict, Optional

import httpx

from ..core.exceptions import ConfigurationError, ExternalServiceError
from ..core.logging import get_logger

logger = get_logger(__name__)


class BotApiClient:
    """Delivers messages and robot commands through the bot command API.

    Endpoints used:
        POST {base}/messages/send
        POST {base}/commands
        GET  {base}/commands/{command_id}
    """

    service_name = "bot_api"

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.token = token
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def send_message(
        self,
        robot_id: Optional[str],
        to_name: Optional[str],
        content: str,
        message_type: int = 1,
    ) -> Dict[str, Any]:
        """Send a chat message through the robot to a contact or group."""
        payload = {
            "robotId": robot_id,
            "toName": to_name,
            "content": content,
            "messageType": message_type,
        }
        return await self._request("POST", "/messages/send", json=payload)

    async def send_command(self, robot_id: Optional[str], command_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a robot command and return the API answer, which carries ``commandId``."""
        body = {"robotId": robot_id, "commandType": command_type, "payload": payload}
        return await self._request("POST", "/commands", json=body)

    async def get_command_status(self, command_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/commands/{command_id}")

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.configured:
            raise ConfigurationError("Bot API is not configured", config_key="bot_api_base_url")

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        url = f"{self.base_url}{path}"
        logger.debug(f"Bot API {method} {url}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(f"Bot API timed out: {e}", service=self.service_name)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Bot API unreachable: {e}", service=self.service_name)

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Bot API returned {response.status_code}: {response.text[:200]}",
                service=self.service_name,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}
