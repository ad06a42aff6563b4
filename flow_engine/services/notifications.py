"""Outbound notifications: SMS through an HTTP gateway, email through SMTP."""

from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import aiosmtplib
import httpx

from ..core.exceptions import ConfigurationError, ExternalServiceError
from ..core.logging import get_logger

logger = get_logger(__name__)


class NotificationGateway:
    """Sends SMS and email notifications on behalf of flow nodes."""

    def __init__(
        self,
        sms_gateway_url: Optional[str] = None,
        sms_gateway_key: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_sender: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.sms_gateway_url = sms_gateway_url
        self.sms_gateway_key = sms_gateway_key
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_sender = smtp_sender or smtp_user
        self.timeout = timeout
        self._transport = transport

    async def send_sms(self, phone: str, content: str, sign_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Post one SMS to the gateway.

        Raises:
            ConfigurationError: If no gateway is configured
            ExternalServiceError: If the gateway rejects the request or is unreachable
        """
        if not self.sms_gateway_url:
            raise ConfigurationError("SMS gateway is not configured", config_key="sms_gateway_url")

        payload = {"phone": phone, "content": content}
        if sign_name:
            payload["signName"] = sign_name
        headers = {"X-Api-Key": self.sms_gateway_key} if self.sms_gateway_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.sms_gateway_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"SMS gateway unreachable: {e}", service="sms")

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"SMS gateway returned {response.status_code}",
                service="sms",
                status_code=response.status_code,
            )

        logger.info(f"SMS sent to {phone}")
        return {"channel": "sms", "sent": True, "phone": phone, "statusCode": response.status_code}

    async def send_email(self, recipients: List[str], subject: str, body: str, html: bool = False) -> Dict[str, Any]:
        """Send one email to ``recipients`` through the configured SMTP server."""
        if not self.smtp_host:
            raise ConfigurationError("SMTP server is not configured", config_key="smtp_host")
        if not recipients:
            raise ExternalServiceError("Email has no recipients", service="email", recoverable=False)

        if html:
            message = MIMEMultipart("alternative")
            message.attach(MIMEText(body, "plain", "utf-8"))
            message.attach(MIMEText(body, "html", "utf-8"))
        else:
            message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = self.smtp_sender or ""
        message["To"] = ", ".join(recipients)

        try:
            await aiosmtplib.send(
                message,
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.smtp_user,
                password=self.smtp_password,
                use_tls=self.smtp_port == 465,
                start_tls=self.smtp_port == 587,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as e:
            raise ExternalServiceError(f"SMTP send failed: {e}", service="email")
        except OSError as e:
            raise ExternalServiceError(f"SMTP server unreachable: {e}", service="email")

        logger.info(f"Email '{subject}' sent to {len(recipients)} recipient(s)")
        return {"channel": "email", "sent": True, "recipients": recipients, "subject": subject}
