"""Notification sink delivering alerts to webhook and chat-bot channels"""

import httpx
import asyncio
from typing import Any, Dict, Tuple
from bison_billing.config import settings
from bison_billing.domain.exceptions import NotificationError
from bison_billing.domain.models import Alert, NotifyChannel


def _webhook_request(channel: NotifyChannel, alert: Alert) -> Tuple[str, Dict[str, Any]]:
    url = channel.config.get("url")
    if not url:
        raise NotificationError("webhook url not configured")
    return url, {
        "type": alert.type,
        "severity": alert.severity,
        "target": alert.target,
        "message": alert.message,
        "timestamp": alert.timestamp.isoformat(),
    }


def _chatbot_request(channel: NotifyChannel, alert: Alert) -> Tuple[str, Dict[str, Any]]:
    url = channel.config.get("webhook")
    if not url:
        raise NotificationError(f"{channel.type} webhook not configured")
    return url, {
        "msgtype": "text",
        "text": {"content": f"[{alert.severity}] {alert.type}\n{alert.message}"},
    }


# DingTalk and WeCom robots accept the same text message body
REQUEST_BUILDERS = {
    "webhook": _webhook_request,
    "dingtalk": _chatbot_request,
    "wechat": _chatbot_request,
}


class NotificationSink:
    """Sends one alert through one channel, with in-call retries"""

    def __init__(
        self,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
    ):
        self.timeout = timeout or settings.notification_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.notification_max_retries
        self.backoff_base = backoff_base if backoff_base is not None else settings.notification_backoff_base

    async def send(self, channel: NotifyChannel, alert: Alert) -> None:
        """
        Deliver an alert through a channel.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base (base * 2^(attempt-1))
        - Retries on 5xx errors and network failures, 4xx fails immediately

        Raises:
            NotificationError: Unknown channel type, missing config, or delivery failure
        """
        builder = REQUEST_BUILDERS.get(channel.type)
        if builder is None:
            raise NotificationError(f"unknown channel type: {channel.type}")
        url, payload = builder(channel, alert)

        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            while True:
                try:
                    response = await client.post(url, json=payload)
                    response.raise_for_status()
                    return  # Success

                except httpx.HTTPStatusError as e:
                    if e.response.status_code < 500:
                        raise NotificationError(
                            f"{channel.type} returned {e.response.status_code}: {e.response.text}"
                        ) from e
                    error = e
                except httpx.RequestError as e:
                    error = e

                attempt += 1
                if attempt >= self.max_retries:
                    raise NotificationError(f"{channel.type} delivery failed after {attempt} attempts: {error}") from error

                backoff = self.backoff_base * (2 ** (attempt - 1))
                await asyncio.sleep(backoff)
