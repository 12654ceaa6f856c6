import logging
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, event_type: str, payload: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class LogNotifier:
    """Used when no delivery endpoint is configured."""

    async def send(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("NOTIFY %s job=%s status=%s summary=%s",
                    event_type, payload.get("job_id"), payload.get("status"), payload.get("summary"))

    async def close(self) -> None:
        pass


class WebhookNotifier:
    """Posts terminal-state notifications to an external delivery service."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, event_type: str, payload: dict[str, Any]) -> None:
        resp = await self.client.post(self.url, json={"event_type": event_type, **payload})
        resp.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()


def build_notifier(url: Optional[str], timeout: float = 5.0) -> Notifier:
    if url:
        return WebhookNotifier(url, timeout=timeout)
    return LogNotifier()
