from __future__ import annotations

import logging
from typing import Any

import httpx

from relay.models import CancelRequest, CancelResponse, ResultReport, UserMessage

logger = logging.getLogger(__name__)

USER_AGENT = "relay-daemon/0.1.0"


class AgentClient:
    """HTTP client for the agent service.

    Every failure to reach the agent, or a non-2xx answer, surfaces as
    ``ConnectionError`` with a message fit to show the user.
    """

    def __init__(
        self,
        api_endpoint: str,
        cancel_endpoint: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_endpoint = api_endpoint
        self.cancel_endpoint = cancel_endpoint
        self._client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT, **(headers or {})},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, url: str, body: dict) -> httpx.Response:
        try:
            resp = await self._client.post(url, json=body)
        except httpx.ConnectError:
            raise ConnectionError(f"Cannot connect to agent at {url}. Is the agent service running?")
        except httpx.TimeoutException:
            raise ConnectionError(f"Agent at {url} did not respond in time")
        except httpx.HTTPError as e:
            raise ConnectionError(f"Agent request failed: {e}")
        if resp.status_code < 200 or resp.status_code >= 300:
            detail = resp.text[:200] if resp.text else f"HTTP {resp.status_code}"
            raise ConnectionError(f"Agent returned {resp.status_code}: {detail}")
        return resp

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return resp.text

    async def send_message(self, message: UserMessage) -> Any:
        """POST a user message; returns the decoded immediate answer."""
        resp = await self._post(self.api_endpoint, message.model_dump())
        logger.info("User message delivered to agent (HTTP %d)", resp.status_code)
        return self._decode(resp)

    async def send_results(self, report: ResultReport) -> None:
        await self._post(self.api_endpoint, report.model_dump())
        logger.info("Sent %d command results to agent", len(report.command_results))

    async def cancel(self, request: CancelRequest) -> CancelResponse:
        resp = await self._post(self.cancel_endpoint, request.model_dump(exclude_none=True))
        data = self._decode(resp)
        if not isinstance(data, dict):
            data = {}
        return CancelResponse(
            status=data.get("status") or "ok",
            cancelled=bool(data.get("cancelled")),
            task_id=data.get("task_id") or request.task_id,
            chat_id=data.get("chat_id") or request.chat_id,
        )
