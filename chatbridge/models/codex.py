"""Completion client for the Codex responses endpoint. Streams SSE deltas as StreamEvents."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Sequence

import httpx

from chatbridge.core.errors import CompletionError
from chatbridge.core.events import StreamCompleted, StreamEvent, Turn
from chatbridge.models.credentials import CodexCredentials, extract_error_detail, parse_json
from chatbridge.models.streaming import decode_payload, iter_stream_events

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://chatgpt.com/backend-api/codex/responses"
DEFAULT_SYSTEM_PROMPT = (
    "You are a concise and helpful assistant. Continue the conversation naturally using the context."
)


def build_request_body(
    turns: Sequence[Turn],
    *,
    model: str,
    instructions: str,
    web_search: bool = False,
) -> dict:
    body = {
        "model": model,
        "instructions": instructions,
        "input": [t.as_input() for t in turns],
        "store": False,
        "stream": True,
    }
    if web_search:
        body["tools"] = [{"type": "web_search"}]
    return body


class CompletionClient:
    """Sends conversation turns; yields TextDelta events then one StreamCompleted."""

    def __init__(
        self,
        credentials: CodexCredentials,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        default_model: str = "",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._endpoint = endpoint
        self._default_model = default_model
        self._system_prompt = system_prompt
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    @property
    def default_model(self) -> str:
        return self._default_model

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Origin": "https://chatgpt.com",
            "Referer": "https://chatgpt.com/",
        }
        headers.update(self._credentials.auth_headers())
        return headers

    async def _send(self, body: dict) -> httpx.Response:
        request = self._client.build_request("POST", self._endpoint, json=body, headers=self._headers())
        return await self._client.send(request, stream=True)

    async def stream(
        self,
        turns: Sequence[Turn],
        *,
        model: str | None = None,
        web_search: bool = False,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        requested = (model or self._default_model or "").strip()
        if not requested:
            raise ValueError("model is required for a completion request")
        instructions = (system_prompt or "").strip() or self._system_prompt
        body = build_request_body(turns, model=requested, instructions=instructions, web_search=web_search)

        await self._credentials.ensure_fresh()
        resp = await self._send(body)
        if resp.status_code in (401, 403):
            await resp.aclose()
            logger.info("completion request unauthorized, refreshing token", extra={"status": resp.status_code})
            await self._credentials.refresh()
            resp = await self._send(body)
        try:
            if not resp.is_success:
                raw = (await resp.aread()).decode("utf-8", errors="replace")
                detail = extract_error_detail(raw, parse_json(raw))
                raise CompletionError(f"completion request failed: {detail}", status_code=resp.status_code)
            content_type = resp.headers.get("content-type", "")
            if "text/event-stream" in content_type:
                async for event in iter_stream_events(resp.aiter_bytes()):
                    yield event
                return
            raw = (await resp.aread()).decode("utf-8", errors="replace")
            yield StreamCompleted(text=decode_payload(raw))
        finally:
            await resp.aclose()

    async def complete(
        self,
        turns: Sequence[Turn],
        *,
        model: str | None = None,
        web_search: bool = False,
        system_prompt: str | None = None,
    ) -> str:
        text = ""
        async for event in self.stream(turns, model=model, web_search=web_search, system_prompt=system_prompt):
            if isinstance(event, StreamCompleted):
                text = event.text
        return text
