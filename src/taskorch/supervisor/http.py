from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from taskorch.config import HttpDialect, HttpProviderConfig
from taskorch.errors import ProviderInvocationError
from taskorch.observability import get_logger
from taskorch.supervisor.base import CompletionCallback, LaunchRequest, SupervisedRun
from taskorch.supervisor.output import OutputPipeline

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
RETRIABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504, 529}


@dataclass(slots=True)
class HttpInvocation:
    provider: str
    url: str
    dialect: HttpDialect
    headers: dict[str, str] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)


def build_payload(
    dialect: HttpDialect, *, model: str, prompt: str, max_tokens: int, stream: bool
) -> dict[str, Any]:
    # Both dialects accept the same minimal chat body.
    return {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": prompt}],
        "stream": stream,
    }


def build_headers(dialect: HttpDialect, api_key: str) -> dict[str, str]:
    headers = {"content-type": "application/json"}
    if dialect == "anthropic":
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if api_key:
            headers["x-api-key"] = api_key
    elif api_key:
        headers["authorization"] = f"Bearer {api_key}"
    return headers


class StaticCredentialResolver:
    """Resolves configured HTTP providers to a request, reading keys from the environment."""

    def __init__(
        self,
        providers: list[HttpProviderConfig],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._providers = {provider.name: provider for provider in providers}
        self._environ = os.environ if environ is None else environ

    def names(self) -> set[str]:
        return set(self._providers)

    def resolve(
        self,
        provider: str,
        prompt: str,
        *,
        model: str | None = None,
        stream: bool = True,
    ) -> HttpInvocation:
        config = self._providers.get(provider)
        if config is None:
            raise ProviderInvocationError(f"Unknown HTTP provider: {provider}", provider=provider)
        api_key = self._environ.get(config.api_key_env, "")
        if not api_key:
            logger.warning("no API key in %s for provider %s", config.api_key_env, provider)
        return HttpInvocation(
            provider=provider,
            url=config.url,
            dialect=config.dialect,
            headers=build_headers(config.dialect, api_key),
            payload=build_payload(
                config.dialect,
                model=model or config.model,
                prompt=prompt,
                max_tokens=config.max_tokens,
                stream=stream,
            ),
        )


def parse_sse_line(line: str, dialect: HttpDialect) -> tuple[str, bool]:
    """Return ``(text_delta, finished)`` for one server-sent event line."""
    if not line.startswith("data:"):
        return "", False
    data = line[len("data:") :].strip()
    if not data:
        return "", False
    if data == "[DONE]":
        return "", True
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        return "", False
    if not isinstance(event, dict):
        return "", False
    if dialect == "anthropic":
        if event.get("type") == "message_stop":
            return "", True
        if event.get("type") == "content_block_delta":
            delta = event.get("delta") or {}
            text = delta.get("text") if isinstance(delta, dict) else None
            return (text if isinstance(text, str) else ""), False
        return "", False
    choices = event.get("choices") or []
    if choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta") or {}
        text = delta.get("content") if isinstance(delta, dict) else None
        return (text if isinstance(text, str) else ""), False
    return "", False


def extract_completion_text(body: dict[str, Any], dialect: HttpDialect) -> str:
    if dialect == "anthropic":
        parts = [
            block.get("text", "")
            for block in body.get("content") or []
            if isinstance(block, dict) and block.get("type", "text") == "text"
        ]
        return "".join(parts).strip()
    choices = body.get("choices") or []
    if choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content.strip() if isinstance(content, str) else ""
    return ""


def _status_error(invocation: HttpInvocation, status_code: int, body: str) -> ProviderInvocationError:
    return ProviderInvocationError(
        f"{invocation.provider} returned HTTP {status_code}: {body[:400]}",
        provider=invocation.provider,
        exit_code=1,
        retriable=status_code in RETRIABLE_STATUS_CODES,
    )


class HttpRun(SupervisedRun):
    """A streamed API completion supervised like a CLI run."""

    def __init__(
        self,
        request: LaunchRequest,
        pipeline: OutputPipeline,
        on_complete: CompletionCallback,
        invocation: HttpInvocation,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(request, pipeline, on_complete)
        self.invocation = invocation
        self.transport = transport
        self._stream_task: asyncio.Task[None] | None = None
        self._cancel_requested = False

    @property
    def pid(self) -> int | None:
        return None

    async def _stream(self) -> None:
        timeout = httpx.Timeout(30.0, read=None)
        async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
            async with client.stream(
                "POST",
                self.invocation.url,
                headers=self.invocation.headers,
                json=self.invocation.payload,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise _status_error(self.invocation, response.status_code, body)
                async for line in response.aiter_lines():
                    text, finished = parse_sse_line(line, self.invocation.dialect)
                    if text:
                        self.touch()
                        self.pipeline.feed("stdout", text)
                    if finished:
                        break

    async def _run_to_exit(self) -> int:
        self._stream_task = asyncio.create_task(self._stream())
        try:
            await self._stream_task
        except asyncio.CancelledError:
            if self._cancel_requested and self._stream_task.cancelled():
                return 1
            raise
        except httpx.HTTPError as exc:
            raise ProviderInvocationError(
                f"{self.invocation.provider} request failed: {exc}",
                provider=self.invocation.provider,
                exit_code=1,
                retriable=True,
            ) from exc
        return 0

    async def terminate(self, reason: str = "stop") -> None:
        if self._stop_reason is None:
            self._stop_reason = reason
        self._cancel_requested = True
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()

    async def interrupt(self) -> None:
        await self.terminate("interrupt")


async def complete_once(
    invocation: HttpInvocation,
    *,
    timeout_seconds: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Non-streamed completion used for bounded meeting turns."""
    try:
        async with httpx.AsyncClient(transport=transport, timeout=timeout_seconds) as client:
            response = await client.post(
                invocation.url, headers=invocation.headers, json=invocation.payload
            )
    except httpx.HTTPError as exc:
        raise ProviderInvocationError(
            f"{invocation.provider} request failed: {exc}",
            provider=invocation.provider,
            retriable=True,
        ) from exc
    if response.status_code >= 400:
        raise _status_error(invocation, response.status_code, response.text)
    try:
        body = response.json()
    except json.JSONDecodeError as exc:
        raise ProviderInvocationError(
            f"{invocation.provider} returned a non-JSON body", provider=invocation.provider
        ) from exc
    return extract_completion_text(body if isinstance(body, dict) else {}, invocation.dialect)
