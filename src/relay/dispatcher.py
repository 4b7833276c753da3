from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Dict
from urllib.parse import quote, urlencode, urlparse

import httpx

from .config import ProviderDef
from .errors import ProviderNotConfigured, UpstreamRejected

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 60.0


def _is_version_segment(segment: str) -> bool:
    if not segment:
        return False
    lowered = segment.lower()
    if not lowered.startswith("v"):
        return False
    suffix = lowered[1:]
    return bool(suffix) and suffix[0].isdigit()


def _split_base(base: str) -> tuple[httpx.URL, list[str]]:
    parsed = urlparse(base.strip())
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"invalid upstream base url '{base}'")
    segments = [segment for segment in (parsed.path or "").split("/") if segment]
    return httpx.URL(base.strip()), segments


def chat_completions_url(base: str) -> str:
    url, segments = _split_base(base)
    lowered = [segment.lower() for segment in segments]
    if lowered[-2:] == ["chat", "completions"]:
        return str(url.copy_with(path="/" + "/".join(segments)))
    if lowered and lowered[-1] == "chat":
        head, tail = segments[:-1], ["chat", "completions"]
    else:
        head, tail = segments, ["chat", "completions"]
    has_version = any(_is_version_segment(segment) for segment in head)
    # Azure style deployments already carry their own routing segments
    has_openai_segment = any(segment.lower() == "openai" for segment in head)
    if not has_version and not has_openai_segment:
        head = head + ["v1"]
    return str(url.copy_with(path="/" + "/".join(head + tail)))


def messages_url(base: str) -> str:
    url, segments = _split_base(base)
    ends_with_messages = bool(segments) and segments[-1].lower() == "messages"
    if not any(_is_version_segment(segment) for segment in segments):
        insert_index = len(segments) - 1 if ends_with_messages else len(segments)
        segments.insert(insert_index, "v1")
    if not ends_with_messages:
        segments.append("messages")
    return str(url.copy_with(path="/" + "/".join(segments)))


def gemini_stream_url(base: str, model: str, api_key: str) -> str:
    root = base.strip().rstrip("/")
    query = urlencode({"alt": "sse", "key": api_key})
    return f"{root}/v1beta/models/{quote(model, safe='-._')}:streamGenerateContent?{query}"


def build_upstream_request(
    provider: ProviderDef,
    model: str,
    *,
    api_key: str,
    endpoint_override: str | None = None,
) -> tuple[str, dict[str, str]]:
    """Returns the upstream URL and headers for ``provider``."""

    profile = provider.profile
    headers: dict[str, str] = {
        "Content-Type": "application/json",
        "Connection": "keep-alive",
    }
    if profile.endpoint == "gemini_stream":
        base = provider.base_url or profile.default_base_url
        url = gemini_stream_url(base, model, api_key)
    else:
        base = endpoint_override or provider.base_url or profile.default_base_url
        if profile.endpoint == "messages":
            url = messages_url(base)
        else:
            url = chat_completions_url(base)
    if profile.auth == "bearer" and api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    for header in profile.api_key_headers:
        headers[header] = api_key
    for header, value in profile.fixed_headers:
        headers[header] = value
    headers.update(provider.headers)
    return url, headers


class UpstreamStream:
    """An open upstream response that owns its HTTP client."""

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient) -> None:
        self.response = response
        self._client = client
        self._closed = False

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.response.aclose()
        finally:
            await self._client.aclose()


class RequestDispatcher:
    def __init__(
        self,
        providers: Dict[str, ProviderDef],
        *,
        timeout: float = DEFAULT_UPSTREAM_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.providers = providers
        self.timeout = timeout
        self._transport = transport

    def resolve(self, provider_name: str) -> ProviderDef:
        provider = self.providers.get(provider_name)
        if provider is None:
            raise ProviderNotConfigured(provider_name)
        return provider

    async def open_stream(
        self,
        provider: ProviderDef,
        model: str,
        body: bytes,
        *,
        api_key_override: str | None = None,
        endpoint_override: str | None = None,
    ) -> UpstreamStream:
        api_key = api_key_override or provider.resolve_api_key()
        url, headers = build_upstream_request(
            provider, model, api_key=api_key, endpoint_override=endpoint_override
        )
        client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        try:
            request = client.build_request("POST", url, headers=headers, content=body)
            response = await client.send(request, stream=True)
        except BaseException:
            await client.aclose()
            raise
        if response.is_success:
            return UpstreamStream(response, client)
        try:
            payload = await response.aread()
        finally:
            await response.aclose()
            await client.aclose()
        logger.warning(
            "relay.upstream rejected provider=%s status=%d", provider.name, response.status_code
        )
        raise UpstreamRejected(
            response.status_code, payload, response.headers.get("content-type")
        )
