from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, Union

import httpx

from ..config import DEFAULT_PROVIDER_CONFIGS, PROVIDER_KINDS, PROVIDER_OPENAI
from ..errors import NO_RESPONSE_STATUS, ConfigError, ProtocolError, TransportError
from ..models import ChatMessage, ChatMeta, ChatReply, ProviderConfig
from ..settings_store import SettingsStore
from .downgrade import (
    IMAGE_REJECTED_NOTE,
    SCREENSHOT_DISABLED_NOTE,
    MultimodalRejectionClassifier,
    extract_error_message,
    has_image,
    strip_images,
)
from .wire import STREAM_DONE, family_for

logger = logging.getLogger("weblm.provider")

MODEL_TYPE_KEY = "modelType"
LLM_CONFIG_KEY = "llmConfig"

# Keys older installs persisted in camelCase.
_CAMEL_KEYS = {
    "baseUrl": "base_url",
    "apiKey": "api_key",
    "model": "model_id",
    "maxTokens": "max_tokens",
}

DeltaCallback = Callable[[str, str], None]
MessageInput = Union[ChatMessage, Dict[str, Any]]


class ProviderClient:
    """Streaming chat client that hides which provider family is configured."""

    def __init__(
        self,
        store: SettingsStore,
        feature_flags: Optional[Any] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
        classifier: Optional[MultimodalRejectionClassifier] = None,
    ) -> None:
        """Purpose: Wire the client to the settings store, feature flags, and HTTP.
        Inputs/Outputs: Inputs are store, optional FeatureFlagCache, optional
            httpx.AsyncClient, timeout, and optional classifier; no return value.
        Side Effects / State: Creates an AsyncClient when none is injected.
        Dependencies: httpx, SettingsStore, MultimodalRejectionClassifier.
        Failure Modes: None at init; call load() before chatting.
        If Removed: Hub cannot answer CHAT/ANALYZE_PAGE/LOCATE_ELEMENTS.
        Testing Notes: Inject httpx.AsyncClient(transport=httpx.MockTransport(...)).
        """
        # Config is loaded lazily from the store; meta is per call.
        self._store = store
        self._feature_flags = feature_flags
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self._classifier = classifier or MultimodalRejectionClassifier()
        self._config: Optional[ProviderConfig] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def load(self) -> ProviderConfig:
        """Purpose: Read the active provider config from the settings store.
        Inputs/Outputs: No inputs; returns the active ProviderConfig.
        Side Effects / State: Replaces the cached config.
        Dependencies: SettingsStore.get and _coerce_config.
        Failure Modes: Store errors fall back to the OpenAI defaults (no key).
        If Removed: Saved provider settings are ignored after restart.
        Testing Notes: Seed the store with camelCase and snake_case configs.
        """
        # Missing or unreadable settings fall back to the default provider.
        try:
            stored = await self._store.get([MODEL_TYPE_KEY, LLM_CONFIG_KEY])
        except Exception:
            logger.error("provider config load failed; using defaults", exc_info=True)
            stored = {}
        kind = stored.get(MODEL_TYPE_KEY) or PROVIDER_OPENAI
        if kind not in PROVIDER_KINDS:
            logger.warning("unknown stored provider kind=%s; using %s", kind, PROVIDER_OPENAI)
            kind = PROVIDER_OPENAI
        self._config = _coerce_config(kind, stored.get(LLM_CONFIG_KEY) or {})
        logger.info(
            "provider config loaded kind=%s model=%s has_api_key=%s",
            self._config.provider_kind,
            self._config.model_id,
            bool(self._config.api_key),
        )
        return self._config

    async def set_config(self, provider_kind: str, overrides: Optional[Dict[str, Any]] = None) -> ProviderConfig:
        """Merge overrides over the kind's defaults and persist as the active config."""
        if provider_kind not in PROVIDER_KINDS:
            raise ConfigError(f"unknown provider kind: {provider_kind}")
        config = _coerce_config(provider_kind, overrides or {})
        await self._store.set({MODEL_TYPE_KEY: provider_kind, LLM_CONFIG_KEY: config.model_dump()})
        self._config = config
        logger.info(
            "provider config saved kind=%s model=%s has_api_key=%s",
            provider_kind,
            config.model_id,
            bool(config.api_key),
        )
        return config

    def get_config(self) -> Dict[str, Any]:
        """Active config without the secret; has_api_key tells whether one is set."""
        if self._config is None:
            return {"model_type": None, "config": None}
        public = self._config.model_dump(exclude={"api_key"})
        public["has_api_key"] = bool(self._config.api_key)
        return {"model_type": self._config.provider_kind, "config": public}

    @property
    def config(self) -> Optional[ProviderConfig]:
        return self._config

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def complete(
        self,
        messages: Iterable[MessageInput],
        stream: bool = False,
        on_delta: Optional[DeltaCallback] = None,
    ) -> ChatReply:
        """Purpose: Send a conversation and return the reply with its advisory meta.
        Inputs/Outputs: Inputs are messages, stream flag, and optional on_delta(delta, full)
            callback; output is a ChatReply whose text equals the last "full" in stream mode.
        Side Effects / State: None on the client; the meta belongs to this call only.
        Dependencies: stream() for streaming, _send_with_downgrade otherwise.
        Failure Modes: ConfigError without an API key; TransportError on non-success or
            no reply (after at most one image-stripped retry); ProtocolError on a bad body.
        If Removed: No context can talk to the model.
        Testing Notes: Run two calls concurrently; each reply keeps its own meta.
        """
        # Streaming concatenates deltas in arrival order.
        if stream:
            reply = ChatReply()
            async for delta in self.stream(messages, reply):
                reply.text += delta
                if on_delta is not None:
                    on_delta(delta, reply.text)
            return reply

        config = self._require_config()
        prepared, meta = await self._prepare(messages)
        family = family_for(config.provider_kind)
        response, retry_meta = await self._send_with_downgrade(config, prepared, stream=False)
        try:
            try:
                await response.aread()
            except httpx.TransportError as exc:
                raise _no_reply(exc) from exc
            try:
                data = response.json()
            except ValueError as exc:
                raise ProtocolError("response body is not JSON") from exc
        finally:
            await response.aclose()
        return ChatReply(text=family.parse_response(data), meta=retry_meta or meta)

    async def chat(
        self,
        messages: Iterable[MessageInput],
        stream: bool = False,
        on_delta: Optional[DeltaCallback] = None,
    ) -> str:
        """Reply text only; use complete() when the advisory meta matters."""
        return (await self.complete(messages, stream=stream, on_delta=on_delta)).text

    async def stream(self, messages: Iterable[MessageInput], reply: Optional[ChatReply] = None) -> AsyncIterator[str]:
        """Lazy, ordered, finite delta sequence; aclose() ends it and frees the response.

        Each call issues a new request, so a consumed sequence cannot be restarted.
        Malformed frames are dropped. When ``reply`` is given its meta is filled in
        once the request has been accepted.
        """
        config = self._require_config()
        prepared, meta = await self._prepare(messages)
        family = family_for(config.provider_kind)
        response, retry_meta = await self._send_with_downgrade(config, prepared, stream=True)
        if reply is not None:
            reply.meta = retry_meta or meta
        try:
            async for line in response.aiter_lines():
                try:
                    delta = family.parse_frame(line)
                except ProtocolError as exc:
                    logger.debug("dropping stream frame: %s", exc)
                    continue
                if delta is STREAM_DONE:
                    break
                if delta:
                    yield delta
        except httpx.TransportError as exc:
            raise _no_reply(exc) from exc
        finally:
            await response.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_config(self) -> ProviderConfig:
        if self._config is None or not self._config.api_key:
            raise ConfigError("API key is not configured")
        return self._config

    async def _prepare(self, messages: Iterable[MessageInput]) -> Tuple[List[ChatMessage], Optional[ChatMeta]]:
        # Validate input and strip images up front when screenshot input is off.
        prepared = [
            message if isinstance(message, ChatMessage) else ChatMessage.model_validate(message)
            for message in messages
        ]
        if self._feature_flags is not None and has_image(prepared):
            if not await self._feature_flags.get():
                logger.info("screenshot input disabled; stripping images before send")
                return strip_images(prepared), ChatMeta(status_text=SCREENSHOT_DISABLED_NOTE)
        return prepared, None

    async def _send(self, config: ProviderConfig, messages: List[ChatMessage], stream: bool) -> httpx.Response:
        family = family_for(config.provider_kind)
        url, headers, body = family.build_request(config, messages, stream)
        logger.info(
            "chat request family=%s model=%s messages=%d stream=%s",
            family.name,
            config.model_id,
            len(messages),
            stream,
        )
        request = self._http.build_request("POST", url, headers=headers, json=body)
        try:
            response = await self._http.send(request, stream=True)
        except httpx.TransportError as exc:
            raise _no_reply(exc) from exc
        if response.is_success:
            return response
        try:
            raw = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.TransportError as exc:
            raise _no_reply(exc) from exc
        finally:
            await response.aclose()
        raise TransportError(response.status_code, extract_error_message(raw))

    async def _send_with_downgrade(
        self, config: ProviderConfig, messages: List[ChatMessage], stream: bool
    ) -> Tuple[httpx.Response, Optional[ChatMeta]]:
        """Purpose: Send once; on a multimodal rejection, retry exactly once without images.
        Inputs/Outputs: Inputs are config, prepared messages, stream flag; returns an
            open successful response (caller closes it) and the retry meta, if any.
        Side Effects / State: None beyond the requests themselves.
        Dependencies: _send, MultimodalRejectionClassifier, strip_images.
        Failure Modes: Non-matching errors and any retry failure raise TransportError.
        If Removed: Text-only providers reject every screenshot-bearing request.
        Testing Notes: Count requests: rejection + success = 2, rejection twice = 2.
        """
        # The retry is bounded to one so auth/quota failures are never masked.
        try:
            return await self._send(config, messages, stream), None
        except TransportError as exc:
            if not (has_image(messages) and self._classifier.matches(exc.status, exc.message)):
                logger.error("chat request failed status=%s error=%s", exc.status, exc.message)
                raise
            logger.warning("model rejected image input; retrying once without images: %s", exc.message)
        try:
            response = await self._send(config, strip_images(messages), stream)
        except TransportError as retry_exc:
            logger.error("image-free retry failed status=%s error=%s", retry_exc.status, retry_exc.message)
            raise
        return response, ChatMeta(status_text=IMAGE_REJECTED_NOTE)


def _no_reply(exc: httpx.TransportError) -> TransportError:
    """Connection, timeout and read failures surface as a status-less TransportError."""
    return TransportError(NO_RESPONSE_STATUS, f"{type(exc).__name__}: {exc}")


def _coerce_config(provider_kind: str, raw: Dict[str, Any]) -> ProviderConfig:
    """Merge a stored or user-supplied config dict over the kind's defaults."""
    merged: Dict[str, Any] = dict(DEFAULT_PROVIDER_CONFIGS.get(provider_kind, {}))
    for key, value in raw.items():
        key = _CAMEL_KEYS.get(key, key)
        if key in ("base_url", "api_key", "model_id", "max_tokens") and value not in (None, ""):
            merged[key] = value
    merged["provider_kind"] = provider_kind
    merged["max_tokens"] = int(merged.get("max_tokens") or 4096)
    return ProviderConfig(**merged)
