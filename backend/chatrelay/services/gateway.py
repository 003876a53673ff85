"""The one boundary every generation goes through on its way to a provider."""
import asyncio
import time
from contextlib import aclosing
from typing import AsyncIterator, Tuple, Union

import structlog

from chatrelay.core.config import settings
from chatrelay.errors import AuthenticationRequiredError, ChatRelayError, TransportError
from chatrelay.observability import GENERATION_OUTCOMES, UPSTREAM_LATENCY
from chatrelay.providers.base import (
    NormalizedChatRequest,
    NormalizedChatResponse,
    ProviderAdapter,
    ProviderCredential,
)
from chatrelay.services.credentials import CredentialContext, CredentialStore
from chatrelay.services.router import ProviderRegistry
from chatrelay.streaming.events import DeltaEvent

logger = structlog.get_logger()


class ChatGateway:
    def __init__(
        self,
        registry: ProviderRegistry,
        credentials: CredentialStore,
        *,
        stream_timeout: float | None = None,
    ) -> None:
        self._registry = registry
        self._credentials = credentials
        self._stream_timeout = stream_timeout or settings.STREAM_TIMEOUT_SECONDS

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    async def _resolve_credential(self, provider: str, ctx: CredentialContext) -> ProviderCredential:
        if ctx.is_guest:
            logger.info("credential_resolved", provider=provider, source="guest")
            return ctx.guest_credential
        if ctx.identity:
            credential = await self._credentials.resolve(ctx.identity, provider)
            if credential is not None:
                logger.info("credential_resolved", provider=provider, source="stored")
                return credential
            logger.warning("credential_missing", provider=provider)
            raise AuthenticationRequiredError(provider)
        logger.warning("credential_missing", provider=provider, reason="no_identity")
        raise AuthenticationRequiredError(
            provider, "You must be logged in or provide an API key to chat."
        )

    async def prepare(
        self, req: NormalizedChatRequest, ctx: CredentialContext
    ) -> Tuple[ProviderAdapter, NormalizedChatRequest]:
        """Resolve adapter, model and credential. Configuration errors raise here."""
        adapter, model = self._registry.resolve(req.provider, req.model)
        credential = await self._resolve_credential(req.provider, ctx)
        prepared = req.model_copy(update={"model": model, "credential": credential})
        adapter.validate(prepared)
        return adapter, prepared

    async def send(self, req: NormalizedChatRequest, ctx: CredentialContext) -> NormalizedChatResponse:
        adapter, prepared = await self.prepare(req, ctx)
        logger.info(
            "gateway_send",
            provider=prepared.provider,
            model=prepared.model,
            messages=len(prepared.messages),
        )
        start = time.perf_counter()
        try:
            res = await adapter.send(prepared)
        except ChatRelayError as e:
            GENERATION_OUTCOMES.labels(prepared.provider, "error").inc()
            logger.error("gateway_send_failed", provider=prepared.provider, error=str(e))
            raise
        finally:
            UPSTREAM_LATENCY.labels(prepared.provider, "false").observe(time.perf_counter() - start)
        GENERATION_OUTCOMES.labels(prepared.provider, "completed").inc()
        return res

    async def open_stream(
        self, req: NormalizedChatRequest, ctx: CredentialContext
    ) -> AsyncIterator[DeltaEvent]:
        """
        Resolve synchronously, then hand back the delta stream.

        Upstream and transport failures during the stream arrive as one
        terminal ``error`` event instead of an exception.
        """
        adapter, prepared = await self.prepare(req, ctx)
        logger.info(
            "gateway_stream_open",
            provider=prepared.provider,
            model=prepared.model,
            messages=len(prepared.messages),
        )
        return self._guarded(adapter, prepared)

    async def _guarded(self, adapter: ProviderAdapter, prepared: NormalizedChatRequest) -> AsyncIterator[DeltaEvent]:
        start = time.perf_counter()
        outcome = "cancelled"
        try:
            async with asyncio.timeout(self._stream_timeout):
                async with aclosing(adapter.send_streaming(prepared)) as events:
                    async for event in events:
                        if event.is_terminal:
                            outcome = "completed"
                            yield event
                            return
                        yield event
        except TimeoutError:
            outcome = "error"
            logger.error("gateway_stream_timeout", provider=prepared.provider, timeout_seconds=self._stream_timeout)
            yield DeltaEvent.failure(TransportError(prepared.provider, "Stream timeout exceeded"))
        except ChatRelayError as e:
            outcome = "error"
            logger.error("gateway_stream_failed", provider=prepared.provider, error=str(e), code=e.code)
            yield DeltaEvent.failure(e)
        finally:
            GENERATION_OUTCOMES.labels(prepared.provider, outcome).inc()
            UPSTREAM_LATENCY.labels(prepared.provider, "true").observe(time.perf_counter() - start)

    async def handle(
        self, req: NormalizedChatRequest, ctx: CredentialContext
    ) -> Union[NormalizedChatResponse, AsyncIterator[DeltaEvent]]:
        if req.stream:
            return await self.open_stream(req, ctx)
        return await self.send(req, ctx)
