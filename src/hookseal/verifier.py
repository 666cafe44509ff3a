"""Hookseal Webhook Verification.

Runs the full decision procedure for one inbound webhook:

1. resolve the secret (route override, else global map)
2. require the raw body
3. resolve the provider
4. read the signature header
5. read the timestamp (own header, or embedded in the signature header)
6. check freshness against the tolerance window
7. compute the expected signature and compare in constant time
8. check-and-record the nonce (only after step 7 succeeds)
9. extract the event type and call the post-verification hook

Usage:
    verifier = WebhookVerifier(WebhookSettings(providers={"stripe": "whsec_..."}))

    result = await verifier.check(
        VerificationRequest(raw_body=body, headers=headers, provider="stripe")
    )
    if result.valid:
        process(result.event_type)
    else:
        print(f"Verification failed: {result.error}")
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from hookseal.config import (
    ReplayProtectionOverride,
    RouteOptions,
    WebhookSettings,
    get_settings,
    resolve_route_config,
)
from hookseal.errors import (
    InvalidSignatureError,
    MissingRawBodyError,
    MissingSecretError,
    MissingSignatureError,
    ReplayAttackError,
    TimestampExpiredError,
    WebhookError,
)
from hookseal.providers import CustomProviderConfig, ProviderError, ProviderName, get_provider
from hookseal.redis_storage import RedisNonceStorage
from hookseal.replay import NonceStorage, ReplayGuard, build_nonce

logger = structlog.get_logger()


@dataclass
class VerificationRequest:
    """One inbound webhook as handed over by the HTTP layer."""

    raw_body: bytes | None
    """Unmodified body bytes, captured before any decoding."""

    headers: Mapping[str, Any]
    """Request headers. Looked up case-insensitively."""

    provider: ProviderName | str
    """Provider identifier."""

    secret: str | None = None
    """Secret override for this route."""

    custom_config: CustomProviderConfig | None = None
    """Configuration for the custom provider."""

    replay_protection: ReplayProtectionOverride | dict[str, Any] | None = None
    """Per-route replay protection override."""

    body: Any = None
    """Decoded body, only used for event type extraction."""

    context: Any = None
    """Host request object, passed through to the on_verify hook."""


@dataclass
class VerificationResult:
    """Result of webhook verification."""

    valid: bool
    """Whether the webhook is authentic, fresh and not replayed."""

    provider: str
    """Provider identifier."""

    timestamp: datetime | None = None
    """Sender-asserted event time, if the provider sends one."""

    event_type: str | None = None
    """Sender-asserted event label from the decoded body."""

    error: str | None = None
    """Error message if verification failed."""

    failure: WebhookError | None = None
    """Typed error if verification failed."""

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.valid

    @classmethod
    def failed(cls, error: WebhookError, provider: str) -> VerificationResult:
        return cls(
            valid=False,
            provider=error.provider or provider,
            timestamp=getattr(error, "timestamp", None),
            error=error.message,
            failure=error,
        )


VerifyHook = Callable[[VerificationResult, VerificationRequest], Awaitable[None] | None]


def get_header(headers: Mapping[str, Any], name: str) -> str | None:
    """Return a single non-empty string header value, else None.

    Repeated headers count as absent: a signature must be unambiguous.
    """
    getall = getattr(headers, "getall", None)
    if getall is not None:
        values = list(getall(name, []))
    else:
        lowered = name.lower()
        values = [value for key, value in headers.items() if key.lower() == lowered]

    if len(values) != 1:
        return None
    value = values[0]
    if not isinstance(value, str) or not value:
        return None
    return value


class WebhookVerifier:
    """Verification orchestrator.

    Stateless per request. The only shared state is the replay guard, which
    is created on first use and torn down by close().
    """

    def __init__(
        self,
        settings: WebhookSettings | None = None,
        replay_guard: ReplayGuard | None = None,
        on_verify: VerifyHook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the verifier.

        Args:
            settings: Global settings. Defaults to get_settings().
            replay_guard: Shared guard. Created lazily from settings if omitted.
            on_verify: Hook called with (result, request) after success.
            clock: Epoch-seconds time source.
        """
        self.settings = settings if settings is not None else get_settings()
        self.on_verify = on_verify
        self._clock = clock
        self._guard = replay_guard
        self._owns_guard = replay_guard is None
        self._owned_storage: RedisNonceStorage | None = None

    @property
    def replay_guard(self) -> ReplayGuard:
        """The shared replay guard, created on first access."""
        if self._guard is None:
            rp = self.settings.replay_protection
            storage: NonceStorage | None = rp.storage
            if storage is None and rp.redis_url:
                self._owned_storage = RedisNonceStorage(url=rp.redis_url, clock=self._clock)
                storage = self._owned_storage
            self._guard = ReplayGuard(storage=storage, tolerance=rp.tolerance, clock=self._clock)
            logger.debug(
                "Replay guard created",
                storage=type(self._guard.storage).__name__,
                tolerance=rp.tolerance,
            )
        return self._guard

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        """Verify a webhook, raising the typed error on any failure.

        Raises:
            WebhookError: The specific failure kind.
        """
        provider_name = str(getattr(request.provider, "value", request.provider))
        try:
            result = await self._verify(request)
        except WebhookError as error:
            self._log_failure(error, provider_name)
            raise

        if self.settings.log_attempts:
            logger.info(
                "Webhook verified successfully",
                provider=result.provider,
                event_type=result.event_type,
            )
        return result

    async def check(self, request: VerificationRequest) -> VerificationResult:
        """Verify a webhook, returning authentication failures as a result.

        Configuration errors (missing secret, missing raw body) are still
        raised since no sender can cause or fix them.

        Raises:
            MissingSecretError: No secret is configured for the provider.
            MissingRawBodyError: The raw body was not captured.
        """
        provider_name = str(getattr(request.provider, "value", request.provider))
        try:
            return await self.verify(request)
        except WebhookError as error:
            if error.is_configuration_error:
                raise
            return VerificationResult.failed(error, provider_name)

    async def _verify(self, request: VerificationRequest) -> VerificationResult:
        route = RouteOptions(
            provider=request.provider,
            secret=request.secret,
            custom_config=request.custom_config,
            replay_protection=request.replay_protection,
        )
        effective = resolve_route_config(self.settings, route)
        name = effective.provider

        if not effective.secret:
            raise MissingSecretError(name)

        raw_body = request.raw_body
        if raw_body is None:
            raise MissingRawBodyError(name)

        provider = get_provider(name, effective.custom_config)

        signature_header = get_header(request.headers, provider.signature_header)
        if signature_header is None:
            raise MissingSignatureError(name)

        timestamp: datetime | None = None
        try:
            if provider.timestamp_header:
                timestamp_value = get_header(request.headers, provider.timestamp_header)
                if timestamp_value is not None:
                    timestamp = provider.parse_timestamp(timestamp_value)
            elif provider.embeds_timestamp:
                timestamp = provider.parse_timestamp(signature_header)
        except ProviderError as e:
            logger.debug("Unreadable webhook timestamp", provider=name, reason=str(e))
            raise InvalidSignatureError(name) from None

        if effective.replay_enabled and timestamp is not None:
            age = abs(self._clock() - timestamp.timestamp())
            if age > effective.tolerance:
                raise TimestampExpiredError(name, timestamp, effective.tolerance)

        try:
            signature = provider.extract_signature(signature_header)
            expected = provider.compute_signature(raw_body, effective.secret, timestamp)
        except ProviderError as e:
            logger.debug("Malformed webhook signature", provider=name, reason=str(e))
            raise InvalidSignatureError(name) from None

        if not provider.verify_signature(signature, expected):
            raise InvalidSignatureError(name)

        # Nonces are only recorded for verified payloads.
        if effective.replay_enabled and timestamp is not None:
            nonce = build_nonce(provider.name, signature, timestamp)
            if await self.replay_guard.check_and_record(nonce, effective.tolerance):
                raise ReplayAttackError(name)

        result = VerificationResult(
            valid=True,
            provider=name,
            timestamp=timestamp,
            event_type=provider.extract_event_type(request.body),
        )

        if self.on_verify is not None:
            outcome = self.on_verify(result, request)
            if inspect.isawaitable(outcome):
                await outcome

        return result

    def _log_failure(self, error: WebhookError, provider: str) -> None:
        if error.is_configuration_error:
            logger.error(
                "Webhook verification misconfigured",
                provider=provider,
                code=error.code,
                error=error.message,
            )
        elif self.settings.log_attempts:
            logger.warning(
                "Webhook verification failed",
                provider=provider,
                code=error.code,
                error=error.message,
            )

    async def close(self) -> None:
        """Tear down the replay guard and any storage created for it."""
        if self._guard is not None and self._owns_guard:
            await self._guard.close()
            self._guard = None
        if self._owned_storage is not None:
            await self._owned_storage.close()
            self._owned_storage = None

    async def __aenter__(self) -> WebhookVerifier:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
