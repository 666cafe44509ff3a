"""aiohttp integration.

Wraps aiohttp handlers so that the webhook is verified before the handler
runs. The raw body is read with ``request.read()`` before anything decodes
it, and the verified data is stored under ``request["webhook"]``.

Example:
    webhooks = WebhookVerification(WebhookSettings(providers={"stripe": "whsec_..."}))

    @webhooks.protect("stripe")
    async def stripe_webhook(request: web.Request) -> web.Response:
        data: WebhookData = request["webhook"]
        return web.json_response({"received": data.event_type})

    app = web.Application()
    webhooks.setup(app)
    app.router.add_post("/webhooks/stripe", stripe_webhook)
"""

from __future__ import annotations

import functools
import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from aiohttp import web

from hookseal.config import ReplayProtectionOverride, WebhookSettings
from hookseal.errors import WebhookError
from hookseal.providers import CustomProviderConfig, ProviderName
from hookseal.verifier import VerificationRequest, VerificationResult, WebhookVerifier

logger = structlog.get_logger()

WEBHOOK_KEY = "webhook"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
ErrorHandler = Callable[
    [WebhookError, web.Request],
    Awaitable[web.StreamResponse] | web.StreamResponse,
]
RequestHook = Callable[[VerificationResult, web.Request], Awaitable[None] | None]

_STATUS_EXCEPTIONS: dict[int, type[web.HTTPException]] = {
    400: web.HTTPBadRequest,
    401: web.HTTPUnauthorized,
    500: web.HTTPInternalServerError,
}


@dataclass
class WebhookData:
    """Verified webhook data available to route handlers."""

    verified: bool
    provider: str
    timestamp: datetime | None
    raw_body: bytes
    event_type: str | None


def error_response(error: WebhookError) -> web.HTTPException:
    """Build the aiohttp exception for a verification failure."""
    exc_class = _STATUS_EXCEPTIONS.get(error.status_code, web.HTTPUnauthorized)
    return exc_class(
        text=json.dumps(error.to_dict()),
        content_type="application/json",
    )


def _decode_body(raw_body: bytes) -> Any:
    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except (ValueError, RecursionError):
        return None


class WebhookVerification:
    """Per-application webhook verification for aiohttp."""

    def __init__(
        self,
        settings: WebhookSettings | None = None,
        error_handler: ErrorHandler | None = None,
        on_verify: RequestHook | None = None,
        verifier: WebhookVerifier | None = None,
    ) -> None:
        """Initialize the integration.

        Args:
            settings: Global settings for the verifier.
            error_handler: Called with (error, request) instead of raising.
                Its return value is sent as the response.
            on_verify: Called with (result, request) after a webhook passes.
            verifier: Existing verifier to use instead of building one. Its
                own on_verify hook still runs, before the one given here.
        """
        self.error_handler = error_handler
        self.on_verify = on_verify
        self.verifier = verifier or WebhookVerifier(settings)
        self._verifier_hook = self.verifier.on_verify
        self.verifier.on_verify = self._on_verified

    def setup(self, app: web.Application) -> None:
        """Register on an application so the replay guard stops on cleanup."""
        app[HOOKSEAL_KEY] = self
        app.on_cleanup.append(self._on_cleanup)

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.verifier.close()
        logger.debug("Webhook verification closed")

    async def _on_verified(
        self,
        result: VerificationResult,
        verification: VerificationRequest,
    ) -> None:
        request: web.Request = verification.context
        request[WEBHOOK_KEY] = WebhookData(
            verified=True,
            provider=result.provider,
            timestamp=result.timestamp,
            raw_body=verification.raw_body or b"",
            event_type=result.event_type,
        )
        if self._verifier_hook is not None:
            outcome = self._verifier_hook(result, verification)
            if inspect.isawaitable(outcome):
                await outcome
        if self.on_verify is not None:
            outcome = self.on_verify(result, request)
            if inspect.isawaitable(outcome):
                await outcome

    def protect(
        self,
        provider: ProviderName | str,
        secret: str | None = None,
        custom_config: CustomProviderConfig | None = None,
        replay_protection: ReplayProtectionOverride | dict[str, Any] | None = None,
    ) -> Callable[[Handler], Handler]:
        """Decorate a handler so it only runs for verified webhooks.

        Args:
            provider: Provider identifier for this route.
            secret: Secret override for this route.
            custom_config: Required when provider is "custom".
            replay_protection: Per-route replay protection override.
        """

        def decorator(handler: Handler) -> Handler:
            @functools.wraps(handler)
            async def wrapper(request: web.Request) -> web.StreamResponse:
                raw_body = await request.read()
                verification = VerificationRequest(
                    raw_body=raw_body,
                    headers=request.headers,
                    provider=provider,
                    secret=secret,
                    custom_config=custom_config,
                    replay_protection=replay_protection,
                    body=_decode_body(raw_body),
                    context=request,
                )
                try:
                    await self.verifier.verify(verification)
                except WebhookError as error:
                    if self.error_handler is not None:
                        response = self.error_handler(error, request)
                        if inspect.isawaitable(response):
                            response = await response
                        return response
                    raise error_response(error) from error
                return await handler(request)

            return wrapper

        return decorator


HOOKSEAL_KEY = web.AppKey("hookseal", WebhookVerification)
