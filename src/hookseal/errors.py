"""Hookseal error taxonomy.

Every verification failure is a distinct WebhookError subclass so that
operators can tell attack attempts apart from integration mistakes.

Status code hints:
- 500: server misconfiguration (missing secret, raw body not captured)
- 400: route misconfiguration (unknown provider)
- 401: authentication failure (signature, timestamp, replay)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class WebhookError(Exception):
    """Base class for webhook verification errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 401,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.provider = provider

    @property
    def is_configuration_error(self) -> bool:
        """True when the failure points at the server, not the sender."""
        return self.status_code >= 500

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a JSON error response."""
        return {
            "error": self.code,
            "message": self.message,
            "provider": self.provider,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, provider={self.provider!r})"


class MissingSignatureError(WebhookError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            "MISSING_SIGNATURE",
            f"Missing webhook signature header for {provider}",
            401,
            provider,
        )


class InvalidSignatureError(WebhookError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            "INVALID_SIGNATURE",
            f"Invalid webhook signature for {provider}",
            401,
            provider,
        )


class TimestampExpiredError(WebhookError):
    """Signature timestamp is outside the tolerance window."""

    def __init__(self, provider: str, timestamp: datetime, tolerance: int) -> None:
        super().__init__(
            "TIMESTAMP_EXPIRED",
            f"Webhook timestamp expired for {provider}",
            401,
            provider,
        )
        self.timestamp = timestamp
        self.tolerance = tolerance

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["timestamp"] = int(self.timestamp.timestamp())
        data["tolerance"] = self.tolerance
        return data


class ReplayAttackError(WebhookError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            "REPLAY_ATTACK",
            f"Duplicate webhook detected for {provider}",
            401,
            provider,
        )


class MissingRawBodyError(WebhookError):
    def __init__(self, provider: str | None = None) -> None:
        super().__init__(
            "MISSING_RAW_BODY",
            "Raw body is required for webhook verification. "
            "Read the request body before it is decoded.",
            500,
            provider,
        )


class UnknownProviderError(WebhookError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            "UNKNOWN_PROVIDER",
            f"Unknown webhook provider: {provider}",
            400,
            provider,
        )


class MissingSecretError(WebhookError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            "MISSING_SECRET",
            f"Missing secret for provider: {provider}",
            500,
            provider,
        )
