"""Hookseal Webhook Providers.

Provider-specific signature formats for popular webhook senders.

Supported Providers:
- Stripe: Stripe-Signature "t=<ts>,v1=<hex>" over "{ts}.{body}"
- GitHub: X-Hub-Signature-256 "sha256=<hex>" over the body
- Slack: X-Slack-Signature "v0=<hex>" over "v0:{ts}:{body}"
- Shopify: X-Shopify-Hmac-SHA256 base64 HMAC-SHA256 over the body
- Twilio: X-Twilio-Signature base64 HMAC-SHA1 over the body
- Custom: user-defined header, algorithm, extractor and payload builder

Providers hold no state beyond their descriptor. They only know how a
sender encodes its signature. Freshness, replay and secret lookup live in
the verifier.

Usage:
    from hookseal.providers import get_provider

    provider = get_provider("github")
    token = provider.extract_signature(headers["x-hub-signature-256"])
    expected = provider.compute_signature(raw_body, secret)
    if provider.verify_signature(token, expected):
        ...
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hookseal.compare import SignatureEncoding, timing_safe_compare
from hookseal.errors import UnknownProviderError


class ProviderError(ValueError):
    """A signature or timestamp header did not match the provider's format."""


class HashAlgorithm(str, Enum):
    """HMAC digest algorithms accepted by providers."""

    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"


class ProviderName(str, Enum):
    """Provider identifiers understood by the registry."""

    STRIPE = "stripe"
    GITHUB = "github"
    SLACK = "slack"
    SHOPIFY = "shopify"
    TWILIO = "twilio"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Immutable description of a sender's wire format."""

    name: str
    """Provider identifier."""

    signature_header: str
    """Lower-cased header carrying the signature."""

    timestamp_header: str | None
    """Lower-cased header carrying the timestamp, if sent separately."""

    algorithm: HashAlgorithm
    """HMAC digest algorithm."""

    signature_encoding: SignatureEncoding
    """Encoding of the signature token."""

    def __post_init__(self) -> None:
        if not self.signature_header:
            raise ValueError("signature_header must not be empty")
        object.__setattr__(self, "signature_header", self.signature_header.lower())
        if self.timestamp_header:
            object.__setattr__(self, "timestamp_header", self.timestamp_header.lower())
        else:
            object.__setattr__(self, "timestamp_header", None)
        object.__setattr__(self, "algorithm", HashAlgorithm(self.algorithm))
        object.__setattr__(
            self, "signature_encoding", SignatureEncoding(self.signature_encoding)
        )


class CustomProviderConfig(BaseModel):
    """Configuration for a user-defined webhook provider.

    Example:
        config = CustomProviderConfig(
            name="acme",
            signature_header="X-Acme-Signature",
            timestamp_header="X-Acme-Timestamp",
            algorithm="sha256",
            build_payload=lambda body, ts: f"{ts}.{body.decode()}",
        )
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(min_length=1, description="Provider name used in logs and nonces.")
    signature_header: str = Field(min_length=1, description="Header containing the signature.")
    timestamp_header: str | None = Field(
        default=None,
        description="Header containing the timestamp (epoch seconds).",
    )
    algorithm: HashAlgorithm = Field(description="HMAC algorithm.")
    extract_signature: Callable[[str], str] | None = Field(
        default=None,
        description="Pulls the bare token out of the signature header value.",
    )
    build_payload: Callable[[bytes, str | None], str] | None = Field(
        default=None,
        description="Builds the signed string from the raw body and epoch-seconds timestamp.",
    )
    signature_encoding: SignatureEncoding = Field(
        default=SignatureEncoding.HEX,
        description="Signature encoding.",
    )

    @field_validator("algorithm", mode="before")
    @classmethod
    def _normalize_algorithm(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value


def _epoch_seconds(timestamp: datetime) -> int:
    return int(timestamp.timestamp())


def _parse_epoch(value: str) -> datetime:
    try:
        return datetime.fromtimestamp(int(value.strip()), tz=UTC)
    except (ValueError, OverflowError, OSError) as e:
        raise ProviderError(f"Invalid timestamp: {value!r}") from e


def _split_pairs(header_value: str) -> list[tuple[str, str]]:
    """Split "k1=v1,k2=v2" into pairs, keeping repeated keys."""
    pairs = []
    for item in header_value.split(","):
        key, sep, value = item.partition("=")
        if sep:
            pairs.append((key.strip(), value.strip()))
    return pairs


class WebhookProvider(ABC):
    """Base class for webhook providers.

    Subclasses set ``descriptor`` and implement signature extraction and the
    signed payload. Everything else has a sensible default.
    """

    descriptor: ProviderDescriptor

    embeds_timestamp: bool = False
    """True when the timestamp travels inside the signature header."""

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def signature_header(self) -> str:
        return self.descriptor.signature_header

    @property
    def timestamp_header(self) -> str | None:
        return self.descriptor.timestamp_header

    @property
    def algorithm(self) -> HashAlgorithm:
        return self.descriptor.algorithm

    @property
    def signature_encoding(self) -> SignatureEncoding:
        return self.descriptor.signature_encoding

    @abstractmethod
    def extract_signature(self, header_value: str) -> str:
        """Return the bare signature token from the header value.

        Raises:
            ProviderError: If the header does not use the expected format.
        """
        ...

    def parse_timestamp(self, header_value: str) -> datetime:
        """Parse an epoch-seconds timestamp header."""
        return _parse_epoch(header_value)

    @abstractmethod
    def build_payload(self, raw_body: bytes, timestamp: datetime | None) -> bytes:
        """Return the exact bytes the sender signed."""
        ...

    def compute_signature(
        self,
        raw_body: bytes,
        secret: str,
        timestamp: datetime | None = None,
    ) -> str:
        """Compute the expected signature token.

        Args:
            raw_body: Unmodified request body.
            secret: Shared secret.
            timestamp: Sender-asserted time, when the scheme signs it.

        Returns:
            Encoded signature token.
        """
        return self._hmac(self.build_payload(raw_body, timestamp), secret)

    def verify_signature(self, provided: str, expected: str) -> bool:
        return timing_safe_compare(provided, expected, self.signature_encoding)

    def extract_event_type(self, body: Any) -> str | None:
        return None

    def signature_headers(self, token: str, timestamp: datetime | None) -> dict[str, str]:
        """Headers a sender would attach for this token (inverse of extraction)."""
        headers = {self.signature_header: token}
        if self.timestamp_header and timestamp is not None:
            headers[self.timestamp_header] = str(_epoch_seconds(timestamp))
        return headers

    def _hmac(self, payload: bytes, secret: str) -> str:
        digest = hmac.new(
            secret.encode("utf-8"),
            payload,
            getattr(hashlib, self.algorithm.value),
        ).digest()
        if self.signature_encoding is SignatureEncoding.BASE64:
            return base64.b64encode(digest).decode("ascii")
        return digest.hex()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _type_field(body: Any) -> str | None:
    if isinstance(body, Mapping):
        value = body.get("type")
        if isinstance(value, str):
            return value
    return None


class StripeProvider(WebhookProvider):
    """Stripe webhook signatures.

    Stripe sends: Stripe-Signature: t=<timestamp>,v1=<signature>[,v0=...]

    There is no separate timestamp header; ``t`` is parsed out of the
    signature header itself and is part of the signed payload.
    """

    descriptor = ProviderDescriptor(
        name=ProviderName.STRIPE.value,
        signature_header="stripe-signature",
        timestamp_header=None,
        algorithm=HashAlgorithm.SHA256,
        signature_encoding=SignatureEncoding.HEX,
    )
    embeds_timestamp = True

    def extract_signature(self, header_value: str) -> str:
        for key, value in _split_pairs(header_value):
            if key == "v1" and value:
                return value
        raise ProviderError("No v1 signature found in Stripe-Signature header")

    def parse_timestamp(self, header_value: str) -> datetime:
        for key, value in _split_pairs(header_value):
            if key == "t" and value:
                return _parse_epoch(value)
        raise ProviderError("No timestamp found in Stripe-Signature header")

    def build_payload(self, raw_body: bytes, timestamp: datetime | None) -> bytes:
        if timestamp is None:
            raise ProviderError("Timestamp is required for Stripe webhook verification")
        return f"{_epoch_seconds(timestamp)}.".encode() + raw_body

    def extract_event_type(self, body: Any) -> str | None:
        return _type_field(body)

    def signature_headers(self, token: str, timestamp: datetime | None) -> dict[str, str]:
        if timestamp is None:
            raise ProviderError("Timestamp is required for Stripe webhook signatures")
        return {self.signature_header: f"t={_epoch_seconds(timestamp)},v1={token}"}


class GitHubProvider(WebhookProvider):
    """GitHub webhook signatures.

    GitHub sends: X-Hub-Signature-256: sha256=<signature>

    The event name travels in X-GitHub-Event, so no event type is read from
    the body.
    """

    descriptor = ProviderDescriptor(
        name=ProviderName.GITHUB.value,
        signature_header="x-hub-signature-256",
        timestamp_header=None,
        algorithm=HashAlgorithm.SHA256,
        signature_encoding=SignatureEncoding.HEX,
    )

    prefix = "sha256="

    def extract_signature(self, header_value: str) -> str:
        if not header_value.startswith(self.prefix):
            raise ProviderError("GitHub signature must start with 'sha256='")
        return header_value[len(self.prefix) :]

    def build_payload(self, raw_body: bytes, timestamp: datetime | None) -> bytes:
        return raw_body

    def signature_headers(self, token: str, timestamp: datetime | None) -> dict[str, str]:
        return {self.signature_header: f"{self.prefix}{token}"}


class SlackProvider(WebhookProvider):
    """Slack webhook signatures.

    Slack sends:
    - X-Slack-Signature: v0=<signature>
    - X-Slack-Request-Timestamp: <timestamp>

    Signature is computed over: v0:{timestamp}:{body}
    """

    descriptor = ProviderDescriptor(
        name=ProviderName.SLACK.value,
        signature_header="x-slack-signature",
        timestamp_header="x-slack-request-timestamp",
        algorithm=HashAlgorithm.SHA256,
        signature_encoding=SignatureEncoding.HEX,
    )

    prefix = "v0="

    def extract_signature(self, header_value: str) -> str:
        if not header_value.startswith(self.prefix):
            raise ProviderError("Slack signature must start with 'v0='")
        return header_value[len(self.prefix) :]

    def build_payload(self, raw_body: bytes, timestamp: datetime | None) -> bytes:
        if timestamp is None:
            raise ProviderError("Timestamp is required for Slack webhook verification")
        return f"v0:{_epoch_seconds(timestamp)}:".encode() + raw_body

    def extract_event_type(self, body: Any) -> str | None:
        return _type_field(body)

    def signature_headers(self, token: str, timestamp: datetime | None) -> dict[str, str]:
        if timestamp is None:
            raise ProviderError("Timestamp is required for Slack webhook signatures")
        return super().signature_headers(f"{self.prefix}{token}", timestamp)


class ShopifyProvider(WebhookProvider):
    """Shopify webhook signatures: base64 HMAC-SHA256 of the raw body.

    The topic lives in X-Shopify-Topic, not in the body.
    """

    descriptor = ProviderDescriptor(
        name=ProviderName.SHOPIFY.value,
        signature_header="x-shopify-hmac-sha256",
        timestamp_header=None,
        algorithm=HashAlgorithm.SHA256,
        signature_encoding=SignatureEncoding.BASE64,
    )

    def extract_signature(self, header_value: str) -> str:
        return header_value

    def build_payload(self, raw_body: bytes, timestamp: datetime | None) -> bytes:
        return raw_body


class TwilioProvider(WebhookProvider):
    """Twilio webhook signatures: base64 HMAC-SHA1.

    Twilio actually signs the full URL followed by the sorted form
    parameters. Only the raw body is signed here, which matches JSON
    callbacks signed the same way but not form-encoded ones.
    """

    descriptor = ProviderDescriptor(
        name=ProviderName.TWILIO.value,
        signature_header="x-twilio-signature",
        timestamp_header=None,
        algorithm=HashAlgorithm.SHA1,
        signature_encoding=SignatureEncoding.BASE64,
    )

    def extract_signature(self, header_value: str) -> str:
        return header_value

    def build_payload(self, raw_body: bytes, timestamp: datetime | None) -> bytes:
        return raw_body


class CustomProvider(WebhookProvider):
    """User-defined provider built from a CustomProviderConfig."""

    def __init__(self, config: CustomProviderConfig) -> None:
        self.config = config
        self.descriptor = ProviderDescriptor(
            name=config.name,
            signature_header=config.signature_header,
            timestamp_header=config.timestamp_header,
            algorithm=config.algorithm,
            signature_encoding=config.signature_encoding,
        )

    def extract_signature(self, header_value: str) -> str:
        if self.config.extract_signature is None:
            return header_value
        try:
            signature = self.config.extract_signature(header_value)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Custom signature extractor failed: {e}") from e
        if not isinstance(signature, str):
            raise ProviderError(
                f"Custom signature extractor must return str, got {type(signature).__name__}"
            )
        return signature

    def build_payload(self, raw_body: bytes, timestamp: datetime | None) -> bytes:
        if self.config.build_payload is None:
            return raw_body
        ts = str(_epoch_seconds(timestamp)) if timestamp is not None else None
        try:
            payload = self.config.build_payload(raw_body, ts)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Custom payload builder failed: {e}") from e
        if not isinstance(payload, str):
            raise ProviderError(
                f"Custom payload builder must return str, got {type(payload).__name__}"
            )
        try:
            return payload.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ProviderError(f"Custom payload is not valid UTF-8: {e}") from e


# Provider registry
WEBHOOK_PROVIDERS: dict[ProviderName, type[WebhookProvider]] = {
    ProviderName.STRIPE: StripeProvider,
    ProviderName.GITHUB: GitHubProvider,
    ProviderName.SLACK: SlackProvider,
    ProviderName.SHOPIFY: ShopifyProvider,
    ProviderName.TWILIO: TwilioProvider,
}


def get_provider(
    name: ProviderName | str,
    custom_config: CustomProviderConfig | None = None,
) -> WebhookProvider:
    """Get a webhook provider by name.

    Args:
        name: Provider identifier.
        custom_config: Required when name is "custom".

    Returns:
        A fresh provider instance.

    Raises:
        UnknownProviderError: If the identifier is not supported.
        ProviderError: If "custom" is requested without configuration.
    """
    try:
        key = ProviderName(name.lower() if isinstance(name, str) else name)
    except ValueError:
        raise UnknownProviderError(str(name)) from None

    if key is ProviderName.CUSTOM:
        if custom_config is None:
            raise ProviderError("Custom provider requires custom_config")
        return CustomProvider(custom_config)

    return WEBHOOK_PROVIDERS[key]()


def sign_payload(
    provider: WebhookProvider,
    raw_body: bytes,
    secret: str,
    timestamp: datetime | int | None = None,
) -> dict[str, str]:
    """Sign a payload the way the provider's sender would.

    Args:
        provider: Provider whose scheme to use.
        raw_body: Body to sign.
        secret: Shared secret.
        timestamp: Datetime or epoch seconds. Defaults to now.

    Returns:
        Header name to value mapping, lower-cased names.
    """
    if timestamp is None:
        timestamp = int(time.time())
    if isinstance(timestamp, int):
        timestamp = datetime.fromtimestamp(timestamp, tz=UTC)

    token = provider.compute_signature(raw_body, secret, timestamp)
    return provider.signature_headers(token, timestamp)
