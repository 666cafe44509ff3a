"""Hookseal Webhook Verification.

Verifies that inbound webhooks come from a trusted sender and have not been
replayed, with constant-time signature comparison.

Supported Providers:
- Stripe: Stripe-Signature with embedded timestamp
- GitHub: X-Hub-Signature-256 with HMAC-SHA256
- Slack: X-Slack-Signature with X-Slack-Request-Timestamp
- Shopify: X-Shopify-Hmac-SHA256 (base64)
- Twilio: X-Twilio-Signature (base64 HMAC-SHA1 of the body)
- Custom: configurable header, algorithm, extractor and payload

Security Features:
- Constant-time signature comparison
- Timestamp validation within a tolerance window
- Nonce-based replay protection (in-memory or Redis)

Usage:
    from hookseal import VerificationRequest, WebhookSettings, WebhookVerifier

    settings = WebhookSettings(providers={"github": "your-webhook-secret"})
    async with WebhookVerifier(settings) as verifier:
        result = await verifier.check(
            VerificationRequest(raw_body=body, headers=headers, provider="github")
        )

    if result.valid:
        print("Webhook verified!")
    else:
        print(f"Verification failed: {result.error}")
"""

__version__ = "0.1.0"

from hookseal.compare import SignatureEncoding, timing_safe_compare
from hookseal.config import (
    EffectiveConfig,
    ReplayProtectionConfig,
    ReplayProtectionOverride,
    RouteOptions,
    WebhookSettings,
    clear_settings,
    get_settings,
    load_settings,
    resolve_route_config,
)
from hookseal.errors import (
    InvalidSignatureError,
    MissingRawBodyError,
    MissingSecretError,
    MissingSignatureError,
    ReplayAttackError,
    TimestampExpiredError,
    UnknownProviderError,
    WebhookError,
)
from hookseal.providers import (
    WEBHOOK_PROVIDERS,
    CustomProvider,
    CustomProviderConfig,
    GitHubProvider,
    HashAlgorithm,
    ProviderDescriptor,
    ProviderError,
    ProviderName,
    ShopifyProvider,
    SlackProvider,
    StripeProvider,
    TwilioProvider,
    WebhookProvider,
    get_provider,
    sign_payload,
)
from hookseal.middleware import HOOKSEAL_KEY, WebhookData, WebhookVerification
from hookseal.redis_storage import RedisNonceStorage
from hookseal.replay import (
    AtomicNonceStorage,
    InMemoryNonceStorage,
    NonceStorage,
    ReplayGuard,
    SweepableNonceStorage,
    build_nonce,
)
from hookseal.verifier import VerificationRequest, VerificationResult, WebhookVerifier

__all__ = [
    "__version__",
    # Verifier
    "WebhookVerifier",
    "VerificationRequest",
    "VerificationResult",
    # Providers
    "WebhookProvider",
    "ProviderDescriptor",
    "ProviderName",
    "HashAlgorithm",
    "SignatureEncoding",
    "StripeProvider",
    "GitHubProvider",
    "SlackProvider",
    "ShopifyProvider",
    "TwilioProvider",
    "CustomProvider",
    "CustomProviderConfig",
    "ProviderError",
    # Registry
    "WEBHOOK_PROVIDERS",
    "get_provider",
    "sign_payload",
    # Replay protection
    "ReplayGuard",
    "NonceStorage",
    "AtomicNonceStorage",
    "SweepableNonceStorage",
    "InMemoryNonceStorage",
    "RedisNonceStorage",
    "build_nonce",
    # Configuration
    "WebhookSettings",
    "ReplayProtectionConfig",
    "ReplayProtectionOverride",
    "RouteOptions",
    "EffectiveConfig",
    "resolve_route_config",
    "load_settings",
    "get_settings",
    "clear_settings",
    # Errors
    "WebhookError",
    "MissingSecretError",
    "MissingRawBodyError",
    "UnknownProviderError",
    "MissingSignatureError",
    "InvalidSignatureError",
    "TimestampExpiredError",
    "ReplayAttackError",
    # aiohttp
    "WebhookVerification",
    "WebhookData",
    "HOOKSEAL_KEY",
    # Utilities
    "timing_safe_compare",
]
