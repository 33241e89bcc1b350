"""
Provider registry.

Decides which payment providers are usable under the current configuration.
The provider map is built lazily on first use, memoized, and treated as
read-only afterwards. A provider whose configuration is missing is left out
of the map entirely (with a human-readable reason recorded), so looking it up
surfaces ``UnsupportedProviderError`` instead of a half-working provider.

The registry is an ordinary object owned by the composition root
(``payment_core.main``); tests build their own instances.
"""

import logging
import threading
from typing import Optional

from payment_core.config import Settings, settings as default_settings
from payment_core.engine.errors import ProviderConfigurationError, UnsupportedProviderError
from payment_core.models.enums import ProviderName
from payment_core.providers.base import PaymentProvider
from payment_core.providers.manual import ManualPaymentProvider
from payment_core.providers.stripe_provider import StripePaymentProvider
from payment_core.storage.base import PaymentStore

logger = logging.getLogger("payment_core.providers.registry")


class ProviderRegistry:
    def __init__(
        self,
        config: Optional[Settings] = None,
        store: Optional[PaymentStore] = None,
        stripe_client=None,
    ):
        self._config = config or default_settings
        self._store = store
        self._stripe_client = stripe_client
        self._providers: Optional[dict[str, PaymentProvider]] = None
        self._disabled: dict[str, str] = {}
        self._lock = threading.Lock()

    def _build(self) -> tuple[dict[str, PaymentProvider], dict[str, str]]:
        providers: dict[str, PaymentProvider] = {}
        disabled: dict[str, str] = {}

        providers[ProviderName.MANUAL.value] = ManualPaymentProvider(
            store=self._store,
            allow_status_synthesis=self._config.manual_status_synthesis,
        )

        if not self._config.stripe_secret_key:
            disabled[ProviderName.STRIPE.value] = "Stripe secret key is not configured"
        else:
            try:
                stripe_provider = StripePaymentProvider(
                    secret_key=self._config.stripe_secret_key,
                    publishable_key=self._config.stripe_publishable_key,
                    timeout_seconds=self._config.gateway_timeout_seconds,
                    client=self._stripe_client,
                )
            except ProviderConfigurationError as e:
                disabled[ProviderName.STRIPE.value] = str(e)
            else:
                if stripe_provider.validate_config():
                    providers[ProviderName.STRIPE.value] = stripe_provider
                else:
                    disabled[ProviderName.STRIPE.value] = "Stripe configuration is invalid"

        for name, reason in disabled.items():
            logger.warning("Payment provider %s disabled: %s", name, reason)
        logger.info("Payment providers enabled: %s", ", ".join(sorted(providers)) or "none")
        return providers, disabled

    def get_providers(self) -> dict[str, PaymentProvider]:
        """Enabled providers by name. Built once, then served from cache."""
        if self._providers is None:
            with self._lock:
                if self._providers is None:
                    providers, disabled = self._build()
                    self._disabled = disabled
                    self._providers = providers
        return self._providers

    def get(self, name: str) -> PaymentProvider:
        provider = self.get_providers().get(name)
        if provider is None:
            logger.error("Payment provider not configured: %s", name)
            raise UnsupportedProviderError(name, self.get_disabled_reason(name))
        return provider

    def is_enabled(self, name: str) -> bool:
        return name in self.get_providers()

    def get_disabled_reason(self, name: str) -> Optional[str]:
        """Why ``name`` is unavailable, or None if enabled (or never heard of)."""
        self.get_providers()
        return self._disabled.get(name)

    def reset(self) -> None:
        """Drop the cached map. Test/ops use only; not safe under concurrent use."""
        with self._lock:
            self._providers = None
            self._disabled = {}
