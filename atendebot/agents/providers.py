"""Provider credential helpers for the language-model and speech clients."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderCredentials:
    """Container for credentials resolved for a provider."""

    provider: str
    api_key: str | None
    base_url: str | None = None
    organization: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def client_kwargs(self) -> dict[str, str]:
        """Keyword arguments suitable for constructing the provider SDK client."""

        kwargs: dict[str, str] = {}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["base_url"] = self.base_url
        if self.organization:
            kwargs["organization"] = self.organization
        return kwargs


class ProviderRegistry:
    """Resolve provider credentials from environment or explicit overrides."""

    _DEFAULT_ENV_MAP: Mapping[str, tuple[str, str, str]] = {
        "openai": ("OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_ORGANIZATION"),
        "azure": ("AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT", ""),
    }

    def __init__(self, overrides: Mapping[str, Mapping[str, str]] | None = None):
        self._overrides = {k.lower(): dict(v) for k, v in (overrides or {}).items()}

    def get_credentials(self, provider: str = "openai") -> ProviderCredentials:
        """Return credentials for ``provider``.

        Explicit overrides (e.g. injected during testing) win over the
        environment variables listed in ``_DEFAULT_ENV_MAP``.
        """

        key = provider.lower()
        if key in self._overrides:
            override = self._overrides[key]
            return ProviderCredentials(
                provider=provider,
                api_key=override.get("api_key"),
                base_url=override.get("base_url"),
                organization=override.get("organization"),
            )
        key_var, url_var, org_var = self._DEFAULT_ENV_MAP.get(key, ("", "", ""))
        return ProviderCredentials(
            provider=provider,
            api_key=os.getenv(key_var) if key_var else None,
            base_url=os.getenv(url_var) if url_var else None,
            organization=os.getenv(org_var) if org_var else None,
        )
