"""Credential resolution for Meta webhook verification.

Verify tokens and signing secrets can be set globally and per platform.
Per-platform values are additive: a handshake succeeds with any configured
token, and a signature is checked against a candidate list of secrets.
"""

from __future__ import annotations

from src.config import MetaSettings, PlatformCredentials
from src.models import Platform


class CredentialResolver:
    """Assembles verify tokens and candidate signing secrets from settings."""

    def __init__(self, meta: MetaSettings) -> None:
        self._meta = meta
        self._strict = meta.strict_secret_scope

    def _platform(self, platform: Platform) -> PlatformCredentials:
        if platform is Platform.INSTAGRAM:
            return self._meta.instagram
        return self._meta.messenger

    def verify_tokens(self) -> frozenset[str]:
        """All verify tokens accepted at the GET handshake."""
        tokens = {
            self._meta.verify_token,
            self._meta.instagram.verify_token,
            self._meta.messenger.verify_token,
        }
        return frozenset(t for t in tokens if t)

    def candidate_secrets(self, platform: Platform | None) -> list[str]:
        """Ordered signing secrets to try for traffic from ``platform``.

        Own secret first, then the global secret, then every other
        platform's secret (skipped when strict scoping is enabled).
        ``platform=None`` tries the global secret and all platform secrets.
        """
        ordered: list[str | None] = []
        if platform is not None:
            ordered.append(self._platform(platform).app_secret)
        ordered.append(self._meta.app_secret)
        if platform is None or not self._strict:
            ordered.extend(
                self._platform(other).app_secret
                for other in Platform
                if other is not platform
            )
        return list(dict.fromkeys(s for s in ordered if s))

    def access_token(self, platform: Platform) -> str | None:
        """Delivery credential: the page access token, else the global token."""
        return self._platform(platform).page_access_token or self._meta.access_token
