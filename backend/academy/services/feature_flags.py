# Overview: Environment-gated feature flags.

from __future__ import annotations

from flask import current_app

BROADCAST = "ENABLE_BROADCAST_FEATURE"
CONTACT_SYNC = "ENABLE_RESEND_CONTACT_ADDITION"

ALLOWED_FLAGS = (BROADCAST, CONTACT_SYNC)


class UnknownFeatureFlagError(ValueError):
    """Flag name is not on the allow-list."""


def is_enabled(name: str) -> bool:
    """
    True only when the flag was explicitly turned on ("true" in the env).

    Raises UnknownFeatureFlagError for names outside ALLOWED_FLAGS so the
    public flags endpoint cannot be used to probe arbitrary config keys.
    """
    if name not in ALLOWED_FLAGS:
        raise UnknownFeatureFlagError(f"Unknown feature flag: {name}")
    return bool(current_app.config.get(name, False))


def all_flags() -> dict[str, bool]:
    return {name: is_enabled(name) for name in ALLOWED_FLAGS}
