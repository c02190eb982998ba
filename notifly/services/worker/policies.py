"""Read-only tenant policy lookups used by the delivery worker."""

from sqlalchemy import select

from notifly.common.config import settings
from notifly.common.models import EventChannelPolicy, RetryPolicy, UserChannelPreference


class FallbackResolver:
    """`Resolve(tenant, event type) -> ordered channels`.

    A tenant/event-type policy row overrides the default order; a missing row
    is not an error.
    """

    def __init__(self, session_factory, default_order: list[str] | None = None) -> None:
        self.session_factory = session_factory
        self.default_order = list(default_order or settings.fallback_order)

    def resolve(self, tenant_id: str, event_type: str) -> list[str]:
        with self.session_factory() as db:
            order = db.execute(
                select(EventChannelPolicy.fallback_order).where(
                    EventChannelPolicy.tenant_id == tenant_id,
                    EventChannelPolicy.event_type == event_type,
                )
            ).scalar_one_or_none()
        if not order:
            return list(self.default_order)
        resolved = []
        for channel in order:
            normalized = str(channel).strip().upper()
            if normalized and normalized not in resolved:
                resolved.append(normalized)
        return resolved or list(self.default_order)


class ChannelPreferences:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def disabled_channels(self, tenant_id: str, user_id: str | None) -> set[str]:
        """Channels the user explicitly switched off; no row means enabled."""

        if not user_id:
            return set()
        with self.session_factory() as db:
            rows = db.execute(
                select(UserChannelPreference.channel).where(
                    UserChannelPreference.tenant_id == tenant_id,
                    UserChannelPreference.user_id == user_id,
                    UserChannelPreference.enabled.is_(False),
                )
            ).scalars()
            return {channel.upper() for channel in rows}


class RetryBudget:
    def __init__(self, session_factory, default_max_attempts: int | None = None) -> None:
        self.session_factory = session_factory
        self.default_max_attempts = (
            default_max_attempts if default_max_attempts is not None else settings.max_attempts
        )

    def max_attempts(self, tenant_id: str, event_type: str) -> int:
        with self.session_factory() as db:
            override = db.execute(
                select(RetryPolicy.max_attempts).where(
                    RetryPolicy.tenant_id == tenant_id,
                    RetryPolicy.event_type == event_type,
                )
            ).scalar_one_or_none()
        return override if override is not None else self.default_max_attempts
