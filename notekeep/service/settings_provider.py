from __future__ import annotations

import asyncio
from dataclasses import fields, replace
from typing import Any, Optional

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.errors import ValidationError
from notekeep.storage.common import AsyncStore
from notekeep.storage.models import AuthSettings

logger = get_logger(__name__)

_EDITABLE = frozenset(f.name for f in fields(AuthSettings)) - {"updated_at"}


class AuthSettingsProvider:
    """Admin-editable auth flags with an explicit cache.

    The first read loads the stored row, falling back to config defaults when
    none exists. ``update`` writes through and replaces the cached value;
    ``invalidate`` forces the next read back to storage.
    """

    def __init__(self, db: AsyncStore, settings: Settings) -> None:
        self.db = db
        self._defaults = AuthSettings(
            auth_disabled=settings.auth_disabled,
            allow_registration=settings.allow_registration,
        )
        self._cached: Optional[AuthSettings] = None
        self._lock = asyncio.Lock()

    async def get(self) -> AuthSettings:
        cached = self._cached
        if cached is not None:
            return cached
        stored = await self.db.get_auth_settings()
        self._cached = stored or replace(self._defaults)
        return self._cached

    async def update(self, **changes: Any) -> AuthSettings:
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValidationError(
                "Unknown settings", detail={"fields": sorted(unknown)}
            )
        async with self._lock:
            current = await self.get()
            saved = await self.db.save_auth_settings(
                replace(current, **{k: bool(v) for k, v in changes.items() if v is not None})
            )
            self._cached = saved
        logger.info("auth_settings_updated", **{k: getattr(saved, k) for k in _EDITABLE})
        return saved

    def invalidate(self) -> None:
        self._cached = None
