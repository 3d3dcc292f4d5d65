from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.sessions import RequestMeta
from notekeep.service.tokens import hash_token, random_hex
from notekeep.storage.common import AsyncStore
from notekeep.storage.models import TrustedDevice, new_id, utcnow

logger = get_logger(__name__)

# Order matters: Edge and Chrome both claim "Safari", iOS claims "Mac OS X"
_BROWSERS = (("Firefox", "Firefox"), ("Edg", "Edge"), ("Chrome", "Chrome"), ("Safari", "Safari"))
_SYSTEMS = (
    ("Windows", "Windows"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Mac OS", "macOS"),
    ("Android", "Android"),
    ("Linux", "Linux"),
)


def device_label(user_agent: Optional[str]) -> str:
    """Human readable label such as ``Chrome on Windows``."""
    if not user_agent:
        return "Unknown device"
    browser = next((name for marker, name in _BROWSERS if marker in user_agent), None)
    system = next((name for marker, name in _SYSTEMS if marker in user_agent), None)
    if not browser and not system:
        return "Unknown device"
    return f"{browser or 'Unknown browser'} on {system or 'unknown OS'}"


class TrustedDeviceService:
    """Long-lived per-device tokens that let a known device skip the second factor."""

    def __init__(
        self,
        db: AsyncStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.ttl = timedelta(days=settings.trusted_device_ttl_days)
        self._clock = clock

    async def create(self, user_id: str, meta: RequestMeta) -> str:
        token = random_hex(32)
        now = self._clock()
        device = TrustedDevice(
            id=new_id(),
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=now + self.ttl,
            user_agent=meta.user_agent,
            origin_address=meta.origin_address,
            label=device_label(meta.user_agent),
            created_at=now,
        )
        await self.db.create_trusted_device(device)
        logger.info("trusted_device_created", user_id=user_id, label=device.label)
        return token

    async def verify(self, token: Optional[str], user_id: str) -> bool:
        """True only for an unexpired device token created by ``user_id``."""
        if not token:
            return False
        device = await self.db.get_trusted_device_by_hash(hash_token(token))
        if device is None:
            return False
        if device.is_expired(self._clock()):
            await self.db.delete_trusted_device(device.id)
            logger.info("trusted_device_expired", user_id=device.user_id, device_id=device.id)
            return False
        if device.user_id != user_id:
            logger.warning("trusted_device_foreign", user_id=user_id, device_id=device.id)
            return False
        return True

    async def list(self, user_id: str) -> List[TrustedDevice]:
        return await self.db.list_trusted_devices(user_id, self._clock())

    async def revoke(self, device_id: str, user_id: str) -> bool:
        removed = await self.db.delete_trusted_device(device_id, user_id)
        if removed:
            logger.info("trusted_device_revoked", user_id=user_id, device_id=device_id)
        return removed

    async def revoke_all(self, user_id: str) -> int:
        removed = await self.db.delete_user_trusted_devices(user_id)
        logger.info("trusted_devices_revoked_all", user_id=user_id, revoked=removed)
        return removed

    async def cleanup_expired(self) -> int:
        return await self.db.delete_expired_trusted_devices(self._clock())
