from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from notekeep.logging import get_logger
from notekeep.service.tokens import hash_token
from notekeep.storage.common import AsyncStore

logger = get_logger(__name__)

BATCH_SIZE = 10
_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def generate_recovery_code() -> str:
    raw = secrets.token_hex(4).upper()
    return f"{raw[:4]}-{raw[4:]}"


def normalize_recovery_code(code: str) -> str:
    """Accept ``abcd-1234``, ``ABCD 1234`` and ``abcd1234`` alike."""
    return _NON_ALNUM.sub("", code.upper())


@dataclass
class RecoveryCodeStatus:
    total: int
    remaining: int
    created_at: Optional[datetime]


class RecoveryCodeService:
    def __init__(self, db: AsyncStore) -> None:
        self.db = db

    async def generate(self, user_id: str) -> List[str]:
        """Replace the user's batch; returns the plaintext codes, shown once."""
        codes = [generate_recovery_code() for _ in range(BATCH_SIZE)]
        await self.db.replace_recovery_codes(
            user_id, [hash_token(normalize_recovery_code(c)) for c in codes]
        )
        logger.info("recovery_codes_generated", user_id=user_id, code_count=len(codes))
        return codes

    async def consume(self, user_id: str, code: str) -> bool:
        normalized = normalize_recovery_code(code)
        if not normalized:
            return False
        used = await self.db.consume_recovery_code(user_id, hash_token(normalized))
        if used:
            remaining = await self.db.count_unused_recovery_codes(user_id)
            logger.info("recovery_code_used", user_id=user_id, remaining=remaining)
        else:
            logger.warning("recovery_code_rejected", user_id=user_id)
        return used

    async def status(self, user_id: str) -> RecoveryCodeStatus:
        return RecoveryCodeStatus(
            total=await self.db.count_recovery_codes(user_id),
            remaining=await self.db.count_unused_recovery_codes(user_id),
            created_at=await self.db.recovery_codes_created_at(user_id),
        )

    async def delete_all(self, user_id: str) -> int:
        return await self.db.delete_recovery_codes(user_id)
