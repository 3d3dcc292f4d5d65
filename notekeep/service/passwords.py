from __future__ import annotations

import asyncio
import concurrent.futures
import re
import secrets
from typing import Callable, Optional, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.errors import WeakPasswordError

logger = get_logger(__name__)

T = TypeVar("T")

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128
_SPECIAL_CHARS = re.compile(r"""[!@#$%^&*(),.?":{}|<>_\-+=\[\]\\;'`~/]""")


def password_problems(password: str) -> list[str]:
    """Return every violated strength rule, most basic first."""
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("Password must contain at least one number")
    if not _SPECIAL_CHARS.search(password):
        problems.append("Password must contain at least one special character")
    return problems


def ensure_strong_password(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise WeakPasswordError(problems[0], detail={"problems": problems})


class PasswordService:
    """argon2id hashing on a bounded worker pool.

    Hashing is deliberately expensive, so it never runs on the event loop and
    never takes more than ``password_hash_workers`` threads; a flood of login
    attempts queues here instead of starving token refreshes.
    """

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=settings.password_hash_workers,
            thread_name_prefix="password-hash",
        )
        # Same parameters as real hashes so unknown users cost the same
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(24))

    async def _run(self, func: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _verify_sync(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False

    async def hash(self, password: str) -> Tuple[str, str]:
        digest = await self._run(self._hasher.hash, password)
        return digest, PASSWORD_ALGO

    async def verify(self, stored_hash: str, algo: Optional[str], password: str) -> bool:
        if algo and algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            await self.dummy_verify(password)
            return False
        return await self._run(self._verify_sync, stored_hash, password)

    async def dummy_verify(self, password: str) -> None:
        """Spend one verification worth of work against a throwaway hash."""
        await self._run(self._verify_sync, self._dummy_hash, password)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("password_executor_shutdown", wait=wait)
