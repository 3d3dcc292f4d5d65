from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key constraint rejects a write.

    ``field`` names the offending column when the backend can tell
    (``username`` or ``email`` for account conflicts).
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or {}
        if field and "field" not in self.detail:
            self.detail["field"] = field


__all__ = ["ConstraintViolation"]
