from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique, check or foreign-key constraint rejected a write.

    ``detail`` carries the Postgres constraint name when the driver reports
    one, e.g. ``{"constraint": "users_email_key"}``.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def constraint(self) -> Optional[str]:
        return self.detail.get("constraint")
