from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A unique field of a user or song record is already taken."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        self.message = message or f"{field} already exists"
        super().__init__(self.message)

    @property
    def detail(self) -> Dict[str, Any]:
        return {"field": self.field}


__all__ = ["ConstraintViolation"]
