from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``kind`` is ``"unique"`` or ``"foreign_key"`` so the HTTP layer can map
    the violation without inspecting driver-specific errors.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        kind: str = "unique",
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.kind = kind


__all__ = ["ConstraintViolation"]
