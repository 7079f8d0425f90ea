"""
Pydantic schemas for the local status API.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, validator

from ..rtc.media import MEDIA_KINDS


class MuteRequest(BaseModel):
    muted: bool = True
    kind: Optional[str] = None

    @validator("kind", pre=True)
    def _normalise_kind(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        result = str(value).strip().lower()
        if not result or result == "all":
            return None
        if result not in MEDIA_KINDS:
            raise ValueError(f"kind must be one of {', '.join(MEDIA_KINDS)}")
        return result


class ChatRequest(BaseModel):
    text: str

    @validator("text", pre=True)
    def _require_text(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("text is required")
        return result
