"""
Entitlement evaluation - the gate every processing request passes through.

``evaluate`` is pure: it reads the session and the static tool table and
never mutates anything. Usage is recorded separately by ``commit`` once the
operation has succeeded, so a failed operation never consumes quota.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from .errors import InvalidInput, InvalidTool, PremiumRequired, QuotaExhausted
from .stores import Session, SessionStore

logger = logging.getLogger(__name__)


class ToolConfig(BaseModel):
    """Static configuration for one tool"""
    requires_premium: bool = Field(default=False, description="Tool is unusable without premium")
    free_limit: Optional[int] = Field(default=None, description="Free-tier ceiling, None for unlimited")


TOOL_CONFIGS: Dict[str, ToolConfig] = {
    "merge": ToolConfig(),
    "compress": ToolConfig(),
    "split": ToolConfig(free_limit=5),
    "edit": ToolConfig(),
    "repair": ToolConfig(free_limit=2),
    "convert": ToolConfig(),
}

FREE_CONVERT_FORMATS: FrozenSet[str] = frozenset({"word", "excel", "text"})
PREMIUM_CONVERT_FORMATS: FrozenSet[str] = frozenset({"powerpoint", "images"})


class Permit(BaseModel):
    """Outcome of a successful entitlement check"""
    tool: str
    is_premium: bool
    used: int
    limit: Optional[int]
    remaining_after_success: Optional[int] = Field(
        default=None, description="Quota left once this operation succeeds, None for no limit"
    )


def evaluate(session: Session, tool: Optional[str], convert_to: Optional[str] = None,
             now: Optional[datetime] = None,
             configs: Optional[Dict[str, ToolConfig]] = None) -> Permit:
    """
    Decide whether ``session`` may run ``tool``.

    Raises:
        InvalidTool: tool name is not configured
        PremiumRequired: tool or convert sub-format is premium-only
        QuotaExhausted: free-tier ceiling reached
    """
    configs = configs if configs is not None else TOOL_CONFIGS
    config = configs.get(tool or "")
    if config is None:
        raise InvalidTool(tool)

    premium = SessionStore.is_premium(session, now)

    if config.requires_premium and not premium:
        raise PremiumRequired(f"Premium access required for {tool}.")

    used = session.usage.get(tool, 0)
    if config.free_limit is not None and not premium and used >= config.free_limit:
        raise QuotaExhausted(tool, used, config.free_limit)

    if tool == "convert" and convert_to in PREMIUM_CONVERT_FORMATS and not premium:
        raise PremiumRequired(f"Premium access required for {convert_to} conversion.", format=convert_to)

    if config.free_limit is None or premium:
        remaining = None
    else:
        remaining = max(0, config.free_limit - (used + 1))

    return Permit(
        tool=tool,
        is_premium=premium,
        used=used,
        limit=config.free_limit,
        remaining_after_success=remaining,
    )


def require_convert_format(tool: str, convert_to: Optional[str]) -> None:
    if tool == "convert" and not convert_to:
        raise InvalidInput("No conversion format specified")


def commit(sessions: SessionStore, session: Session, tool: str,
           convert_to: Optional[str] = None, now: Optional[datetime] = None) -> Permit:
    """
    Re-check and record one successful use atomically.

    Two concurrent requests near the quota boundary can both pass the initial
    check; whichever commits second is rejected here with ``QuotaExhausted``.
    """
    with sessions.lock:
        permit = evaluate(session, tool, convert_to, now=now)
        sessions.record_usage(session, tool)
    logger.debug(f"Recorded {tool} usage for {session.user_id}: {session.usage[tool]}")
    return permit
