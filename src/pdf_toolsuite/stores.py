"""
In-memory stores for sessions, premium codes and pending payments.

The three tables live for the lifetime of the process. They are owned by a
``Stores`` container created by the server factory and handed to every
component that needs them, so each test can work against a fresh set.
"""

import logging
import secrets
import string
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import InvalidCode

logger = logging.getLogger(__name__)

TOOL_NAMES = ("merge", "compress", "split", "edit", "repair", "convert")

PREDEFINED_CODES = frozenset({
    "PREMIUM24H",
    "TESTCODE123",
    "LAUNCH2024",
    "DEMO2024",
    "DIRECTEDIT2024",
})

ADMIN_ORIGIN = "admin"
PREMIUM_HOURS = 24

_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def random_base36(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def generate_user_id() -> str:
    return f"user_{_epoch_ms()}_{random_base36(9)}"


def generate_order_id() -> str:
    return f"ORDER_{_epoch_ms()}_{random_base36(9)}"


def generate_premium_code() -> str:
    timestamp = to_base36(_epoch_ms()).upper()
    return f"PREMIUM_{timestamp}_{random_base36(6).upper()}"


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class Session(BaseModel):
    """Usage counters and premium window for one client token"""
    user_id: str
    usage: Dict[str, int] = Field(default_factory=lambda: {tool: 0 for tool in TOOL_NAMES})
    premium_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class PremiumCode(BaseModel):
    """A server-generated premium activation code"""
    code: str
    origin_user_id: str
    created_at: datetime = Field(default_factory=utcnow)
    used: bool = False
    activated_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    payment_order_id: Optional[str] = None
    payer_id: Optional[str] = None


class PendingPayment(BaseModel):
    """A payment order awaiting capture"""
    order_id: str
    user_id: str
    amount: str
    status: str = "pending"
    created_at: datetime = Field(default_factory=utcnow)


class RedemptionInfo(BaseModel):
    code: str
    user_id: str
    premium_until: datetime
    predefined: bool


class SessionStore:
    """Resolves client tokens to sessions and mutates their counters"""

    def __init__(self, lock: Optional[threading.RLock] = None):
        self.lock = lock or threading.RLock()
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, user_id: str) -> Optional[Session]:
        return self._sessions.get(user_id)

    def resolve(self, raw_id: Optional[str]) -> Tuple[str, Session]:
        """
        Return the session for ``raw_id``, minting a fresh one when the id is
        empty or unknown. Never fails.
        """
        with self.lock:
            if raw_id and raw_id in self._sessions:
                return raw_id, self._sessions[raw_id]

            user_id = generate_user_id()
            while user_id in self._sessions:
                user_id = generate_user_id()
            session = Session(user_id=user_id)
            self._sessions[user_id] = session
            logger.debug(f"Created session {user_id}")
            return user_id, session

    @staticmethod
    def is_premium(session: Session, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return session.premium_until is not None and session.premium_until > now

    def record_usage(self, session: Session, tool: str) -> int:
        with self.lock:
            session.usage[tool] = session.usage.get(tool, 0) + 1
            return session.usage[tool]

    def grant_premium(self, session: Session, duration_hours: float = PREMIUM_HOURS,
                      now: Optional[datetime] = None) -> datetime:
        """Start a fresh premium window; an existing window is replaced, not extended"""
        now = now or utcnow()
        with self.lock:
            session.premium_until = now + timedelta(hours=duration_hours)
            return session.premium_until

    def premium_count(self, now: Optional[datetime] = None) -> int:
        return sum(1 for session in self if self.is_premium(session, now))

    def delete(self, user_id: str) -> None:
        with self.lock:
            self._sessions.pop(user_id, None)


class CodeRegistry:
    """Generated and predefined premium activation codes"""

    def __init__(self, lock: Optional[threading.RLock] = None):
        self.lock = lock or threading.RLock()
        self._codes: Dict[str, PremiumCode] = {}

    def __len__(self) -> int:
        return len(self._codes)

    def __iter__(self) -> Iterator[PremiumCode]:
        return iter(list(self._codes.values()))

    def get(self, code: str) -> Optional[PremiumCode]:
        return self._codes.get(normalize_code(code))

    def generate(self, origin_user_id: str = ADMIN_ORIGIN) -> PremiumCode:
        with self.lock:
            code = generate_premium_code()
            while code in self._codes:
                code = generate_premium_code()
            entry = PremiumCode(code=code, origin_user_id=origin_user_id)
            self._codes[code] = entry
            return entry

    def generate_manual(self, count: int) -> List[PremiumCode]:
        return [self.generate(ADMIN_ORIGIN) for _ in range(count)]

    @staticmethod
    def is_predefined(code: str) -> bool:
        return normalize_code(code) in PREDEFINED_CODES

    def is_recognized(self, code: str) -> bool:
        normalized = normalize_code(code)
        return normalized in PREDEFINED_CODES or normalized in self._codes

    def redeem(self, code: str, user_id: str, sessions: SessionStore,
               now: Optional[datetime] = None) -> RedemptionInfo:
        """
        Grant the redeeming session a premium window.

        Codes stay valid after redemption; any number of sessions may redeem
        the same code.
        """
        now = now or utcnow()
        normalized = normalize_code(code)
        with self.lock:
            if not self.is_recognized(normalized):
                raise InvalidCode(normalized)

            session = sessions.get(user_id)
            if session is None:
                user_id, session = sessions.resolve(user_id)
            premium_until = sessions.grant_premium(session, PREMIUM_HOURS, now=now)

            entry = self._codes.get(normalized)
            if entry is not None:
                entry.used = True
                entry.activated_by = user_id
                entry.activated_at = now

        logger.info(f"Premium code {normalized[:10]}... activated for user {user_id}")
        return RedemptionInfo(
            code=normalized,
            user_id=user_id,
            premium_until=premium_until,
            predefined=entry is None,
        )

    def describe(self, code: str) -> Dict[str, object]:
        normalized = normalize_code(code)
        entry = self._codes.get(normalized)
        return {
            "valid": self.is_recognized(normalized),
            "code": normalized,
            "type": "predefined" if normalized in PREDEFINED_CODES else "generated",
            "used": entry.used if entry else False,
            "createdAt": entry.created_at.isoformat() if entry else None,
            "canReuse": True,
        }

    def delete(self, code: str) -> None:
        with self.lock:
            self._codes.pop(code, None)


class PaymentLedger:
    """Orders created by the payment flow, kept until reclamation"""

    def __init__(self, lock: Optional[threading.RLock] = None):
        self.lock = lock or threading.RLock()
        self._payments: Dict[str, PendingPayment] = {}

    def __len__(self) -> int:
        return len(self._payments)

    def __iter__(self) -> Iterator[PendingPayment]:
        return iter(list(self._payments.values()))

    def get(self, order_id: str) -> Optional[PendingPayment]:
        return self._payments.get(order_id)

    def add(self, payment: PendingPayment) -> None:
        with self.lock:
            self._payments[payment.order_id] = payment

    def delete(self, order_id: str) -> None:
        with self.lock:
            self._payments.pop(order_id, None)


class Stores:
    """The process-wide in-memory tables, sharing one lock"""

    def __init__(self):
        self.lock = threading.RLock()
        self.sessions = SessionStore(self.lock)
        self.codes = CodeRegistry(self.lock)
        self.payments = PaymentLedger(self.lock)
