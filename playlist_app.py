from __future__ import annotations
import contextlib
import enum
import os
import json
import logging
import random
import re
import secrets
import asyncio
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from threading import Lock, RLock
from typing import Optional, List, Any, Dict, Mapping, Iterable, Iterator, Callable, Sequence, Tuple

from sse_starlette.sse import EventSourceResponse
from fastapi.middleware.cors import CORSMiddleware

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Header,
    Query,
    Path,
    Body,
)
from pydantic import BaseModel, Field
from sqlalchemy import (
    create_engine, Column, Integer, String, Text, DateTime, Boolean,
    case, update,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

# =====================================
# Config
# =====================================
# SQLite database lives in the container's /data directory unless DB_URL
# points somewhere else (tests use a temporary file).
DB_URL = os.getenv("DB_URL", "sqlite:////data/db.sqlite")

# Authentication token for admin endpoints and the chat bot.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

SETTINGS_ENV_MAP: Dict[str, str] = {
    "super_vip_cost": "SUPER_VIP_COST",
    "concurrent_vip_slots": "CONCURRENT_VIP_SLOTS",
    "max_regular_requests": "MAX_REGULAR_REQUESTS",
    "presence_window_seconds": "PRESENCE_WINDOW_SECONDS",
    "regular_grace_seconds": "REGULAR_GRACE_SECONDS",
    "vip_grace_seconds": "VIP_GRACE_SECONDS",
    "minutes_per_request": "MINUTES_PER_REQUEST",
    "streamer_channel": "STREAMER_CHANNEL",
}

SETTINGS_DEFAULTS: Dict[str, Optional[str]] = {
    "super_vip_cost": "50",
    "concurrent_vip_slots": "2",
    "max_regular_requests": "1",
    "presence_window_seconds": "120",
    "regular_grace_seconds": "300",
    "vip_grace_seconds": "360",
    "minutes_per_request": "6",
}

PLAYLIST_STATUS_KEY = "playlist_status"

API_VERSION = "0.1.0"


def _env_flag(value: Optional[str]) -> bool:
    if value is None:
        return False
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


DEV_MODE = _env_flag(os.getenv("DEV_MODE"))

_bot_log_listeners: set[asyncio.Queue[str]] = set()

logger = logging.getLogger(__name__)

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =====================================
# Models
# =====================================
class Tier(str, enum.Enum):
    REGULAR = "regular"
    VIP = "vip"
    SUPER_VIP = "super_vip"


class SongRequest(Base):
    __tablename__ = "song_requests"

    id = Column(Integer, primary_key=True)
    requester = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=False)
    submitted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    vip_at = Column(DateTime, nullable=True)
    super_vip_at = Column(DateTime, nullable=True)
    played = Column(Integer, default=0, nullable=False, index=True)
    in_library = Column(Boolean, default=False, nullable=False)

    @property
    def tier(self) -> Tier:
        if self.super_vip_at is not None:
            return Tier.SUPER_VIP
        if self.vip_at is not None:
            return Tier.VIP
        return Tier.REGULAR


class TokenAccount(Base):
    __tablename__ = "token_accounts"

    username = Column(String, primary_key=True)
    donation_or_bits = Column(Integer, default=0, nullable=False)
    follow = Column(Integer, default=0, nullable=False)
    mod_given = Column(Integer, default=0, nullable=False)
    subscription = Column(Integer, default=0, nullable=False)
    byte_tokens = Column(Integer, default=0, nullable=False)
    received_gift = Column(Integer, default=0, nullable=False)
    used = Column(Integer, default=0, nullable=False)
    used_super = Column(Integer, default=0, nullable=False)
    sent_gift = Column(Integer, default=0, nullable=False)
    time_last_in_chat = Column(DateTime, nullable=True)

    def income(self) -> int:
        return (
            (self.donation_or_bits or 0)
            + (self.follow or 0)
            + (self.mod_given or 0)
            + (self.subscription or 0)
            + (self.byte_tokens or 0)
            + (self.received_gift or 0)
        )

    def remaining(self, super_vip_cost: int) -> int:
        return (
            self.income()
            - (self.used_super or 0) * super_vip_cost
            - (self.used or 0)
            - (self.sent_gift or 0)
        )


def _remaining_expression(super_vip_cost: int):
    """SQL side of ``TokenAccount.remaining`` used by conditional updates."""
    return (
        TokenAccount.donation_or_bits
        + TokenAccount.follow
        + TokenAccount.mod_given
        + TokenAccount.subscription
        + TokenAccount.byte_tokens
        + TokenAccount.received_gift
        - TokenAccount.used_super * super_vip_cost
        - TokenAccount.used
        - TokenAccount.sent_gift
    )


class StreamStatus(Base):
    __tablename__ = "stream_statuses"

    broadcaster_username = Column(String, primary_key=True)
    is_online = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


Base.metadata.create_all(bind=engine)


# =====================================
# Settings
# =====================================
def _load_settings_from_db() -> Dict[str, Optional[str]]:
    db = SessionLocal()
    try:
        rows = db.query(AppSetting).all()
        values = {row.key: row.value for row in rows}
    finally:
        db.close()
    for key, default in SETTINGS_DEFAULTS.items():
        values.setdefault(key, default)
    return values


class SettingsStore:
    __slots__ = ("_cache", "_lock")

    def __init__(self) -> None:
        self._cache: Optional[Dict[str, Optional[str]]] = None
        self._lock = Lock()

    def snapshot(self) -> Dict[str, Optional[str]]:
        with self._lock:
            if self._cache is None:
                self._cache = _load_settings_from_db()
            return dict(self._cache)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.snapshot().get(key, default)
        if value is None:
            return default
        value_str = str(value).strip()
        return value_str or default

    def get_int(self, key: str, default: int, *, minimum: int = 0) -> int:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning("setting %s has non-integer value %r, using %s", key, raw, default)
            return default
        if value < minimum:
            logger.warning("setting %s below minimum %s, using %s", key, minimum, default)
            return default
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None


settings_store = SettingsStore()


def bootstrap_settings_from_env() -> None:
    db = SessionLocal()
    try:
        existing_rows = {row.key: row for row in db.query(AppSetting).all()}
        values: Dict[str, Optional[str]] = {key: row.value for key, row in existing_rows.items()}
        changed = False

        for key, env_name in SETTINGS_ENV_MAP.items():
            env_value = os.getenv(env_name)
            if env_value is None:
                continue
            trimmed = env_value.strip()
            if not trimmed:
                continue
            if key in existing_rows:
                if not existing_rows[key].value:
                    existing_rows[key].value = trimmed
                    values[key] = trimmed
                    changed = True
            else:
                db.add(AppSetting(key=key, value=trimmed))
                values[key] = trimmed
                changed = True

        for key, default in SETTINGS_DEFAULTS.items():
            if key not in values:
                db.add(AppSetting(key=key, value=default))
                values[key] = default
                changed = True

        if changed:
            db.commit()
        else:
            db.rollback()
    finally:
        db.close()
    settings_store.invalidate()


def _persist_settings(db: Session, updates: Mapping[str, Optional[str]]) -> None:
    for key, value in updates.items():
        row = db.get(AppSetting, key)
        if value is None or (isinstance(value, str) and not value.strip()):
            normalized = None
        else:
            normalized = value.strip() if isinstance(value, str) else str(value)
        if row:
            row.value = normalized
        else:
            db.add(AppSetting(key=key, value=normalized))


def set_settings(db: Session, updates: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
    _persist_settings(db, updates)
    db.commit()
    settings_store.invalidate()
    return settings_store.snapshot()


def get_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    return settings_store.get(key, default)


@dataclass(frozen=True)
class PlaylistConfig:
    super_vip_cost: int = 50
    concurrent_vip_slots: int = 2
    max_regular_requests: int = 1
    presence_window: timedelta = timedelta(seconds=120)
    regular_grace: timedelta = timedelta(seconds=300)
    vip_grace: timedelta = timedelta(seconds=360)
    minutes_per_request: int = 6

    @classmethod
    def from_settings(cls, store: SettingsStore) -> "PlaylistConfig":
        return cls(
            super_vip_cost=store.get_int("super_vip_cost", 50, minimum=1),
            concurrent_vip_slots=store.get_int("concurrent_vip_slots", 2, minimum=1),
            max_regular_requests=store.get_int("max_regular_requests", 1, minimum=1),
            presence_window=timedelta(seconds=store.get_int("presence_window_seconds", 120)),
            regular_grace=timedelta(seconds=store.get_int("regular_grace_seconds", 300)),
            vip_grace=timedelta(seconds=store.get_int("vip_grace_seconds", 360)),
            minutes_per_request=store.get_int("minutes_per_request", 6),
        )


def normalize_username(username: Optional[str]) -> str:
    return (username or "").strip().lstrip("@").lower()


# =====================================
# Outcomes
# =====================================
class ErrorKind(str, enum.Enum):
    VALIDATION = "validation_error"
    STATE = "state_error"
    DUPLICATE = "duplicate_request"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NOT_FOUND = "not_found"
    AMBIGUOUS_COMMAND = "ambiguous_command"
    PERSISTENCE = "persistence_failure"


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    NO_REQUEST_ENTERED = "no_request_entered"
    INVALID_INPUT = "invalid_input"
    PLAYLIST_CLOSED = "playlist_closed"
    PLAYLIST_VERY_CLOSED = "playlist_very_closed"
    DUPLICATE_REQUEST = "duplicate_request"
    ONLY_ONE_SUPER = "only_one_super"
    ALREADY_VIP = "already_vip"
    REQUEST_IS_CURRENT = "request_is_current"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NOT_FOUND = "not_found"
    NOT_YOUR_REQUEST = "not_your_request"
    REQUEST_ALREADY_REMOVED = "request_already_removed"
    NO_REQUEST_IN_LIST = "no_request_in_list"
    NO_REQUEST_PROVIDED = "no_request_provided"
    ARGUMENT_ERROR = "argument_error"
    PERSISTENCE_FAILURE = "persistence_failure"

    @property
    def kind(self) -> Optional[ErrorKind]:
        return OUTCOME_KINDS.get(self)

    @property
    def status_code(self) -> int:
        kind = self.kind
        if kind is None:
            return 200
        return ERROR_STATUS_CODES[kind]


OUTCOME_KINDS: Dict[Outcome, ErrorKind] = {
    Outcome.NO_REQUEST_ENTERED: ErrorKind.VALIDATION,
    Outcome.INVALID_INPUT: ErrorKind.VALIDATION,
    Outcome.NO_REQUEST_PROVIDED: ErrorKind.VALIDATION,
    Outcome.PLAYLIST_CLOSED: ErrorKind.STATE,
    Outcome.PLAYLIST_VERY_CLOSED: ErrorKind.STATE,
    Outcome.ONLY_ONE_SUPER: ErrorKind.STATE,
    Outcome.ALREADY_VIP: ErrorKind.STATE,
    Outcome.REQUEST_IS_CURRENT: ErrorKind.STATE,
    Outcome.DUPLICATE_REQUEST: ErrorKind.DUPLICATE,
    Outcome.INSUFFICIENT_BALANCE: ErrorKind.INSUFFICIENT_BALANCE,
    Outcome.NOT_FOUND: ErrorKind.NOT_FOUND,
    Outcome.NOT_YOUR_REQUEST: ErrorKind.NOT_FOUND,
    Outcome.REQUEST_ALREADY_REMOVED: ErrorKind.NOT_FOUND,
    Outcome.NO_REQUEST_IN_LIST: ErrorKind.NOT_FOUND,
    Outcome.ARGUMENT_ERROR: ErrorKind.AMBIGUOUS_COMMAND,
    Outcome.PERSISTENCE_FAILURE: ErrorKind.PERSISTENCE,
}

ERROR_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.STATE: 409,
    ErrorKind.DUPLICATE: 409,
    ErrorKind.INSUFFICIENT_BALANCE: 402,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.AMBIGUOUS_COMMAND: 400,
    ErrorKind.PERSISTENCE: 503,
}


@dataclass(frozen=True)
class QueueEntry:
    """Detached view of a queued request, safe to hold outside a session."""

    id: int
    requester: str
    text: str
    tier: Tier
    submitted_at: datetime
    vip_at: Optional[datetime] = None
    super_vip_at: Optional[datetime] = None
    in_library: bool = False
    in_chat: bool = False

    @classmethod
    def from_model(cls, row: SongRequest, *, in_chat: bool = False) -> "QueueEntry":
        return cls(
            id=row.id,
            requester=row.requester,
            text=row.text,
            tier=row.tier,
            submitted_at=row.submitted_at,
            vip_at=row.vip_at,
            super_vip_at=row.super_vip_at,
            in_library=bool(row.in_library),
            in_chat=in_chat,
        )


@dataclass(frozen=True)
class PlaylistSnapshot:
    current: Optional[QueueEntry]
    regular: List[QueueEntry]
    vip: List[QueueEntry]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": asdict(self.current) if self.current else None,
            "regular": [asdict(entry) for entry in self.regular],
            "vip": [asdict(entry) for entry in self.vip],
        }


@dataclass
class OperationResult:
    outcome: Outcome
    request: Optional[QueueEntry] = None
    position: Optional[int] = None
    snapshot: Optional[PlaylistSnapshot] = None
    data: Dict[str, Any] = field(default_factory=dict)
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list, repr=False)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


# =====================================
# Token ledger
# =====================================
class TokenLedger:
    """Per-user priority currency, bound to one SQLAlchemy session.

    ``use_vip``/``use_super_vip`` flush a conditional UPDATE so the caller's
    queue write and the balance change commit together. Refunds credit the
    mod-given bucket instead of rolling back the used counters.
    """

    SOURCES: Dict[str, str] = {
        "donation": "donation_or_bits",
        "follow": "follow",
        "mod": "mod_given",
        "sub": "subscription",
        "byte": "byte_tokens",
    }

    def __init__(self, db: Session, config: PlaylistConfig):
        self.db = db
        self.config = config

    def account(self, username: str) -> TokenAccount:
        name = normalize_username(username)
        account = self.db.get(TokenAccount, name)
        if account is None:
            account = TokenAccount(
                username=name,
                donation_or_bits=0,
                follow=0,
                mod_given=0,
                subscription=0,
                byte_tokens=0,
                received_gift=0,
                used=0,
                used_super=0,
                sent_gift=0,
            )
            self.db.add(account)
            self.db.flush()
        return account

    def remaining(self, username: str) -> int:
        return self.account(username).remaining(self.config.super_vip_cost)

    def has_vip(self, username: str) -> bool:
        return self.remaining(username) > 0

    def has_super_vip(self, username: str) -> bool:
        return self.remaining(username) > self.config.super_vip_cost

    def _consume(self, username: str, threshold: int, **increments: Any) -> bool:
        account = self.account(username)
        values = {name: getattr(TokenAccount, name) + amount for name, amount in increments.items()}
        result = self.db.execute(
            update(TokenAccount)
            .where(
                TokenAccount.username == account.username,
                _remaining_expression(self.config.super_vip_cost) > threshold,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(account)
        if result.rowcount != 1:
            return False
        if account.remaining(self.config.super_vip_cost) < 0:
            logger.error("ledger for %s went negative after consuming tokens", account.username)
            return False
        return True

    def use_vip(self, username: str) -> bool:
        return self._consume(username, 0, used=1)

    def use_super_vip(self, username: str) -> bool:
        return self._consume(username, self.config.super_vip_cost, used_super=1)

    def _credit(self, username: str, column: str, amount: int, defer_commit: bool) -> bool:
        account = self.account(username)
        setattr(account, column, (getattr(account, column) or 0) + amount)
        if defer_commit:
            self.db.flush()
        else:
            self.db.commit()
        return True

    def refund_vip(self, username: str, defer_commit: bool = False) -> bool:
        return self._credit(username, "mod_given", 1, defer_commit)

    def refund_super_vip(self, username: str, defer_commit: bool = False) -> bool:
        return self._credit(username, "mod_given", self.config.super_vip_cost, defer_commit)

    def refund(self, username: str, tier: Tier, defer_commit: bool = False) -> bool:
        if tier is Tier.SUPER_VIP:
            return self.refund_super_vip(username, defer_commit=defer_commit)
        if tier is Tier.VIP:
            return self.refund_vip(username, defer_commit=defer_commit)
        return False

    def grant(self, username: str, source: str, amount: int, defer_commit: bool = False) -> bool:
        column = self.SOURCES.get((source or "").strip().lower())
        if column is None or amount <= 0:
            return False
        return self._credit(username, column, amount, defer_commit)

    def gift_vip(self, donor: str, receiver: str, defer_commit: bool = False) -> bool:
        donor_name = normalize_username(donor)
        receiver_name = normalize_username(receiver)
        if not donor_name or not receiver_name or donor_name == receiver_name:
            return False
        if not self._consume(donor_name, 0, sent_gift=1):
            return False
        return self._credit(receiver_name, "received_gift", 1, defer_commit)

    def mark_seen(self, username: str, when: datetime) -> None:
        self.account(username).time_last_in_chat = when
        self.db.flush()

    def last_seen(self, usernames: Iterable[str]) -> Dict[str, Optional[datetime]]:
        names = {normalize_username(name) for name in usernames if name}
        if not names:
            return {}
        rows = (
            self.db.query(TokenAccount.username, TokenAccount.time_last_in_chat)
            .filter(TokenAccount.username.in_(names))
            .all()
        )
        return {name: seen for name, seen in rows}

    def breakdown(self, username: str) -> Dict[str, Any]:
        account = self.account(username)
        return {
            "username": account.username,
            "remaining": account.remaining(self.config.super_vip_cost),
            "donation_or_bits": account.donation_or_bits,
            "follow": account.follow,
            "mod_given": account.mod_given,
            "subscription": account.subscription,
            "byte_tokens": account.byte_tokens,
            "received_gift": account.received_gift,
            "used": account.used,
            "used_super": account.used_super,
            "sent_gift": account.sent_gift,
            "super_vip_cost": self.config.super_vip_cost,
        }


# =====================================
# Request queue
# =====================================
# SuperVIP rows sort ahead of plain VIP rows regardless of vip_at.
_SUPER_FIRST = case((SongRequest.super_vip_at.isnot(None), 0), else_=1)


class RequestQueue:
    def __init__(self, db: Session):
        self.db = db

    def _queued(self):
        return self.db.query(SongRequest).filter(SongRequest.played == 0)

    def ordered(self, tier: Tier) -> List[SongRequest]:
        """Unplayed requests of a tier in display order.

        ``Tier.VIP`` returns both VIP and SuperVIP rows, SuperVIP first.
        """
        query = self._queued()
        if tier is Tier.REGULAR:
            return (
                query.filter(SongRequest.vip_at.is_(None))
                .order_by(SongRequest.submitted_at.asc(), SongRequest.id.asc())
                .all()
            )
        query = query.filter(SongRequest.vip_at.isnot(None))
        if tier is Tier.SUPER_VIP:
            query = query.filter(SongRequest.super_vip_at.isnot(None))
        return query.order_by(_SUPER_FIRST, SongRequest.vip_at.asc(), SongRequest.id.asc()).all()

    def get(self, request_id: int) -> Optional[SongRequest]:
        return self.db.get(SongRequest, request_id)

    def listing(self, tier: Tier, exclude_id: Optional[int] = None) -> List[SongRequest]:
        return [row for row in self.ordered(tier) if row.id != exclude_id]

    def position(self, request_id: int, exclude_id: Optional[int] = None) -> Optional[int]:
        """1-based position within the request's displayed tier, 0 when it is current."""
        if request_id == exclude_id:
            return 0
        row = self.get(request_id)
        if row is None or row.played:
            return None
        listing_tier = Tier.REGULAR if row.tier is Tier.REGULAR else Tier.VIP
        for index, candidate in enumerate(self.listing(listing_tier, exclude_id), start=1):
            if candidate.id == request_id:
                return index
        return None

    def add(self, request: SongRequest, exclude_id: Optional[int] = None) -> int:
        request.requester = normalize_username(request.requester)
        if request.played is None:
            request.played = 0
        if request.in_library is None:
            request.in_library = False
        self.db.add(request)
        self.db.flush()
        return self.position(request.id, exclude_id) or 0

    def remove(self, request_id: int) -> bool:
        row = self.get(request_id)
        if row is None:
            return False
        self.db.delete(row)
        self.db.flush()
        return True

    def archive(self, request_id: int) -> bool:
        row = self.get(request_id)
        if row is None or row.played:
            return False
        row.played = 1
        self.db.flush()
        return True

    def user_requests(self, username: str, tier: Tier, exclude_id: Optional[int] = None) -> List[SongRequest]:
        name = normalize_username(username)
        return [row for row in self.listing(tier, exclude_id) if row.requester == name]

    def count_active_regular(self, username: str) -> int:
        return (
            self._queued()
            .filter(
                SongRequest.requester == normalize_username(username),
                SongRequest.vip_at.is_(None),
            )
            .count()
        )

    def super_request(self) -> Optional[SongRequest]:
        rows = self.ordered(Tier.SUPER_VIP)
        if len(rows) > 1:
            logger.error("found %s queued SuperVIP requests, expected at most one", len(rows))
        return rows[0] if rows else None


# =====================================
# Playlist state machine
# =====================================
class PlaylistStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    VERY_CLOSED = "very_closed"


class PlaylistStateMachine:
    def __init__(self, db: Session):
        self.db = db

    def status(self) -> PlaylistStatus:
        row = self.db.get(AppSetting, PLAYLIST_STATUS_KEY)
        if row is None or not row.value:
            return PlaylistStatus.VERY_CLOSED
        try:
            return PlaylistStatus(row.value.strip().lower())
        except ValueError:
            logger.warning("unknown playlist status %r, treating as very closed", row.value)
            return PlaylistStatus.VERY_CLOSED

    def transition(self, target: PlaylistStatus) -> PlaylistStatus:
        previous = self.status()
        _persist_settings(self.db, {PLAYLIST_STATUS_KEY: target.value})
        self.db.flush()
        return previous

    def admits(self, tier: Tier) -> Outcome:
        status = self.status()
        if status is PlaylistStatus.VERY_CLOSED:
            return Outcome.PLAYLIST_VERY_CLOSED
        if status is PlaylistStatus.CLOSED and tier is Tier.REGULAR:
            return Outcome.PLAYLIST_CLOSED
        return Outcome.SUCCESS


# =====================================
# Rotation
# =====================================
def is_present(
    row: SongRequest,
    last_seen: Optional[datetime],
    now: datetime,
    config: PlaylistConfig,
) -> bool:
    if last_seen is not None and now - last_seen <= config.presence_window:
        return True
    if row.vip_at is not None:
        return now - row.vip_at <= config.vip_grace
    return now - row.submitted_at <= config.regular_grace


class RotationPolicy:
    """Owns the current item and the VIP streak counter."""

    def __init__(self, concurrent_vip_slots: int = 2, rng: Optional[random.Random] = None):
        self.concurrent_vip_slots = concurrent_vip_slots
        self.current: Optional[QueueEntry] = None
        self.vip_streak = 0
        self._rng = rng or random.Random()

    @property
    def current_id(self) -> Optional[int]:
        return self.current.id if self.current else None

    def checkpoint(self) -> Tuple[Optional[QueueEntry], int]:
        return self.current, self.vip_streak

    def restore(self, state: Tuple[Optional[QueueEntry], int]) -> None:
        self.current, self.vip_streak = state

    def reset(self) -> None:
        self.current = None
        self.vip_streak = 0

    def _pick_regular(self, in_chat_regular: Sequence[QueueEntry]) -> QueueEntry:
        return self._rng.choice(list(in_chat_regular))

    def _select_fresh(
        self, vip: Sequence[QueueEntry], in_chat_regular: Sequence[QueueEntry]
    ) -> Optional[QueueEntry]:
        if vip:
            # SuperVIP rows lead the VIP ordering.
            return vip[0]
        if in_chat_regular:
            return self._pick_regular(in_chat_regular)
        return None

    def advance(
        self, vip: Sequence[QueueEntry], in_chat_regular: Sequence[QueueEntry]
    ) -> Optional[QueueEntry]:
        """Choose the next current item once the previous one is done.

        ``vip`` is the VIP ordering (SuperVIP first); ``in_chat_regular`` holds
        only Regular entries whose requester is present.
        """
        previous = self.current
        if previous is not None:
            vip = [entry for entry in vip if entry.id != previous.id]
            in_chat_regular = [entry for entry in in_chat_regular if entry.id != previous.id]

        if not vip and not in_chat_regular:
            self.current = None
            return None

        if previous is not None and previous.tier is not Tier.REGULAR:
            self.vip_streak += 1
            super_entry = next((entry for entry in vip if entry.tier is Tier.SUPER_VIP), None)
            if super_entry is not None:
                choice: Optional[QueueEntry] = super_entry
            elif self.vip_streak < self.concurrent_vip_slots and vip:
                choice = vip[0]
            elif in_chat_regular:
                self.vip_streak = 0
                choice = self._pick_regular(in_chat_regular)
            elif vip:
                choice = vip[0]
            else:
                choice = None
        else:
            choice = self._select_fresh(vip, in_chat_regular)

        self.current = choice
        return choice

    def sync(
        self,
        vip: Sequence[QueueEntry],
        regular: Sequence[QueueEntry],
    ) -> Optional[QueueEntry]:
        """Refresh the current item after a mutation that did not finish it.

        A current item that left the queue is dropped; an empty slot is
        filled the same way a fresh session would fill it.
        """
        if self.current is not None:
            refreshed = next(
                (entry for entry in list(vip) + list(regular) if entry.id == self.current.id),
                None,
            )
            self.current = refreshed
        if self.current is None:
            self.current = self._select_fresh(vip, [entry for entry in regular if entry.in_chat])
        return self.current


# =====================================
# Edit resolution
# =====================================
_INDEX_TOKEN = re.compile(r"^[+-]?\d+$")


def parse_leading_index(command: str) -> Tuple[Optional[int], str]:
    """Split ``"2 new text"`` into ``(2, "new text")``.

    A leading ``0`` is not an index and stays part of the text.
    """
    stripped = (command or "").strip()
    if not stripped:
        return None, ""
    head, _, rest = stripped.partition(" ")
    if _INDEX_TOKEN.match(head):
        value = int(head)
        if value != 0:
            return value, rest.strip()
    return None, stripped


class EditCase(str, enum.Enum):
    NO_REQUEST_IN_LIST = "no_request_in_list"
    NO_REQUEST_PROVIDED = "no_request_provided"
    ONLY_REQUEST = "only_request"
    VIP_BY_INDEX = "vip_by_index"
    INDEX_WITHOUT_VIP = "index_without_vip"
    INDEX_NOT_OWNED = "index_not_owned"
    REGULAR = "regular"
    SOLE_VIP = "sole_vip"
    AMBIGUOUS_VIP = "ambiguous_vip"


EDIT_CASE_OUTCOMES: Dict[EditCase, Outcome] = {
    EditCase.NO_REQUEST_IN_LIST: Outcome.NO_REQUEST_IN_LIST,
    EditCase.NO_REQUEST_PROVIDED: Outcome.NO_REQUEST_PROVIDED,
    EditCase.INDEX_WITHOUT_VIP: Outcome.ARGUMENT_ERROR,
    EditCase.INDEX_NOT_OWNED: Outcome.ARGUMENT_ERROR,
    EditCase.AMBIGUOUS_VIP: Outcome.ARGUMENT_ERROR,
}


@dataclass(frozen=True)
class EditResolution:
    case: EditCase
    text: str = ""
    target: Optional[QueueEntry] = None

    @property
    def outcome(self) -> Outcome:
        return EDIT_CASE_OUTCOMES.get(self.case, Outcome.SUCCESS)


@dataclass(frozen=True)
class _EditContext:
    index: Optional[int]
    text: str
    own_regular: List[QueueEntry]
    own_vip: List[Tuple[int, QueueEntry]]
    vip: List[QueueEntry]

    @property
    def total(self) -> int:
        return len(self.own_regular) + len(self.own_vip)


class EditResolver:
    """Ordered rule table mapping an edit command to one of the caller's requests.

    ``regular`` and ``vip`` are the displayed listings, which never contain
    the current item. The first rule returning a resolution wins.
    """

    def __init__(self) -> None:
        self.rules: List[Callable[[_EditContext], Optional[EditResolution]]] = [
            self._no_requests,
            self._no_text,
            self._only_request,
            self._by_index,
            self._regular,
            self._sole_vip,
        ]

    def resolve(
        self,
        username: str,
        command: str,
        regular: Sequence[QueueEntry],
        vip: Sequence[QueueEntry],
    ) -> EditResolution:
        name = normalize_username(username)
        index, text = parse_leading_index(command)
        context = _EditContext(
            index=index,
            text=text,
            own_regular=[entry for entry in regular if entry.requester == name],
            own_vip=[(pos, entry) for pos, entry in enumerate(vip, start=1) if entry.requester == name],
            vip=list(vip),
        )
        for rule in self.rules:
            resolution = rule(context)
            if resolution is not None:
                return resolution
        return EditResolution(EditCase.AMBIGUOUS_VIP, text)

    @staticmethod
    def _no_requests(context: _EditContext) -> Optional[EditResolution]:
        if context.total == 0:
            return EditResolution(EditCase.NO_REQUEST_IN_LIST)
        return None

    @staticmethod
    def _no_text(context: _EditContext) -> Optional[EditResolution]:
        if not context.text:
            return EditResolution(EditCase.NO_REQUEST_PROVIDED)
        return None

    @staticmethod
    def _only_request(context: _EditContext) -> Optional[EditResolution]:
        if context.total != 1:
            return None
        target = context.own_regular[0] if context.own_regular else context.own_vip[0][1]
        return EditResolution(EditCase.ONLY_REQUEST, context.text, target)

    @staticmethod
    def _by_index(context: _EditContext) -> Optional[EditResolution]:
        if context.index is None:
            return None
        if not context.own_vip:
            return EditResolution(EditCase.INDEX_WITHOUT_VIP, context.text)
        for position, entry in context.own_vip:
            if position == context.index:
                return EditResolution(EditCase.VIP_BY_INDEX, context.text, entry)
        return EditResolution(EditCase.INDEX_NOT_OWNED, context.text)

    @staticmethod
    def _regular(context: _EditContext) -> Optional[EditResolution]:
        if context.own_regular:
            return EditResolution(EditCase.REGULAR, context.text, context.own_regular[0])
        return None

    @staticmethod
    def _sole_vip(context: _EditContext) -> Optional[EditResolution]:
        if len(context.own_vip) == 1:
            return EditResolution(EditCase.SOLE_VIP, context.text, context.own_vip[0][1])
        return EditResolution(EditCase.AMBIGUOUS_VIP, context.text)


# =====================================
# Broadcast
# =====================================
def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Type {type(value)!r} not serializable")


class QueueBroadcaster:
    __slots__ = ("listeners", "_loop")

    def __init__(self) -> None:
        self.listeners: set[asyncio.Queue[str]] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def subscribe(self) -> asyncio.Queue[str]:
        with contextlib.suppress(RuntimeError):
            self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
        self.listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self.listeners.discard(queue)

    def has_listeners(self) -> bool:
        return bool(self.listeners)

    def _broadcast(self, message: str) -> None:
        if not self.listeners:
            return
        stale: list[asyncio.Queue[str]] = []
        for queue in list(self.listeners):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                stale.append(queue)
                logger.warning("playlist notification dropped for a slow subscriber")
            except Exception:
                stale.append(queue)
                logger.exception("failed to enqueue playlist notification")
        for queue in stale:
            self.listeners.discard(queue)

    def put_nowait(self, message: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._broadcast(message)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._broadcast(message)
        else:
            # Sync endpoints run in the threadpool; hand the message to the loop.
            loop.call_soon_threadsafe(self._broadcast, message)

    def publish_event(self, event_type: str, payload: Optional[Mapping[str, Any]]) -> None:
        if not self.listeners:
            return
        event_payload = {
            "type": event_type,
            "payload": payload,
            "timestamp": datetime.utcnow(),
        }
        try:
            message = json.dumps(event_payload, default=_json_default)
        except TypeError:
            logger.exception("failed to serialize playlist event %s", event_type)
            return
        self.put_nowait(message)

    def publish(self, snapshot: PlaylistSnapshot) -> None:
        self.publish_event("snapshot", snapshot.to_dict())


def _broadcast_bot_log(event: Dict[str, Any]) -> None:
    payload = json.dumps(event, default=_json_default)
    stale: list[asyncio.Queue[str]] = []
    for queue in list(_bot_log_listeners):
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            stale.append(queue)
    for queue in stale:
        _bot_log_listeners.discard(queue)


# =====================================
# Playlist service
# =====================================
@dataclass
class UnitOfWork:
    db: Session
    queue: RequestQueue
    ledger: TokenLedger
    state: PlaylistStateMachine


class PlaylistService:
    """Runs every playlist operation as one locked unit of work.

    Each mutation validates against the state machine and ledger, writes the
    queue, re-evaluates rotation, commits and then publishes a snapshot.
    Storage failures roll back, restore the rotation state and come back as
    ``Outcome.PERSISTENCE_FAILURE``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        config: Optional[PlaylistConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
        broadcaster: Optional[QueueBroadcaster] = None,
    ):
        self._session_factory = session_factory
        self.config = config or PlaylistConfig()
        self.rotation = RotationPolicy(self.config.concurrent_vip_slots, rng=rng)
        self.resolver = EditResolver()
        self.broadcaster = broadcaster
        self._clock = clock or datetime.utcnow
        self._lock = RLock()

    def configure(self, config: PlaylistConfig) -> None:
        with self._lock:
            self.config = config
            self.rotation.concurrent_vip_slots = config.concurrent_vip_slots

    @contextlib.contextmanager
    def session_scope(self) -> Iterator[UnitOfWork]:
        db = self._session_factory()
        try:
            yield UnitOfWork(
                db=db,
                queue=RequestQueue(db),
                ledger=TokenLedger(db, self.config),
                state=PlaylistStateMachine(db),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ---- plumbing ----
    def _views(self, uow: UnitOfWork) -> Tuple[List[QueueEntry], List[QueueEntry]]:
        now = self._clock()
        vip_rows = uow.queue.ordered(Tier.VIP)
        regular_rows = uow.queue.ordered(Tier.REGULAR)
        seen = uow.ledger.last_seen(row.requester for row in vip_rows + regular_rows)

        def view(row: SongRequest) -> QueueEntry:
            present = is_present(row, seen.get(row.requester), now, self.config)
            return QueueEntry.from_model(row, in_chat=present)

        return [view(row) for row in vip_rows], [view(row) for row in regular_rows]

    def _evaluate(self, uow: UnitOfWork, *, advance: bool) -> PlaylistSnapshot:
        vip, regular = self._views(uow)
        if advance:
            self.rotation.advance(vip, [entry for entry in regular if entry.in_chat])
        else:
            self.rotation.sync(vip, regular)
        current_id = self.rotation.current_id
        return PlaylistSnapshot(
            current=self.rotation.current,
            regular=[entry for entry in regular if entry.id != current_id],
            vip=[entry for entry in vip if entry.id != current_id],
        )

    def _publish(self, snapshot: PlaylistSnapshot, events: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish(snapshot)
            for event_type, payload in events:
                self.broadcaster.publish_event(event_type, payload)
        except Exception:
            logger.exception("failed to publish playlist snapshot")

    def _run(
        self,
        action: str,
        operation: Callable[[UnitOfWork], OperationResult],
        *,
        advance: bool = False,
        locate: bool = False,
        broadcast: bool = True,
    ) -> OperationResult:
        with self._lock:
            checkpoint = self.rotation.checkpoint()
            previous = self.rotation.current
            try:
                with self.session_scope() as uow:
                    result = operation(uow)
                    if not result.ok:
                        uow.db.rollback()
                        return result
                    uow.db.flush()
                    snapshot = self._evaluate(uow, advance=advance)
                    if result.request is not None:
                        entry = self._find(snapshot, result.request.id)
                        if entry is not None:
                            result.request = entry
                        if locate:
                            result.position = uow.queue.position(
                                result.request.id, exclude_id=self.rotation.current_id
                            )
                    result.snapshot = snapshot
            except SQLAlchemyError:
                self.rotation.restore(checkpoint)
                logger.exception("playlist operation %s failed", action)
                return OperationResult(Outcome.PERSISTENCE_FAILURE)

            current = self.rotation.current
            changed = (previous.id if previous else None) != (current.id if current else None)
            if changed:
                result.events.append(
                    (
                        "current.changed",
                        {
                            "previous": asdict(previous) if previous else None,
                            "current": asdict(current) if current else None,
                        },
                    )
                )
            if broadcast or changed:
                self._publish(snapshot, result.events)
            logger.debug("playlist %s -> %s", action, result.outcome.value)
            return result

    def _read(
        self,
        action: str,
        reader: Callable[[UnitOfWork, PlaylistSnapshot], OperationResult],
    ) -> OperationResult:
        # Reads still fill an empty current slot, so they share the mutation path.
        def operation(uow: UnitOfWork) -> OperationResult:
            return OperationResult(Outcome.SUCCESS)

        with self._lock:
            result = self._run(action, operation, broadcast=False)
            if not result.ok:
                return result
            try:
                with self.session_scope() as uow:
                    answer = reader(uow, result.snapshot)
            except SQLAlchemyError:
                logger.exception("playlist read %s failed", action)
                return OperationResult(Outcome.PERSISTENCE_FAILURE)
            answer.snapshot = result.snapshot
            return answer

    @staticmethod
    def _find(snapshot: PlaylistSnapshot, request_id: int) -> Optional[QueueEntry]:
        if snapshot.current is not None and snapshot.current.id == request_id:
            return snapshot.current
        for entry in snapshot.vip + snapshot.regular:
            if entry.id == request_id:
                return entry
        return None

    def _displayed(self, uow: UnitOfWork, tier: Tier) -> List[SongRequest]:
        return uow.queue.listing(tier, exclude_id=self.rotation.current_id)

    # ---- submissions ----
    def add_request(self, username: str, text: str, vip: bool = False) -> OperationResult:
        name = normalize_username(username)
        text = (text or "").strip()
        if not name or not text:
            return OperationResult(Outcome.NO_REQUEST_ENTERED)

        def operation(uow: UnitOfWork) -> OperationResult:
            tier = Tier.VIP if vip else Tier.REGULAR
            admitted = uow.state.admits(tier)
            if admitted is not Outcome.SUCCESS:
                return OperationResult(admitted)
            if not vip and uow.queue.count_active_regular(name) >= self.config.max_regular_requests:
                return OperationResult(Outcome.DUPLICATE_REQUEST)
            if vip and not uow.ledger.use_vip(name):
                return OperationResult(Outcome.INSUFFICIENT_BALANCE)
            now = self._clock()
            row = SongRequest(requester=name, text=text, submitted_at=now, vip_at=now if vip else None)
            uow.queue.add(row, exclude_id=self.rotation.current_id)
            return OperationResult(Outcome.SUCCESS, request=QueueEntry.from_model(row))

        return self._run("add_request", operation, locate=True)

    def add_super_vip_request(self, username: str, text: str) -> OperationResult:
        name = normalize_username(username)
        text = (text or "").strip()
        if not name or not text:
            return OperationResult(Outcome.NO_REQUEST_ENTERED)

        def operation(uow: UnitOfWork) -> OperationResult:
            admitted = uow.state.admits(Tier.SUPER_VIP)
            if admitted is not Outcome.SUCCESS:
                return OperationResult(admitted)
            if uow.queue.super_request() is not None:
                return OperationResult(Outcome.ONLY_ONE_SUPER)
            if not uow.ledger.use_super_vip(name):
                return OperationResult(Outcome.INSUFFICIENT_BALANCE)
            now = self._clock()
            row = SongRequest(requester=name, text=text, submitted_at=now, vip_at=now, super_vip_at=now)
            uow.queue.add(row, exclude_id=self.rotation.current_id)
            return OperationResult(Outcome.SUCCESS, request=QueueEntry.from_model(row))

        return self._run("add_super_vip_request", operation, locate=True)

    def promote_request(self, username: str, request_id: Optional[int] = None) -> OperationResult:
        """Spend one VIP token to lift a Regular request into the VIP tier."""
        name = normalize_username(username)

        def operation(uow: UnitOfWork) -> OperationResult:
            if request_id is None:
                own = uow.queue.user_requests(name, Tier.REGULAR, exclude_id=self.rotation.current_id)
                if not own:
                    return OperationResult(Outcome.NO_REQUEST_IN_LIST)
                row = own[0]
            else:
                row = uow.queue.get(request_id)
                if row is None or row.played:
                    return OperationResult(Outcome.NOT_FOUND)
                if row.requester != name:
                    return OperationResult(Outcome.NOT_YOUR_REQUEST)
                if row.vip_at is not None:
                    return OperationResult(Outcome.ALREADY_VIP)
                if row.id == self.rotation.current_id:
                    return OperationResult(Outcome.REQUEST_IS_CURRENT)
            if not uow.ledger.use_vip(name):
                return OperationResult(Outcome.INSUFFICIENT_BALANCE)
            row.vip_at = self._clock()
            uow.db.flush()
            return OperationResult(Outcome.SUCCESS, request=QueueEntry.from_model(row))

        return self._run("promote_request", operation, locate=True)

    # ---- edits ----
    def edit_request(self, username: str, command: str) -> OperationResult:
        name = normalize_username(username)

        def operation(uow: UnitOfWork) -> OperationResult:
            regular = [QueueEntry.from_model(row) for row in self._displayed(uow, Tier.REGULAR)]
            vip = [QueueEntry.from_model(row) for row in self._displayed(uow, Tier.VIP)]
            resolution = self.resolver.resolve(name, command, regular, vip)
            if resolution.outcome is not Outcome.SUCCESS or resolution.target is None:
                return OperationResult(resolution.outcome, data={"case": resolution.case.value})
            row = uow.queue.get(resolution.target.id)
            row.text = resolution.text
            row.in_library = False
            uow.db.flush()
            return OperationResult(
                Outcome.SUCCESS,
                request=QueueEntry.from_model(row),
                data={"case": resolution.case.value},
            )

        return self._run("edit_request", operation, locate=True)

    def edit_request_by_id(
        self, request_id: int, username: str, text: str, is_mod: bool = False
    ) -> OperationResult:
        name = normalize_username(username)
        text = (text or "").strip()
        if not text:
            return OperationResult(Outcome.NO_REQUEST_ENTERED)

        def operation(uow: UnitOfWork) -> OperationResult:
            row = uow.queue.get(request_id)
            if row is None:
                return OperationResult(Outcome.NOT_FOUND)
            if row.played:
                return OperationResult(Outcome.REQUEST_ALREADY_REMOVED)
            if row.requester != name and not is_mod:
                return OperationResult(Outcome.NOT_YOUR_REQUEST)
            row.text = text
            row.in_library = False
            uow.db.flush()
            return OperationResult(Outcome.SUCCESS, request=QueueEntry.from_model(row))

        return self._run("edit_request_by_id", operation, locate=True)

    def edit_super_vip_request(self, username: str, text: str) -> OperationResult:
        name = normalize_username(username)
        text = (text or "").strip()
        if not text:
            return OperationResult(Outcome.NO_REQUEST_PROVIDED)

        def operation(uow: UnitOfWork) -> OperationResult:
            row = uow.queue.super_request()
            if row is None or row.requester != name:
                return OperationResult(Outcome.NO_REQUEST_IN_LIST)
            if row.id == self.rotation.current_id:
                return OperationResult(Outcome.REQUEST_IS_CURRENT)
            row.text = text
            row.in_library = False
            uow.db.flush()
            return OperationResult(Outcome.SUCCESS, request=QueueEntry.from_model(row))

        return self._run("edit_super_vip_request", operation, locate=True)

    # ---- removals ----
    def remove_request(self, username: str, command: str = "", is_mod: bool = False) -> OperationResult:
        """Remove the caller's Regular request, or a VIP item by listing position.

        Only an argument that is a whole integer selects a VIP position; any
        other text removes the caller's Regular request. VIP removals refund
        the owner of the removed item.
        """
        name = normalize_username(username)
        raw = (command or "").strip()
        index = int(raw) if _INDEX_TOKEN.match(raw) else None

        def operation(uow: UnitOfWork) -> OperationResult:
            if index is None:
                own = uow.queue.user_requests(name, Tier.REGULAR, exclude_id=self.rotation.current_id)
                if not own:
                    return OperationResult(Outcome.NO_REQUEST_IN_LIST)
                entry = QueueEntry.from_model(own[0])
                uow.queue.remove(entry.id)
                return OperationResult(Outcome.SUCCESS, request=entry)

            listing = self._displayed(uow, Tier.VIP)
            if index < 1 or index > len(listing):
                return OperationResult(Outcome.NOT_FOUND)
            row = listing[index - 1]
            if row.requester != name and not is_mod:
                return OperationResult(Outcome.NOT_YOUR_REQUEST)
            entry = QueueEntry.from_model(row)
            uow.queue.remove(entry.id)
            # A SuperVIP item gives back its full cost, not a single VIP token.
            uow.ledger.refund(entry.requester, entry.tier, defer_commit=True)
            return OperationResult(Outcome.SUCCESS, request=entry, data={"refunded": entry.requester})

        return self._run("remove_request", operation)

    def remove_super_vip_request(self, username: str) -> OperationResult:
        name = normalize_username(username)

        def operation(uow: UnitOfWork) -> OperationResult:
            row = uow.queue.super_request()
            if row is None or row.requester != name:
                return OperationResult(Outcome.NO_REQUEST_IN_LIST)
            if row.id == self.rotation.current_id:
                return OperationResult(Outcome.REQUEST_IS_CURRENT)
            entry = QueueEntry.from_model(row)
            uow.queue.archive(row.id)
            uow.ledger.refund_super_vip(name, defer_commit=True)
            return OperationResult(Outcome.SUCCESS, request=entry)

        return self._run("remove_super_vip_request", operation)

    # ---- archive ----
    def archive_current(self, request_id: Optional[int] = None) -> OperationResult:
        """Mark the current item played and rotate to the next one."""

        def operation(uow: UnitOfWork) -> OperationResult:
            current = self.rotation.current
            if current is None:
                return OperationResult(Outcome.NOT_FOUND)
            if request_id and request_id != current.id:
                return OperationResult(Outcome.NOT_FOUND)
            if not uow.queue.archive(current.id):
                return OperationResult(Outcome.REQUEST_ALREADY_REMOVED)
            return OperationResult(Outcome.SUCCESS, data={"archived": asdict(current)})

        return self._run("archive_current", operation, advance=True)

    def archive_request(self, request_id: int) -> OperationResult:
        """Reject a queued request, refunding the tokens its tier cost."""

        def operation(uow: UnitOfWork) -> OperationResult:
            row = uow.queue.get(request_id)
            if row is None:
                return OperationResult(Outcome.NOT_FOUND)
            if row.played:
                return OperationResult(Outcome.REQUEST_ALREADY_REMOVED)
            entry = QueueEntry.from_model(row)
            uow.queue.archive(row.id)
            uow.ledger.refund(entry.requester, entry.tier, defer_commit=True)
            return OperationResult(Outcome.SUCCESS, request=entry)

        return self._run("archive_request", operation)

    def clear_requests(self) -> OperationResult:
        def operation(uow: UnitOfWork) -> OperationResult:
            current_id = self.rotation.current_id
            rows = uow.queue.ordered(Tier.VIP) + uow.queue.ordered(Tier.REGULAR)
            refunded = 0
            for row in rows:
                if row.id != current_id and row.vip_at is not None:
                    uow.ledger.refund(row.requester, row.tier, defer_commit=True)
                    refunded += 1
                row.played = 1
            uow.db.flush()
            return OperationResult(Outcome.SUCCESS, data={"cleared": len(rows), "refunded": refunded})

        return self._run("clear_requests", operation)

    def mark_in_library(self, request_id: int) -> OperationResult:
        def operation(uow: UnitOfWork) -> OperationResult:
            row = uow.queue.get(request_id)
            if row is None or row.played:
                return OperationResult(Outcome.NOT_FOUND)
            row.in_library = True
            uow.db.flush()
            return OperationResult(Outcome.SUCCESS, request=QueueEntry.from_model(row))

        return self._run("mark_in_library", operation)

    # ---- playlist state ----
    def set_playlist_state(self, status: PlaylistStatus) -> OperationResult:
        def operation(uow: UnitOfWork) -> OperationResult:
            previous = uow.state.transition(status)
            payload = {"status": status.value, "previous": previous.value}
            result = OperationResult(Outcome.SUCCESS, data=payload)
            if previous is not status:
                result.events.append(("playlist.status", payload))
            return result

        return self._run("set_playlist_state", operation)

    def open_playlist(self) -> OperationResult:
        return self.set_playlist_state(PlaylistStatus.OPEN)

    def close_playlist(self) -> OperationResult:
        return self.set_playlist_state(PlaylistStatus.CLOSED)

    def very_close_playlist(self) -> OperationResult:
        return self.set_playlist_state(PlaylistStatus.VERY_CLOSED)

    def get_playlist_state(self) -> OperationResult:
        def reader(uow: UnitOfWork, snapshot: PlaylistSnapshot) -> OperationResult:
            return OperationResult(Outcome.SUCCESS, data={"status": uow.state.status().value})

        return self._read("get_playlist_state", reader)

    # ---- reads ----
    def get_snapshot(self) -> OperationResult:
        def reader(uow: UnitOfWork, snapshot: PlaylistSnapshot) -> OperationResult:
            return OperationResult(Outcome.SUCCESS)

        return self._read("get_snapshot", reader)

    def get_user_requests(self, username: str) -> OperationResult:
        name = normalize_username(username)

        def reader(uow: UnitOfWork, snapshot: PlaylistSnapshot) -> OperationResult:
            items: List[Dict[str, Any]] = []
            for position, entry in enumerate(snapshot.vip, start=1):
                if entry.requester == name:
                    items.append(
                        {
                            "id": entry.id,
                            "text": entry.text,
                            "tier": entry.tier.value,
                            "position": position,
                            "label": f"{position} - {entry.text}",
                        }
                    )
            for position, entry in enumerate(snapshot.regular, start=1):
                if entry.requester == name:
                    items.append(
                        {
                            "id": entry.id,
                            "text": entry.text,
                            "tier": entry.tier.value,
                            "position": position,
                            "label": entry.text,
                        }
                    )
            return OperationResult(Outcome.SUCCESS, data={"username": name, "requests": items})

        return self._read("get_user_requests", reader)

    def is_super_request_in_queue(self) -> OperationResult:
        def reader(uow: UnitOfWork, snapshot: PlaylistSnapshot) -> OperationResult:
            return OperationResult(Outcome.SUCCESS, data={"in_queue": uow.queue.super_request() is not None})

        return self._read("is_super_request_in_queue", reader)

    def max_user_requests(self) -> int:
        return self.config.max_regular_requests

    def estimated_finish(self, viewers: Iterable[str]) -> OperationResult:
        """Clock time at which every present viewer's request will have played."""
        present = {normalize_username(viewer) for viewer in viewers if viewer}

        def reader(uow: UnitOfWork, snapshot: PlaylistSnapshot) -> OperationResult:
            entries = snapshot.vip + snapshot.regular
            if snapshot.current is not None:
                entries.append(snapshot.current)
            count = sum(1 for entry in entries if entry.requester in present)
            minutes = count * self.config.minutes_per_request
            finish_at = self._clock() + timedelta(minutes=minutes)
            return OperationResult(
                Outcome.SUCCESS,
                data={
                    "requests": count,
                    "minutes": minutes,
                    "finish_at": finish_at,
                    "finish_time": finish_at.strftime("%H:%M:%S"),
                },
            )

        return self._read("estimated_finish", reader)

    # ---- ledger ----
    def mark_user_seen(self, username: str) -> OperationResult:
        name = normalize_username(username)
        if not name:
            return OperationResult(Outcome.INVALID_INPUT)

        def operation(uow: UnitOfWork) -> OperationResult:
            uow.ledger.mark_seen(name, self._clock())
            return OperationResult(Outcome.SUCCESS)

        return self._run("mark_user_seen", operation, broadcast=False)

    def token_account(self, username: str) -> OperationResult:
        name = normalize_username(username)
        if not name:
            return OperationResult(Outcome.INVALID_INPUT)

        def operation(uow: UnitOfWork) -> OperationResult:
            return OperationResult(Outcome.SUCCESS, data=uow.ledger.breakdown(name))

        return self._run("token_account", operation, broadcast=False)

    def grant_tokens(self, username: str, source: str, amount: int) -> OperationResult:
        name = normalize_username(username)
        if not name:
            return OperationResult(Outcome.INVALID_INPUT)

        def operation(uow: UnitOfWork) -> OperationResult:
            if not uow.ledger.grant(name, source, amount, defer_commit=True):
                return OperationResult(Outcome.INVALID_INPUT)
            return OperationResult(Outcome.SUCCESS, data=uow.ledger.breakdown(name))

        return self._run("grant_tokens", operation, broadcast=False)

    def gift_vip(self, donor: str, receiver: str) -> OperationResult:
        donor_name = normalize_username(donor)
        receiver_name = normalize_username(receiver)
        if not donor_name or not receiver_name or donor_name == receiver_name:
            return OperationResult(Outcome.INVALID_INPUT)

        def operation(uow: UnitOfWork) -> OperationResult:
            if not uow.ledger.gift_vip(donor_name, receiver_name, defer_commit=True):
                return OperationResult(Outcome.INSUFFICIENT_BALANCE)
            return OperationResult(
                Outcome.SUCCESS,
                data={
                    "donor": uow.ledger.breakdown(donor_name),
                    "receiver": uow.ledger.breakdown(receiver_name),
                },
            )

        return self._run("gift_vip", operation, broadcast=False)


# =====================================
# Stream status
# =====================================
def get_stream_status(db: Session, broadcaster: str) -> bool:
    row = db.get(StreamStatus, normalize_username(broadcaster))
    return bool(row and row.is_online)


def save_stream_status(db: Session, broadcaster: str, online: bool) -> bool:
    name = normalize_username(broadcaster)
    row = db.get(StreamStatus, name)
    if row is None:
        row = StreamStatus(broadcaster_username=name, is_online=online)
        db.add(row)
    else:
        row.is_online = online
    db.commit()
    return online


# =====================================
# Schemas
# =====================================
class BotLogEventIn(BaseModel):
    message: str
    level: str = Field(default="info")
    source: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class BotLogAckOut(BaseModel):
    success: bool


class SystemConfigOut(BaseModel):
    super_vip_cost: int
    concurrent_vip_slots: int
    max_regular_requests: int
    presence_window_seconds: int
    regular_grace_seconds: int
    vip_grace_seconds: int
    minutes_per_request: int
    streamer_channel: Optional[str]


class SystemConfigUpdate(BaseModel):
    super_vip_cost: Optional[int] = Field(default=None, ge=1)
    concurrent_vip_slots: Optional[int] = Field(default=None, ge=1)
    max_regular_requests: Optional[int] = Field(default=None, ge=1)
    presence_window_seconds: Optional[int] = Field(default=None, ge=0)
    regular_grace_seconds: Optional[int] = Field(default=None, ge=0)
    vip_grace_seconds: Optional[int] = Field(default=None, ge=0)
    minutes_per_request: Optional[int] = Field(default=None, ge=0)
    streamer_channel: Optional[str] = None


class SystemMetaOut(BaseModel):
    version: str
    dev_mode: bool


class RequestOut(BaseModel):
    id: int
    requester: str
    text: str
    tier: Tier
    submitted_at: datetime
    vip_at: Optional[datetime] = None
    super_vip_at: Optional[datetime] = None
    in_library: bool = False
    in_chat: bool = False

    class Config:
        from_attributes = True


class SnapshotOut(BaseModel):
    current: Optional[RequestOut] = None
    regular: List[RequestOut] = Field(default_factory=list)
    vip: List[RequestOut] = Field(default_factory=list)

    class Config:
        from_attributes = True


class OperationOut(BaseModel):
    outcome: str
    request: Optional[RequestOut] = None
    position: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    snapshot: Optional[SnapshotOut] = None


class RequestIn(BaseModel):
    username: str = Field(..., min_length=1)
    text: str = ""
    vip: bool = False


class SuperRequestIn(BaseModel):
    username: str = Field(..., min_length=1)
    text: str = ""


class PromoteIn(BaseModel):
    username: str = Field(..., min_length=1)
    request_id: Optional[int] = None


class EditCommandIn(BaseModel):
    username: str = Field(..., min_length=1)
    command: str = ""


class EditRequestIn(BaseModel):
    username: str = Field(..., min_length=1)
    text: str = ""
    is_mod: bool = False


class RemoveIn(BaseModel):
    username: str = Field(..., min_length=1)
    command: str = ""
    is_mod: bool = False


class UserIn(BaseModel):
    username: str = Field(..., min_length=1)


class PlaylistStatusIn(BaseModel):
    status: PlaylistStatus


class PlaylistStatusOut(BaseModel):
    status: PlaylistStatus


class ArchiveCurrentIn(BaseModel):
    request_id: Optional[int] = None


class EstimateIn(BaseModel):
    viewers: List[str] = Field(default_factory=list)


class GrantIn(BaseModel):
    source: str
    amount: int = Field(..., ge=1)


class GiftIn(BaseModel):
    receiver: str = Field(..., min_length=1)


class StreamStatusIn(BaseModel):
    broadcaster: str = Field(..., min_length=1)
    online: bool


class StreamStatusOut(BaseModel):
    broadcaster: str
    online: bool


# =====================================
# App
# =====================================
app = FastAPI(title="VIP Song Request Queue", version=API_VERSION)

DEFAULT_CORS_ALLOW_ORIGIN_REGEX = r"https?://.*"


def _parse_cors_origins(raw: str) -> list[str]:
    """Return a list of origins from an environment variable value.

    Values may be separated by commas or whitespace, so both Terraform style
    lists and plain comma separated strings work.
    """

    if not raw:
        return []

    origins: list[str] = []
    for part in re.split(r"[\s,]+", raw):
        origin = part.strip()
        if not origin:
            continue

        # Browsers omit the trailing slash in the ``Origin`` header.
        origin = origin.rstrip("/")
        if not origin:
            continue

        origins.append(origin)

    return origins


def _separate_cors_origins(origins: list[str]) -> tuple[list[str], list[str]]:
    """Split origins into explicit values and wildcard fragments."""

    explicit: list[str] = []
    wildcard_fragments: list[str] = []

    for origin in origins:
        if "*" not in origin:
            explicit.append(origin)
            continue

        escaped = re.escape(origin)
        # ``https://*.example.com`` matches one host label, never a bare
        # ``https://example.com``.
        fragment = escaped.replace(r"\*", r"[^/]+")
        wildcard_fragments.append(fragment)

    return explicit, wildcard_fragments


def _cors_settings_from_env(env: Mapping[str, str]) -> tuple[list[str], Optional[str]]:
    origins = _parse_cors_origins(env.get("CORS_ALLOW_ORIGINS", ""))
    allow_origins, wildcard_fragments = _separate_cors_origins(origins)

    regex_fragments: list[str] = list(wildcard_fragments)

    configured_regex = env.get("CORS_ALLOW_ORIGIN_REGEX", "")
    if configured_regex:
        regex_fragments.append(configured_regex)
    elif not allow_origins and not regex_fragments:
        regex_fragments.append(DEFAULT_CORS_ALLOW_ORIGIN_REGEX)

    allow_origin_regex = None
    if regex_fragments:
        allow_origin_regex = f"^(?:{'|'.join(regex_fragments)})$"

    return allow_origins, allow_origin_regex


allow_origins, allow_origin_regex = _cors_settings_from_env(os.environ)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

bootstrap_settings_from_env()

queue_broadcaster = QueueBroadcaster()
playlist_service = PlaylistService(
    SessionLocal,
    config=PlaylistConfig.from_settings(settings_store),
    broadcaster=queue_broadcaster,
)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_token(x_admin_token: Optional[str] = Header(None)):
    if x_admin_token and secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        return
    raise HTTPException(status_code=401, detail="invalid admin token")


def _respond(result: OperationResult) -> Dict[str, Any]:
    """Turn a service result into a response body or an HTTP error.

    Dependencies: the ``Outcome`` taxonomy, whose ``status_code`` decides the
    HTTP status of failures.
    Code customers: every playlist and ledger route.
    Used variables/origin: ``result`` comes straight from ``PlaylistService``;
    the error detail is the outcome value so the chat bot can look up its
    message template by the same key.
    """
    if not result.ok:
        raise HTTPException(status_code=result.outcome.status_code, detail=result.outcome.value)
    return {
        "outcome": result.outcome.value,
        "request": result.request,
        "position": result.position,
        "data": result.data,
        "snapshot": result.snapshot,
    }


def _system_config_payload() -> Dict[str, Any]:
    config = PlaylistConfig.from_settings(settings_store)
    return {
        "super_vip_cost": config.super_vip_cost,
        "concurrent_vip_slots": config.concurrent_vip_slots,
        "max_regular_requests": config.max_regular_requests,
        "presence_window_seconds": int(config.presence_window.total_seconds()),
        "regular_grace_seconds": int(config.regular_grace.total_seconds()),
        "vip_grace_seconds": int(config.vip_grace.total_seconds()),
        "minutes_per_request": config.minutes_per_request,
        "streamer_channel": get_setting("streamer_channel"),
    }


# =====================================
# Routes: System
# =====================================
@app.get("/system/meta", response_model=SystemMetaOut)
def system_meta():
    return {"version": API_VERSION, "dev_mode": DEV_MODE}


@app.get("/system/config", response_model=SystemConfigOut)
def system_config():
    return _system_config_payload()


@app.put("/system/config", response_model=SystemConfigOut, dependencies=[Depends(require_token)])
def update_system_config(payload: SystemConfigUpdate, db: Session = Depends(get_db)):
    updates: Dict[str, Optional[str]] = {}
    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        updates[key] = str(value)
    if updates:
        set_settings(db, updates)
        playlist_service.configure(PlaylistConfig.from_settings(settings_store))
    return _system_config_payload()


@app.get("/system/health")
def health():
    try:
        with engine.connect() as _:
            pass
        return {"status": "ok"}
    except Exception as e:
        raise HTTPException(500, detail=str(e))


# =====================================
# Routes: Bot console
# =====================================
@app.post("/bot/logs", response_model=BotLogAckOut, dependencies=[Depends(require_token)])
def push_bot_log(event: BotLogEventIn):
    timestamp = event.timestamp or datetime.utcnow()
    payload = {
        "type": "log",
        "level": event.level,
        "message": event.message,
        "source": event.source,
        "timestamp": timestamp,
        "metadata": event.metadata or {},
    }
    _broadcast_bot_log(payload)
    return {"success": True}


@app.get("/bot/logs/stream", dependencies=[Depends(require_token)])
async def stream_bot_logs():
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
    _bot_log_listeners.add(queue)

    async def event_stream():
        try:
            yield "event: log\ndata: {\"type\": \"ready\"}\n\n"
            while True:
                msg = await queue.get()
                yield f"event: log\ndata: {msg}\n\n"
        finally:
            _bot_log_listeners.discard(queue)

    return EventSourceResponse(
        event_stream(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


# =====================================
# Routes: Playlist
# =====================================
@app.get("/playlist", response_model=SnapshotOut)
def get_playlist():
    result = playlist_service.get_snapshot()
    _respond(result)
    return result.snapshot


@app.get("/playlist/stream")
async def stream_playlist():
    """Stream playlist snapshots and status events via SSE.

    Dependencies: the module level ``queue_broadcaster``.
    Code consumers: overlays and the chat bot, which announces rotation and
    status changes from the ``current.changed`` and ``playlist.status`` events.
    """
    q = queue_broadcaster.subscribe()

    async def gen():
        try:
            # initial tick so clients render immediately
            yield {"event": "playlist", "data": json.dumps({"type": "ready"})}
            while True:
                msg = await q.get()
                yield {"event": "playlist", "data": msg}
        finally:
            queue_broadcaster.unsubscribe(q)

    return EventSourceResponse(
        gen(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/playlist/status", response_model=PlaylistStatusOut)
def get_playlist_status():
    result = playlist_service.get_playlist_state()
    _respond(result)
    return {"status": result.data["status"]}


@app.put("/playlist/status", response_model=OperationOut, dependencies=[Depends(require_token)])
def set_playlist_status(payload: PlaylistStatusIn):
    return _respond(playlist_service.set_playlist_state(payload.status))


@app.post("/playlist/requests", response_model=OperationOut, dependencies=[Depends(require_token)])
def add_request(payload: RequestIn):
    return _respond(playlist_service.add_request(payload.username, payload.text, vip=payload.vip))


@app.post("/playlist/requests/super", response_model=OperationOut, dependencies=[Depends(require_token)])
def add_super_vip_request(payload: SuperRequestIn):
    return _respond(playlist_service.add_super_vip_request(payload.username, payload.text))


@app.put("/playlist/requests/super", response_model=OperationOut, dependencies=[Depends(require_token)])
def edit_super_vip_request(payload: SuperRequestIn):
    return _respond(playlist_service.edit_super_vip_request(payload.username, payload.text))


@app.post("/playlist/requests/super/remove", response_model=OperationOut, dependencies=[Depends(require_token)])
def remove_super_vip_request(payload: UserIn):
    return _respond(playlist_service.remove_super_vip_request(payload.username))


@app.post("/playlist/requests/promote", response_model=OperationOut, dependencies=[Depends(require_token)])
def promote_request(payload: PromoteIn):
    return _respond(playlist_service.promote_request(payload.username, payload.request_id))


@app.post("/playlist/requests/edit", response_model=OperationOut, dependencies=[Depends(require_token)])
def edit_request(payload: EditCommandIn):
    return _respond(playlist_service.edit_request(payload.username, payload.command))


@app.post("/playlist/requests/remove", response_model=OperationOut, dependencies=[Depends(require_token)])
def remove_request(payload: RemoveIn):
    return _respond(playlist_service.remove_request(payload.username, payload.command, is_mod=payload.is_mod))


@app.put("/playlist/requests/{request_id}", response_model=OperationOut, dependencies=[Depends(require_token)])
def edit_request_by_id(payload: EditRequestIn, request_id: int = Path(..., ge=1)):
    return _respond(
        playlist_service.edit_request_by_id(request_id, payload.username, payload.text, is_mod=payload.is_mod)
    )


@app.post("/playlist/requests/{request_id}/archive", response_model=OperationOut, dependencies=[Depends(require_token)])
def archive_request(request_id: int = Path(..., ge=1)):
    return _respond(playlist_service.archive_request(request_id))


@app.post("/playlist/requests/{request_id}/library", response_model=OperationOut, dependencies=[Depends(require_token)])
def mark_in_library(request_id: int = Path(..., ge=1)):
    return _respond(playlist_service.mark_in_library(request_id))


@app.post("/playlist/current/archive", response_model=OperationOut, dependencies=[Depends(require_token)])
def archive_current(payload: Optional[ArchiveCurrentIn] = Body(default=None)):
    request_id = payload.request_id if payload else None
    return _respond(playlist_service.archive_current(request_id))


@app.post("/playlist/clear", response_model=OperationOut, dependencies=[Depends(require_token)])
def clear_requests():
    return _respond(playlist_service.clear_requests())


@app.post("/playlist/estimate", response_model=OperationOut)
def estimate_finish(payload: EstimateIn):
    return _respond(playlist_service.estimated_finish(payload.viewers))


@app.get("/playlist/super", response_model=OperationOut)
def super_request_in_queue():
    return _respond(playlist_service.is_super_request_in_queue())


# =====================================
# Routes: Users
# =====================================
@app.get("/users/{username}/requests", response_model=OperationOut)
def user_requests(username: str):
    return _respond(playlist_service.get_user_requests(username))


@app.post("/users/{username}/seen", response_model=OperationOut, dependencies=[Depends(require_token)])
def user_seen(username: str):
    return _respond(playlist_service.mark_user_seen(username))


@app.get("/users/{username}/vips", response_model=OperationOut)
def user_vips(username: str):
    return _respond(playlist_service.token_account(username))


@app.post("/users/{username}/vips", response_model=OperationOut, dependencies=[Depends(require_token)])
def grant_vips(payload: GrantIn, username: str):
    return _respond(playlist_service.grant_tokens(username, payload.source, payload.amount))


@app.post("/users/{username}/vips/gift", response_model=OperationOut, dependencies=[Depends(require_token)])
def gift_vip(payload: GiftIn, username: str):
    return _respond(playlist_service.gift_vip(username, payload.receiver))


# =====================================
# Routes: Stream
# =====================================
@app.get("/stream/status", response_model=StreamStatusOut)
def stream_status(broadcaster: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    return {"broadcaster": normalize_username(broadcaster), "online": get_stream_status(db, broadcaster)}


@app.put("/stream/status", response_model=StreamStatusOut, dependencies=[Depends(require_token)])
def update_stream_status(payload: StreamStatusIn, db: Session = Depends(get_db)):
    online = save_stream_status(db, payload.broadcaster, payload.online)
    return {"broadcaster": normalize_username(payload.broadcaster), "online": online}
