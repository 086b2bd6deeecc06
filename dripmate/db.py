"""
Database abstraction for the credential and coffee stores.

``SqlDbClient`` accepts any SQLAlchemy URL (Postgres in production, SQLite
in tests); ``InMemoryDbClient`` is the development/test implementation.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    and_,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

DEFAULT_GRINDER = "fellow_gen2"
DEFAULT_METHOD = "v60"

WHITELIST_EDITABLE_FIELDS = ("name", "website", "note")


class DuplicateEmailError(Exception):
    """An email is already present in a table with a unique email column."""


class DuplicateTokenError(Exception):
    """A token is already used by another registration or account."""


class DuplicateUsernameError(Exception):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def whitelist_status(token: Optional[str], registered: bool) -> str:
    if registered:
        return "registered"
    if token:
        return "sent"
    return "invited"


@dataclass
class WhitelistRecord:
    id: int
    email: str
    name: str = ""
    website: str = ""
    note: str = ""
    added_at: datetime = field(default_factory=utcnow)
    token: Optional[str] = None
    status: str = "invited"

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "website": self.website,
            "note": self.note,
            "added_at": self.added_at.isoformat(),
            "token": self.token,
            "status": self.status,
        }


@dataclass
class RegistrationRecord:
    id: int
    email: str
    token: str
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountRecord:
    id: int
    username: str
    token: str
    device_id: Optional[str] = None
    device_info: Optional[str] = None
    grinder_preference: str = DEFAULT_GRINDER
    method_preference: str = DEFAULT_METHOD
    water_hardness: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    def public_profile(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "deviceId": self.device_id,
            "grinderPreference": self.grinder_preference or DEFAULT_GRINDER,
            "methodPreference": self.method_preference or DEFAULT_METHOD,
            "waterHardness": self.water_hardness,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class CoffeeRecord:
    id: int
    account_id: int
    payload: dict
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            **self.payload,
            "savedAt": self.created_at.isoformat(),
        }


class DbClient(Protocol):
    """Interface for database access."""

    # Whitelist
    def add_whitelist_entry(
        self, email: str, name: str = "", website: str = "", note: str = ""
    ) -> WhitelistRecord:
        ...

    def get_whitelist_entry_by_email(self, email: str) -> Optional[WhitelistRecord]:
        ...

    def update_whitelist_entry(self, entry_id: int, fields: Dict[str, str]) -> bool:
        ...

    def delete_whitelist_entry(self, entry_id: int) -> bool:
        ...

    def list_whitelist(self) -> list[WhitelistRecord]:
        ...

    # Pending registrations
    def create_registration(self, email: str, token: str) -> RegistrationRecord:
        ...

    def get_registration_by_email(self, email: str) -> Optional[RegistrationRecord]:
        ...

    def get_registration_by_token(self, token: str) -> Optional[RegistrationRecord]:
        ...

    def mark_registration_used(self, token: str) -> None:
        ...

    # Accounts
    def create_account(
        self,
        username: str,
        token: str,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AccountRecord:
        ...

    def get_account_by_token(self, token: str) -> Optional[AccountRecord]:
        ...

    def bind_device(
        self, account_id: int, device_id: str, device_info: Optional[str] = None
    ) -> bool:
        ...

    def touch_last_login(self, account_id: int) -> datetime:
        ...

    def update_preferences(self, account_id: int, **changes: Any) -> None:
        ...

    def delete_account(self, account_id: int) -> bool:
        ...

    # Coffee records
    def list_coffees(self, account_id: int) -> list[CoffeeRecord]:
        ...

    def replace_coffees(self, account_id: int, payloads: list[dict]) -> int:
        ...

    def close(self) -> None:
        ...


PREFERENCE_FIELDS = ("grinder_preference", "method_preference", "water_hardness")


def _check_preference_fields(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - set(PREFERENCE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown preference fields: {sorted(unknown)}")


def _serialize_payload(payload: dict) -> str:
    if not isinstance(payload, dict):
        raise TypeError("Coffee records must be JSON objects")
    return json.dumps(payload)


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self.whitelist: Dict[int, WhitelistRecord] = {}
        self.registrations: Dict[int, RegistrationRecord] = {}
        self.accounts: Dict[int, AccountRecord] = {}
        self.coffees: Dict[int, list[CoffeeRecord]] = {}
        self._next_ids: Dict[str, int] = {}

    def _next_id(self, table: str) -> int:
        value = self._next_ids.get(table, 0) + 1
        self._next_ids[table] = value
        return value

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.whitelist.clear()
            self.registrations.clear()
            self.accounts.clear()
            self.coffees.clear()
            self._next_ids.clear()

    def close(self) -> None:
        pass

    # Whitelist

    def add_whitelist_entry(
        self, email: str, name: str = "", website: str = "", note: str = ""
    ) -> WhitelistRecord:
        with self._lock:
            if any(e.email == email for e in self.whitelist.values()):
                raise DuplicateEmailError(email)
            record = WhitelistRecord(
                id=self._next_id("whitelist"),
                email=email,
                name=name,
                website=website,
                note=note,
            )
            self.whitelist[record.id] = record
            return replace(record)

    def get_whitelist_entry_by_email(self, email: str) -> Optional[WhitelistRecord]:
        with self._lock:
            for entry in self.whitelist.values():
                if entry.email == email:
                    return replace(entry)
        return None

    def update_whitelist_entry(self, entry_id: int, fields: Dict[str, str]) -> bool:
        with self._lock:
            entry = self.whitelist.get(entry_id)
            if not entry:
                return False
            for key, value in fields.items():
                if key in WHITELIST_EDITABLE_FIELDS:
                    setattr(entry, key, value)
            return True

    def delete_whitelist_entry(self, entry_id: int) -> bool:
        with self._lock:
            return self.whitelist.pop(entry_id, None) is not None

    def list_whitelist(self) -> list[WhitelistRecord]:
        with self._lock:
            entries = sorted(
                self.whitelist.values(),
                key=lambda e: (e.added_at, e.id),
                reverse=True,
            )
            results = []
            for entry in entries:
                registration = self._registration_where(email=entry.email)
                token = registration.token if registration else None
                account = self._account_where(token=token) if token else None
                registered = bool(account and account.device_id)
                results.append(
                    replace(
                        entry,
                        token=token,
                        status=whitelist_status(token, registered),
                    )
                )
            return results

    # Pending registrations

    def _registration_where(self, **criteria) -> Optional[RegistrationRecord]:
        for record in self.registrations.values():
            if all(getattr(record, k) == v for k, v in criteria.items()):
                return record
        return None

    def create_registration(self, email: str, token: str) -> RegistrationRecord:
        with self._lock:
            if self._registration_where(email=email):
                raise DuplicateEmailError(email)
            if self._registration_where(token=token):
                raise DuplicateTokenError(token)
            record = RegistrationRecord(
                id=self._next_id("registrations"), email=email, token=token
            )
            self.registrations[record.id] = record
            return replace(record)

    def get_registration_by_email(self, email: str) -> Optional[RegistrationRecord]:
        with self._lock:
            record = self._registration_where(email=email)
            return replace(record) if record else None

    def get_registration_by_token(self, token: str) -> Optional[RegistrationRecord]:
        with self._lock:
            record = self._registration_where(token=token)
            return replace(record) if record else None

    def mark_registration_used(self, token: str) -> None:
        with self._lock:
            record = self._registration_where(token=token)
            if record:
                record.used = True

    # Accounts

    def _account_where(self, **criteria) -> Optional[AccountRecord]:
        for record in self.accounts.values():
            if all(getattr(record, k) == v for k, v in criteria.items()):
                return record
        return None

    def create_account(
        self,
        username: str,
        token: str,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AccountRecord:
        with self._lock:
            if self._account_where(token=token):
                raise DuplicateTokenError(token)
            if self._account_where(username=username):
                raise DuplicateUsernameError(username)
            record = AccountRecord(
                id=self._next_id("users"),
                username=username,
                token=token,
                device_id=device_id,
                device_info=device_info,
            )
            self.accounts[record.id] = record
            return replace(record)

    def get_account_by_token(self, token: str) -> Optional[AccountRecord]:
        with self._lock:
            record = self._account_where(token=token)
            return replace(record) if record else None

    def bind_device(
        self, account_id: int, device_id: str, device_info: Optional[str] = None
    ) -> bool:
        with self._lock:
            record = self.accounts.get(account_id)
            if not record or record.device_id is not None:
                return False
            record.device_id = device_id
            record.device_info = device_info
            return True

    def touch_last_login(self, account_id: int) -> datetime:
        now = utcnow()
        with self._lock:
            record = self.accounts.get(account_id)
            if record:
                record.last_login_at = now
        return now

    def update_preferences(self, account_id: int, **changes: Any) -> None:
        _check_preference_fields(changes)
        with self._lock:
            record = self.accounts.get(account_id)
            if not record:
                return
            for key, value in changes.items():
                setattr(record, key, value)

    def delete_account(self, account_id: int) -> bool:
        with self._lock:
            self.coffees.pop(account_id, None)
            return self.accounts.pop(account_id, None) is not None

    # Coffee records

    def list_coffees(self, account_id: int) -> list[CoffeeRecord]:
        with self._lock:
            records = self.coffees.get(account_id, [])
            ordered = sorted(records, key=lambda r: r.id)
            ordered.sort(key=lambda r: r.created_at, reverse=True)
            return [replace(r, payload=dict(r.payload)) for r in ordered]

    def replace_coffees(self, account_id: int, payloads: list[dict]) -> int:
        # Serialize everything before touching state so a bad record
        # leaves the previous set untouched.
        serialized = [_serialize_payload(p) for p in payloads]
        now = utcnow()
        with self._lock:
            self.coffees[account_id] = [
                CoffeeRecord(
                    id=self._next_id("coffees"),
                    account_id=account_id,
                    payload=json.loads(data),
                    created_at=now,
                )
                for data in serialized
            ]
        return len(serialized)


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _to_whitelist_record(
        row: "WhitelistRow", token: Optional[str] = None, registered: bool = False
    ) -> WhitelistRecord:
        return WhitelistRecord(
            id=row.id,
            email=row.email,
            name=row.name or "",
            website=row.website or "",
            note=row.note or "",
            added_at=_as_utc(row.added_at),
            token=token,
            status=whitelist_status(token, registered),
        )

    @staticmethod
    def _to_registration_record(row: "RegistrationRow") -> RegistrationRecord:
        return RegistrationRecord(
            id=row.id,
            email=row.email,
            token=row.token,
            used=bool(row.used),
            created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _to_account_record(row: "AccountRow") -> AccountRecord:
        return AccountRecord(
            id=row.id,
            username=row.username,
            token=row.token,
            device_id=row.device_id,
            device_info=row.device_info,
            grinder_preference=row.grinder_preference,
            method_preference=row.method_preference,
            water_hardness=row.water_hardness,
            created_at=_as_utc(row.created_at),
            last_login_at=_as_utc(row.last_login_at),
        )

    # Whitelist

    def add_whitelist_entry(
        self, email: str, name: str = "", website: str = "", note: str = ""
    ) -> WhitelistRecord:
        with self.Session() as session:
            row = WhitelistRow(
                email=email, name=name, website=website, note=note, added_at=utcnow()
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateEmailError(email) from exc
            session.refresh(row)
            return self._to_whitelist_record(row)

    def get_whitelist_entry_by_email(self, email: str) -> Optional[WhitelistRecord]:
        with self.Session() as session:
            row = session.execute(
                select(WhitelistRow).where(WhitelistRow.email == email)
            ).scalar_one_or_none()
            return self._to_whitelist_record(row) if row else None

    def update_whitelist_entry(self, entry_id: int, fields: Dict[str, str]) -> bool:
        values = {k: v for k, v in fields.items() if k in WHITELIST_EDITABLE_FIELDS}
        with self.Session() as session:
            row = session.get(WhitelistRow, entry_id)
            if not row:
                return False
            for key, value in values.items():
                setattr(row, key, value)
            session.commit()
            return True

    def delete_whitelist_entry(self, entry_id: int) -> bool:
        with self.Session() as session:
            result = session.execute(
                delete(WhitelistRow).where(WhitelistRow.id == entry_id)
            )
            session.commit()
            return result.rowcount > 0

    def list_whitelist(self) -> list[WhitelistRecord]:
        stmt = (
            select(WhitelistRow, RegistrationRow.token, AccountRow.id)
            .outerjoin(RegistrationRow, RegistrationRow.email == WhitelistRow.email)
            .outerjoin(
                AccountRow,
                and_(
                    AccountRow.token == RegistrationRow.token,
                    AccountRow.device_id.is_not(None),
                ),
            )
            .order_by(WhitelistRow.added_at.desc(), WhitelistRow.id.desc())
        )
        with self.Session() as session:
            return [
                self._to_whitelist_record(row, token, account_id is not None)
                for row, token, account_id in session.execute(stmt)
            ]

    # Pending registrations

    def create_registration(self, email: str, token: str) -> RegistrationRecord:
        with self.Session() as session:
            row = RegistrationRow(email=email, token=token, used=False, created_at=utcnow())
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if self.get_registration_by_email(email):
                    raise DuplicateEmailError(email) from exc
                raise DuplicateTokenError(token) from exc
            session.refresh(row)
            return self._to_registration_record(row)

    def get_registration_by_email(self, email: str) -> Optional[RegistrationRecord]:
        with self.Session() as session:
            row = session.execute(
                select(RegistrationRow).where(RegistrationRow.email == email)
            ).scalar_one_or_none()
            return self._to_registration_record(row) if row else None

    def get_registration_by_token(self, token: str) -> Optional[RegistrationRecord]:
        with self.Session() as session:
            row = session.execute(
                select(RegistrationRow).where(RegistrationRow.token == token)
            ).scalar_one_or_none()
            return self._to_registration_record(row) if row else None

    def mark_registration_used(self, token: str) -> None:
        with self.Session() as session:
            session.execute(
                update(RegistrationRow)
                .where(RegistrationRow.token == token)
                .values(used=True)
            )
            session.commit()

    # Accounts

    def create_account(
        self,
        username: str,
        token: str,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AccountRecord:
        now = utcnow()
        with self.Session() as session:
            row = AccountRow(
                username=username,
                token=token,
                device_id=device_id,
                device_info=device_info,
                grinder_preference=DEFAULT_GRINDER,
                method_preference=DEFAULT_METHOD,
                created_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if self.get_account_by_token(token):
                    raise DuplicateTokenError(token) from exc
                raise DuplicateUsernameError(username) from exc
            session.refresh(row)
            return self._to_account_record(row)

    def get_account_by_token(self, token: str) -> Optional[AccountRecord]:
        with self.Session() as session:
            row = session.execute(
                select(AccountRow).where(AccountRow.token == token)
            ).scalar_one_or_none()
            return self._to_account_record(row) if row else None

    def bind_device(
        self, account_id: int, device_id: str, device_info: Optional[str] = None
    ) -> bool:
        with self.Session() as session:
            result = session.execute(
                update(AccountRow)
                .where(AccountRow.id == account_id, AccountRow.device_id.is_(None))
                .values(device_id=device_id, device_info=device_info)
            )
            session.commit()
            return result.rowcount == 1

    def touch_last_login(self, account_id: int) -> datetime:
        now = utcnow()
        with self.Session() as session:
            session.execute(
                update(AccountRow)
                .where(AccountRow.id == account_id)
                .values(last_login_at=now)
            )
            session.commit()
        return now

    def update_preferences(self, account_id: int, **changes: Any) -> None:
        _check_preference_fields(changes)
        if not changes:
            return
        with self.Session() as session:
            session.execute(
                update(AccountRow).where(AccountRow.id == account_id).values(**changes)
            )
            session.commit()

    def delete_account(self, account_id: int) -> bool:
        with self.Session.begin() as session:
            session.execute(delete(CoffeeRow).where(CoffeeRow.user_id == account_id))
            result = session.execute(delete(AccountRow).where(AccountRow.id == account_id))
            return result.rowcount > 0

    # Coffee records

    def list_coffees(self, account_id: int) -> list[CoffeeRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(CoffeeRow)
                    .where(CoffeeRow.user_id == account_id)
                    .order_by(CoffeeRow.created_at.desc(), CoffeeRow.id.asc())
                )
                .scalars()
                .all()
            )
            return [
                CoffeeRecord(
                    id=row.id,
                    account_id=row.user_id,
                    payload=json.loads(row.data),
                    created_at=_as_utc(row.created_at),
                )
                for row in rows
            ]

    def replace_coffees(self, account_id: int, payloads: list[dict]) -> int:
        now = utcnow()
        # Delete and inserts share one transaction; any failure rolls both back.
        with self.Session.begin() as session:
            session.execute(delete(CoffeeRow).where(CoffeeRow.user_id == account_id))
            for payload in payloads:
                session.add(
                    CoffeeRow(
                        user_id=account_id,
                        data=_serialize_payload(payload),
                        created_at=now,
                    )
                )
            session.flush()
        return len(payloads)


Base = declarative_base()


class WhitelistRow(Base):
    __tablename__ = "whitelist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, unique=True)
    name = Column(String, nullable=False, default="")
    website = Column(String, nullable=False, default="")
    note = Column(Text, nullable=False, default="")
    added_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class RegistrationRow(Base):
    __tablename__ = "registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, unique=True)
    token = Column(String(64), nullable=False, unique=True)
    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AccountRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), nullable=False, unique=True)
    token = Column(String(64), nullable=False, unique=True)
    device_id = Column(String, nullable=True)
    device_info = Column(Text, nullable=True)
    grinder_preference = Column(String(32), nullable=False, default=DEFAULT_GRINDER)
    method_preference = Column(String(32), nullable=False, default=DEFAULT_METHOD)
    water_hardness = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = Column(DateTime(timezone=True), nullable=True)


class CoffeeRow(Base):
    __tablename__ = "coffees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    data = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
