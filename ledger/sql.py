"""SQLAlchemy-backed ledger store.

Two relations: ``users`` (balance, active reward pair, milestone map) and the
append-only ``user_actions`` log. Each transaction locks the user row with
``SELECT ... FOR UPDATE`` where the backend supports it, and the in-process
per-user lock covers backends that do not (SQLite).
"""

from __future__ import annotations

import json
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from .errors import PersistenceError, UserNotFoundError
from .locks import UserLocks
from .models import LedgerEntry, User
from .store import LedgerTransaction


class MilestoneMap(TypeDecorator):
    """Threshold -> code mapping stored as JSON text; keys come back as ints."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[dict[int, str]], dialect: Any) -> str:
        return json.dumps({str(k): v for k, v in (value or {}).items()}, sort_keys=True)

    def process_result_value(self, value: Optional[str], dialect: Any) -> dict[int, str]:
        if not value:
            return {}
        return {int(k): v for k, v in json.loads(value).items()}


class Base(DeclarativeBase):
    pass


class UserRecord(Base):
    __tablename__ = "users"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referral_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_reward_code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    active_reward_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    milestone_redemptions: Mapped[dict[int, str]] = mapped_column(MilestoneMap, nullable=False, default=dict)


class UserActionRecord(Base):
    __tablename__ = "user_actions"

    action_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.user_id"), index=True, nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


def _to_user(row: UserRecord) -> User:
    return User(
        user_id=row.user_id,
        email=row.email,
        points=row.points,
        referral_count=row.referral_count,
        active_reward_code=row.active_reward_code,
        active_reward_id=row.active_reward_id,
        milestone_redemptions=dict(row.milestone_redemptions or {}),
    )


class SqlLedgerStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine: Optional[AsyncEngine] = None):
        self._session_factory = session_factory
        self._engine = engine
        self._locks = UserLocks()

    @classmethod
    def from_url(cls, database_url: str) -> "SqlLedgerStore":
        engine = create_async_engine(database_url, future=True)
        factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
        return cls(factory, engine=engine)

    async def create_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("create_schema requires a store built with an engine")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def add_user(self, email: str, points: int = 0, referral_count: int = 0) -> User:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = UserRecord(
                        email=email,
                        points=points,
                        referral_count=referral_count,
                        milestone_redemptions={},
                    )
                    session.add(row)
                    await session.flush()
                    return _to_user(row)
        except IntegrityError as exc:
            raise ValueError(f"User {email} already exists") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not create user {email}") from exc

    async def get_user(self, email: str) -> User:
        try:
            async with self._session_factory() as session:
                row = (
                    await session.execute(select(UserRecord).where(UserRecord.email == email))
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError("Ledger store unavailable") from exc
        if row is None:
            raise UserNotFoundError(f"User {email} not found")
        return _to_user(row)

    @asynccontextmanager
    async def transaction(self, user_id: int) -> AsyncIterator[LedgerTransaction]:
        async with self._locks.hold(user_id):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        row = (
                            await session.execute(
                                select(UserRecord)
                                .where(UserRecord.user_id == user_id)
                                .with_for_update()
                            )
                        ).scalar_one_or_none()
                        if row is None:
                            raise UserNotFoundError(f"User {user_id} not found")

                        tx = LedgerTransaction(_to_user(row))
                        yield tx

                        row.points = tx.user.points
                        row.active_reward_code = tx.user.active_reward_code
                        row.active_reward_id = tx.user.active_reward_id
                        row.milestone_redemptions = dict(tx.user.milestone_redemptions)
                        session.add_all(
                            UserActionRecord(user_id=user_id, action_type=kind, points_awarded=delta)
                            for kind, delta in tx.pending_actions
                        )
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Transaction for user {user_id} was not committed") from exc

    async def list_actions(self, user_id: int) -> list[LedgerEntry]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(UserActionRecord)
                        .where(UserActionRecord.user_id == user_id)
                        .order_by(UserActionRecord.action_id)
                    )
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError("Ledger store unavailable") from exc
        return [
            LedgerEntry(
                entry_id=row.action_id,
                user_id=row.user_id,
                action_kind=row.action_type,
                points_delta=row.points_awarded,
                created_at=row.created_at,
            )
            for row in rows
        ]
