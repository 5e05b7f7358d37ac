"""Per-user request ledger backed by SQL storage."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Column, DateTime
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 25
DEFAULT_RESET_WINDOW = timedelta(hours=24)


class UsageLedgerError(RuntimeError):
    """Raised when the usage store cannot be read or written."""


class UsageRecord(SQLModel, table=True):
    __tablename__ = "api_usage"

    user_id: str = Field(primary_key=True)
    usage_count: int = Field(default=0)
    # Naive UTC; a plain DateTime column so SQLModel does not demand tzinfo on bind.
    reset_time: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False))


def remaining_requests(max_requests: int, usage_count: int) -> int:
    return max(max_requests - usage_count, 0)


@dataclass
class UsageDecision:
    """Outcome of a single check-and-consume call."""

    allowed: bool
    usage_count: int
    reset_time: datetime
    max_requests: int

    @property
    def remaining(self) -> int:
        return remaining_requests(self.max_requests, self.usage_count)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes, so everything is compared as naive UTC.
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def create_ledger_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Ledger calls run on the thread pool.
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


class UsageLedger:
    """Counts requests per user identity and enforces a ceiling per reset window.

    The read and the write of one call happen in a single session but without a row lock,
    so concurrent requests for the same user can over-count past ``max_requests`` by a few.
    When two first requests for a new user race on the insert, the loser re-reads the row
    the winner created and counts against it.
    """

    def __init__(
        self,
        engine: Engine,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window: timedelta = DEFAULT_RESET_WINDOW,
        create_tables: bool = True,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.engine = engine
        self.max_requests = max_requests
        self.window = window
        if create_tables:
            SQLModel.metadata.create_all(engine, tables=[UsageRecord.__table__])

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "UsageLedger":
        return cls(create_ledger_engine(database_url), **kwargs)

    def check_and_consume(self, user_id: str, now: Optional[datetime] = None) -> UsageDecision:
        """Record one request for ``user_id`` if the quota allows it.

        Denied calls leave the stored record untouched.
        """
        current = _as_naive_utc(now) if now is not None else utc_now()
        try:
            try:
                decision = self._consume(user_id, current)
            except IntegrityError:
                logger.debug("Record for user %s created concurrently, counting again", user_id)
                decision = self._consume(user_id, current)
        except SQLAlchemyError as exc:
            logger.exception("Usage ledger error for user %s", user_id)
            raise UsageLedgerError("Usage ledger unavailable") from exc

        if decision.allowed:
            logger.debug("User %s at %d/%d requests", user_id, decision.usage_count, self.max_requests)
        else:
            logger.info("Usage limit reached for user %s (%d requests)", user_id, decision.usage_count)
        return decision

    def get_usage(self, user_id: str) -> Optional[UsageRecord]:
        """Return the stored record for ``user_id`` without consuming quota."""
        try:
            with Session(self.engine) as session:
                record = session.get(UsageRecord, user_id)
                if record is not None:
                    session.expunge(record)
                return record
        except SQLAlchemyError as exc:
            logger.exception("Usage ledger error for user %s", user_id)
            raise UsageLedgerError("Usage ledger unavailable") from exc

    def remaining(self, record: UsageRecord) -> int:
        return remaining_requests(self.max_requests, record.usage_count)

    def _consume(self, user_id: str, current: datetime) -> UsageDecision:
        with Session(self.engine) as session:
            record = session.get(UsageRecord, user_id)
            if record is None:
                record = UsageRecord(
                    user_id=user_id,
                    usage_count=1,
                    reset_time=current + self.window,
                )
            elif current > record.reset_time:
                record.usage_count = 1
                record.reset_time = current + self.window
            elif record.usage_count < self.max_requests:
                record.usage_count += 1
            else:
                return self._decision(False, record)

            decision = self._decision(True, record)
            session.add(record)
            session.commit()
        return decision

    def _decision(self, allowed: bool, record: UsageRecord) -> UsageDecision:
        return UsageDecision(
            allowed=allowed,
            usage_count=record.usage_count,
            reset_time=record.reset_time,
            max_requests=self.max_requests,
        )
