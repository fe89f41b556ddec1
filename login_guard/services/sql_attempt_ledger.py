from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from login_guard.models.account_lockout import AccountLockout
from login_guard.models.ip_block import IpBlock
from login_guard.models.login_attempt import LoginAttemptRecord
from login_guard.services.attempt_ledger import (
    AttemptLedger,
    IpBlockRecord,
    LedgerSummary,
    LockoutRecord,
    LoginAttempt,
)
from login_guard.services.guard_errors import StorageUnavailable

logger = logging.getLogger(__name__)


class SqlAttemptLedger(AttemptLedger):
    """Ledger persisted through SQLAlchemy, one short session per call."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("[BRUTE_FORCE] ledger storage error: %s", exc.__class__.__name__)
            raise StorageUnavailable(str(exc)) from exc
        finally:
            db.close()

    def record(self, attempt: LoginAttempt) -> None:
        with self._session() as db:
            db.add(
                LoginAttemptRecord(
                    identifier=attempt.identifier,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    success=attempt.success,
                    blocked=attempt.blocked,
                    created_at=attempt.timestamp,
                )
            )

    def recent_attempts(self, identifier: str, window: timedelta, *, now: datetime) -> list[LoginAttempt]:
        with self._session() as db:
            rows = (
                db.query(LoginAttemptRecord)
                .filter(
                    LoginAttemptRecord.identifier == identifier,
                    LoginAttemptRecord.created_at >= now - window,
                )
                .order_by(LoginAttemptRecord.created_at.desc(), LoginAttemptRecord.id.desc())
                .all()
            )
            return [_to_attempt(row) for row in rows]

    def count_ip_failures_since(self, ip_address: str, since: datetime) -> int:
        with self._session() as db:
            return (
                db.query(func.count(LoginAttemptRecord.id))
                .filter(
                    LoginAttemptRecord.ip_address == ip_address,
                    LoginAttemptRecord.success.is_(False),
                    LoginAttemptRecord.blocked.is_(False),
                    LoginAttemptRecord.created_at >= since,
                )
                .scalar()
                or 0
            )

    def get_lockout(self, identifier: str) -> Optional[LockoutRecord]:
        with self._session() as db:
            row = db.query(AccountLockout).filter(AccountLockout.identifier == identifier).first()
            if row is None:
                return None
            return LockoutRecord(
                identifier=row.identifier,
                locked_at=row.locked_at,
                locked_until=row.locked_until,
                reset_at=row.reset_at,
                lockout_level=row.lockout_level or 0,
                last_lockout_at=row.last_lockout_at,
                last_failure_at=row.last_failure_at,
            )

    def open_lockout(
        self, identifier: str, *, locked_at: datetime, locked_until: datetime, level: int
    ) -> bool:
        self._ensure_lockout_row(identifier)
        with self._session() as db:
            result = db.execute(
                update(AccountLockout)
                .where(
                    AccountLockout.identifier == identifier,
                    or_(AccountLockout.locked_until.is_(None), AccountLockout.locked_until <= locked_at),
                )
                .values(
                    locked_at=locked_at,
                    locked_until=locked_until,
                    lockout_level=level,
                    last_lockout_at=locked_at,
                )
            )
            return result.rowcount == 1

    def note_failure(self, identifier: str, *, at: datetime, forget_escalation: bool = False) -> None:
        self._ensure_lockout_row(identifier)
        values = {"last_failure_at": at}
        if forget_escalation:
            values.update(lockout_level=0, last_lockout_at=None)
        with self._session() as db:
            db.execute(update(AccountLockout).where(AccountLockout.identifier == identifier).values(**values))

    def clear_lockout(self, identifier: str, *, reset_at: datetime, forget_escalation: bool = False) -> None:
        self._ensure_lockout_row(identifier)
        values = {"locked_at": None, "locked_until": None, "reset_at": reset_at}
        if forget_escalation:
            values.update(lockout_level=0, last_lockout_at=None)
        with self._session() as db:
            db.execute(update(AccountLockout).where(AccountLockout.identifier == identifier).values(**values))

    def get_ip_block(self, ip_address: str) -> Optional[IpBlockRecord]:
        with self._session() as db:
            row = db.query(IpBlock).filter(IpBlock.ip_address == ip_address).first()
            if row is None:
                return None
            return IpBlockRecord(
                ip_address=row.ip_address,
                blocked_at=row.blocked_at,
                blocked_until=row.blocked_until,
                reason=row.reason or "",
            )

    def open_ip_block(
        self, ip_address: str, *, blocked_at: datetime, blocked_until: datetime, reason: str
    ) -> bool:
        self._ensure_row(IpBlock, IpBlock.ip_address == ip_address, IpBlock(ip_address=ip_address))
        with self._session() as db:
            result = db.execute(
                update(IpBlock)
                .where(
                    IpBlock.ip_address == ip_address,
                    or_(IpBlock.blocked_until.is_(None), IpBlock.blocked_until <= blocked_at),
                )
                .values(blocked_at=blocked_at, blocked_until=blocked_until, reason=reason)
            )
            return result.rowcount == 1

    def clear_ip_block(self, ip_address: str) -> bool:
        with self._session() as db:
            deleted = db.query(IpBlock).filter(IpBlock.ip_address == ip_address).delete()
            return deleted > 0

    def prune(self, before: datetime) -> int:
        with self._session() as db:
            return (
                db.query(LoginAttemptRecord)
                .filter(LoginAttemptRecord.created_at < before)
                .delete(synchronize_session=False)
            )

    def summarize(self, since: datetime, *, now: datetime, top_n: int = 10) -> LedgerSummary:
        with self._session() as db:
            window = LoginAttemptRecord.created_at > since
            total = db.query(func.count(LoginAttemptRecord.id)).filter(window).scalar() or 0
            failed = (
                db.query(func.count(LoginAttemptRecord.id))
                .filter(window, LoginAttemptRecord.success.is_(False))
                .scalar()
                or 0
            )
            locked_accounts = (
                db.query(func.count(AccountLockout.id)).filter(AccountLockout.locked_until > now).scalar() or 0
            )
            blocked_ips = db.query(func.count(IpBlock.id)).filter(IpBlock.blocked_until > now).scalar() or 0
            attempts_column = func.count(LoginAttemptRecord.id).label("attempts")
            attackers = (
                db.query(LoginAttemptRecord.ip_address, attempts_column)
                .filter(window, LoginAttemptRecord.success.is_(False))
                .group_by(LoginAttemptRecord.ip_address)
                .order_by(attempts_column.desc(), LoginAttemptRecord.ip_address)
                .limit(top_n)
                .all()
            )
        return LedgerSummary(
            total_attempts=total,
            failed_attempts=failed,
            locked_accounts=locked_accounts,
            blocked_ips=blocked_ips,
            top_attackers=[(ip, count) for ip, count in attackers],
        )

    def _ensure_lockout_row(self, identifier: str) -> None:
        self._ensure_row(
            AccountLockout,
            AccountLockout.identifier == identifier,
            AccountLockout(identifier=identifier, lockout_level=0),
        )

    def _ensure_row(self, model, criterion, new_row) -> None:
        db = self._session_factory()
        try:
            if db.query(model.id).filter(criterion).first() is None:
                db.add(new_row)
                db.commit()
        except IntegrityError:
            # Created concurrently by another worker
            db.rollback()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("[BRUTE_FORCE] ledger storage error: %s", exc.__class__.__name__)
            raise StorageUnavailable(str(exc)) from exc
        finally:
            db.close()


def _to_attempt(row: LoginAttemptRecord) -> LoginAttempt:
    return LoginAttempt(
        identifier=row.identifier,
        ip_address=row.ip_address,
        user_agent=row.user_agent or "",
        success=bool(row.success),
        timestamp=row.created_at,
        blocked=bool(row.blocked),
    )
