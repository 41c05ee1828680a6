"""
SQL storage for the ledger, coupons and the audit trail
Uses SQLAlchemy; reservations are conditional UPDATE statements inside one
transaction, so a lost race shows up as an UPDATE that matched no row.
"""

from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    create_engine,
    event,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from .audit import AuditSink, log_audit_rows
from .exceptions import InfrastructureError
from .ledger import Reservation, ReservationOutcome, UsageClaim, UsageCounter, UsageLedger
from .models import CampaignAudit, CampaignUsage, Coupon, ExclusionReason
from .stores import CouponStore


Base = declarative_base()


class UsageCounterRecord(Base):
    """Usage count and spent budget per campaign, rule or coupon key"""

    __tablename__ = "usage_counters"

    counter_key = Column(String(200), primary_key=True)
    usage_count = Column(Integer, nullable=False, default=0)
    spent_amount = Column(Integer, nullable=False, default=0)


class UserUsageRecord(Base):
    __tablename__ = "user_usage"

    counter_key = Column(String(200), primary_key=True)
    customer_id = Column(String(100), primary_key=True)
    usage_count = Column(Integer, nullable=False, default=0)


class ReservationRecord(Base):
    __tablename__ = "reservations"

    id = Column(String(64), primary_key=True)
    claims = Column(JSON, nullable=False)
    released = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class CouponRecord(Base):
    """Coupons; the unique code index is what makes generated codes unique"""

    __tablename__ = "coupons"

    id = Column(String(64), primary_key=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    campaign_id = Column(String(64), nullable=True, index=True)
    customer_id = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    valid_until = Column(DateTime(timezone=True), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class CampaignUsageRecord(Base):
    __tablename__ = "campaign_usage"

    id = Column(String(64), primary_key=True)
    campaign_id = Column(String(64), nullable=False, index=True)
    coupon_code = Column(String(50), nullable=True)
    customer_id = Column(String(100), nullable=False, index=True)
    order_id = Column(String(100), nullable=True)
    discount_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    applied_at = Column(DateTime(timezone=True), nullable=False)
    usage_metadata = Column("metadata", JSON, nullable=False, default=dict)


class CampaignAuditRecord(Base):
    __tablename__ = "campaign_audit"

    id = Column(String(64), primary_key=True)
    campaign_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(100), nullable=True, index=True)
    action = Column(String(30), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)


def create_storage_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the ledger tables. SQLite connections open their
    transactions with BEGIN IMMEDIATE so concurrent writers queue on the
    database lock instead of failing on lock upgrade.
    """
    is_sqlite = database_url.startswith("sqlite")
    if not is_sqlite:
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


class _ClaimRefused(Exception):
    def __init__(self, reason: ExclusionReason):
        super().__init__(reason.value)
        self.reason = reason


class SqlUsageLedger(UsageLedger):
    """
    Ledger backed by SQL tables. Every claim of a reservation is a guarded
    UPDATE; if any of them matches no row the transaction rolls back.
    """

    def __init__(self, engine: Engine):
        self.logger = logger
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def reserve(self, claims: List[UsageClaim]) -> ReservationOutcome:
        reservation = Reservation(claims=claims)
        try:
            with self.session_factory.begin() as session:
                for claim in claims:
                    self._claim(session, claim)
                session.add(ReservationRecord(
                    id=reservation.id,
                    claims=[claim.model_dump() for claim in claims],
                    released=False,
                    created_at=datetime.now(timezone.utc),
                ))
        except _ClaimRefused as refused:
            self.logger.debug(f"Reservation refused: {refused.reason.value}")
            return ReservationOutcome(ok=False, reason=refused.reason)
        except SQLAlchemyError as e:
            self.logger.error(f"Ledger reservation failed: {str(e)}")
            raise InfrastructureError(f"Ledger reservation failed: {str(e)}")

        return ReservationOutcome(ok=True, reservation=reservation)

    def release(self, reservation: Reservation) -> None:
        try:
            with self.session_factory.begin() as session:
                result = session.execute(
                    update(ReservationRecord)
                    .execution_options(synchronize_session=False)
                    .where(ReservationRecord.id == reservation.id)
                    .where(ReservationRecord.released.is_(False))
                    .values(released=True)
                )
                if result.rowcount != 1:
                    return

                for claim in reservation.claims:
                    session.execute(
                        update(UsageCounterRecord)
                        .execution_options(synchronize_session=False)
                        .where(UsageCounterRecord.counter_key == claim.key)
                        .where(UsageCounterRecord.usage_count > 0)
                        .values(
                            usage_count=UsageCounterRecord.usage_count - 1,
                            spent_amount=UsageCounterRecord.spent_amount - claim.amount,
                        )
                    )
                    session.execute(
                        update(UserUsageRecord)
                        .execution_options(synchronize_session=False)
                        .where(UserUsageRecord.counter_key == claim.key)
                        .where(UserUsageRecord.customer_id == claim.customer_id)
                        .where(UserUsageRecord.usage_count > 0)
                        .values(usage_count=UserUsageRecord.usage_count - 1)
                    )
        except SQLAlchemyError as e:
            self.logger.error(f"Ledger release failed for {reservation.id}: {str(e)}")
            raise InfrastructureError(f"Ledger release failed: {str(e)}")

        self.logger.debug(f"Released reservation {reservation.id}")

    def get_counter(self, key: str) -> Optional[UsageCounter]:
        try:
            with self.session_factory.begin() as session:
                record = session.get(UsageCounterRecord, key)
                if record is None:
                    return None
                return UsageCounter(usage=record.usage_count, spent=record.spent_amount)
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Ledger read failed: {str(e)}")

    def get_user_usage(self, key: str, customer_id: str) -> int:
        try:
            with self.session_factory.begin() as session:
                record = session.get(UserUsageRecord, (key, customer_id))
                return record.usage_count if record else 0
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Ledger read failed: {str(e)}")

    def _claim(self, session: Session, claim: UsageClaim) -> None:
        session.execute(
            text(
                "INSERT INTO usage_counters (counter_key, usage_count, spent_amount) "
                "SELECT :key, :usage, :spent WHERE NOT EXISTS "
                "(SELECT 1 FROM usage_counters WHERE counter_key = :key)"
            ),
            {"key": claim.key, "usage": claim.baseline_usage, "spent": claim.baseline_spent},
        )

        statement = (
            update(UsageCounterRecord)
            .execution_options(synchronize_session=False)
            .where(UsageCounterRecord.counter_key == claim.key)
            .values(
                usage_count=UsageCounterRecord.usage_count + 1,
                spent_amount=UsageCounterRecord.spent_amount + claim.amount,
            )
        )
        if claim.max_usage is not None:
            statement = statement.where(UsageCounterRecord.usage_count < claim.max_usage)
        if claim.budget is not None:
            statement = statement.where(UsageCounterRecord.spent_amount + claim.amount <= claim.budget)

        if session.execute(statement).rowcount != 1:
            record = session.get(UsageCounterRecord, claim.key)
            if claim.max_usage is not None and record.usage_count >= claim.max_usage:
                raise _ClaimRefused(ExclusionReason.USAGE_LIMIT_REACHED)
            raise _ClaimRefused(ExclusionReason.BUDGET_EXCEEDED)

        session.execute(
            text(
                "INSERT INTO user_usage (counter_key, customer_id, usage_count) "
                "SELECT :key, :customer, 0 WHERE NOT EXISTS "
                "(SELECT 1 FROM user_usage WHERE counter_key = :key AND customer_id = :customer)"
            ),
            {"key": claim.key, "customer": claim.customer_id},
        )
        user_statement = (
            update(UserUsageRecord)
            .execution_options(synchronize_session=False)
            .where(UserUsageRecord.counter_key == claim.key)
            .where(UserUsageRecord.customer_id == claim.customer_id)
            .values(usage_count=UserUsageRecord.usage_count + 1)
        )
        if claim.max_usage_per_user is not None:
            user_statement = user_statement.where(UserUsageRecord.usage_count < claim.max_usage_per_user)
        if session.execute(user_statement).rowcount != 1:
            raise _ClaimRefused(ExclusionReason.PER_USER_LIMIT_REACHED)


class SqlCouponStore(CouponStore):
    """Coupon store with the code uniqueness enforced by a unique index"""

    def __init__(self, engine: Engine):
        self.logger = logger
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def get_by_code(self, code: str) -> Optional[Coupon]:
        try:
            with self.session_factory.begin() as session:
                record = session.execute(
                    select(CouponRecord).where(CouponRecord.code == code.strip().upper())
                ).scalar_one_or_none()
                return Coupon.model_validate(record.payload) if record else None
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get coupon by code: {str(e)}")
            raise InfrastructureError(f"Coupon store unavailable: {str(e)}")

    def insert_unique(self, coupon: Coupon) -> bool:
        try:
            with self.session_factory.begin() as session:
                session.add(self._record(coupon))
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to insert coupon: {str(e)}")
            raise InfrastructureError(f"Coupon store unavailable: {str(e)}")

    def insert_batch(self, coupons: List[Coupon]) -> List[Coupon]:
        rejected = []
        try:
            with self.session_factory.begin() as session:
                for coupon in coupons:
                    # One savepoint per row so a taken code only drops that row
                    try:
                        with session.begin_nested():
                            session.add(self._record(coupon))
                    except IntegrityError:
                        rejected.append(coupon)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to insert coupon batch: {str(e)}")
            raise InfrastructureError(f"Coupon store unavailable: {str(e)}")
        return rejected

    def coupons_for_campaign(self, campaign_id: str) -> List[Coupon]:
        try:
            with self.session_factory.begin() as session:
                records = session.execute(
                    select(CouponRecord)
                    .where(CouponRecord.campaign_id == campaign_id)
                    .order_by(CouponRecord.created_at, CouponRecord.code)
                ).scalars().all()
                return [Coupon.model_validate(record.payload) for record in records]
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to list coupons of campaign {campaign_id}: {str(e)}")
            raise InfrastructureError(f"Coupon store unavailable: {str(e)}")

    def assign_to_customer(self, code: str, customer_id: str) -> bool:
        code = code.strip().upper()
        try:
            with self.session_factory.begin() as session:
                record = session.execute(
                    select(CouponRecord).where(CouponRecord.code == code)
                ).scalar_one_or_none()
                if record is None or record.customer_id is not None:
                    return False

                payload = dict(record.payload, customerId=customer_id)
                result = session.execute(
                    update(CouponRecord)
                    .execution_options(synchronize_session=False)
                    .where(CouponRecord.code == code)
                    .where(CouponRecord.customer_id.is_(None))
                    .values(customer_id=customer_id, payload=payload)
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to assign coupon {code}: {str(e)}")
            raise InfrastructureError(f"Coupon store unavailable: {str(e)}")

    def deactivate(self, codes: List[str]) -> int:
        wanted = [code.strip().upper() for code in codes]
        if not wanted:
            return 0
        return self._deactivate_where(CouponRecord.code.in_(wanted))

    def deactivate_expired(self, now: datetime) -> int:
        return self._deactivate_where(CouponRecord.valid_until < now)

    def _deactivate_where(self, condition) -> int:
        try:
            with self.session_factory.begin() as session:
                records = session.execute(
                    select(CouponRecord).where(CouponRecord.is_active.is_(True)).where(condition)
                ).scalars().all()
                for record in records:
                    record.is_active = False
                    record.payload = dict(record.payload, isActive=False)
                return len(records)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to deactivate coupons: {str(e)}")
            raise InfrastructureError(f"Coupon store unavailable: {str(e)}")

    @staticmethod
    def _record(coupon: Coupon) -> CouponRecord:
        return CouponRecord(
            id=coupon.id,
            code=coupon.code,
            campaign_id=coupon.campaign_id,
            customer_id=coupon.customer_id,
            is_active=coupon.is_active,
            valid_until=coupon.valid_until,
            payload=coupon.to_wire(),
            created_at=coupon.created_at or datetime.now(timezone.utc),
        )


class SqlAuditSink(AuditSink):
    """Append-only usage and audit tables"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def write(self, usage_rows: List[CampaignUsage], audit_rows: List[CampaignAudit]) -> None:
        try:
            with self.session_factory.begin() as session:
                session.add_all([
                    CampaignUsageRecord(
                        id=row.id,
                        campaign_id=row.campaign_id,
                        coupon_code=row.coupon_code,
                        customer_id=row.customer_id,
                        order_id=row.order_id,
                        discount_amount=row.discount_amount.amount,
                        currency=row.discount_amount.currency,
                        applied_at=row.applied_at,
                        usage_metadata=row.model_dump(mode="json")["metadata"],
                    )
                    for row in usage_rows
                ])
                session.add_all([
                    CampaignAuditRecord(
                        id=row.id,
                        campaign_id=row.campaign_id,
                        customer_id=row.customer_id,
                        action=row.action,
                        details=row.model_dump(mode="json")["details"],
                        timestamp=row.timestamp,
                    )
                    for row in audit_rows
                ])
        except SQLAlchemyError as e:
            logger.error(f"Failed to record campaign usage and audit: {str(e)}")
            raise InfrastructureError(f"Audit write failed: {str(e)}")

        log_audit_rows(audit_rows)

    @property
    def usage_rows(self) -> List[CampaignUsage]:
        with self.session_factory.begin() as session:
            records = session.execute(
                select(CampaignUsageRecord).order_by(CampaignUsageRecord.applied_at)
            ).scalars().all()
            return [
                CampaignUsage(
                    id=r.id,
                    campaign_id=r.campaign_id,
                    coupon_code=r.coupon_code,
                    customer_id=r.customer_id,
                    order_id=r.order_id,
                    discount_amount={"amount": r.discount_amount, "currency": r.currency},
                    applied_at=r.applied_at,
                    metadata=r.usage_metadata or {},
                )
                for r in records
            ]

    @property
    def audit_rows(self) -> List[CampaignAudit]:
        with self.session_factory.begin() as session:
            records = session.execute(
                select(CampaignAuditRecord).order_by(CampaignAuditRecord.timestamp)
            ).scalars().all()
            return [
                CampaignAudit(
                    id=r.id,
                    campaign_id=r.campaign_id,
                    customer_id=r.customer_id,
                    action=r.action,
                    details=r.details or {},
                    timestamp=r.timestamp,
                )
                for r in records
            ]
