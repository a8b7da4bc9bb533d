"""SQLAlchemy persistence for challenges, routes, activities and stage results.

``ChallengeStore`` is the only persistence seam used by the rest of the
package. Each public method runs in its own short transaction and returns
plain dataclasses from :mod:`stage_challenge.models`; SQLAlchemy failures are
re-raised as :class:`~stage_challenge.errors.PersistenceError`.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .config import DATABASE_URL, SQL_ECHO
from .errors import ChallengeNotFound, PersistenceError
from .models import (
    Activity,
    AuditLogEntry,
    Challenge,
    LatLon,
    Participant,
    Route,
    StageResult,
)
from .utils import ensure_utc, to_json_safe, utc_now

# (corridor, buffer_meters, min_overlap_ratio) per stage number
RouteDefinition = Tuple[Sequence[LatLon], float, float]


class UTCDateTime(TypeDecorator):
    """Store instants as naive UTC and hand them back timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return ensure_utc(value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models"""

    pass


class ChallengeRow(Base):
    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String, nullable=True, unique=True)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )


class RouteRow(Base):
    __tablename__ = "routes"
    __table_args__ = (
        UniqueConstraint("challenge_id", "stage_number", name="uq_routes_challenge_stage"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    challenge_id: Mapped[int] = mapped_column(
        ForeignKey("challenges.id"), nullable=False, index=True
    )
    stage_number: Mapped[int] = mapped_column(Integer, nullable=False)
    # [[lat, lon], ...] in travel order
    corridor: Mapped[List[List[float]]] = mapped_column(JSON, nullable=False)
    buffer_meters: Mapped[float] = mapped_column(Float, nullable=False)
    min_overlap_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    point_count: Mapped[int] = mapped_column(Integer, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class ParticipantRow(Base):
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="uq_participants_user_challenge"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(ForeignKey("challenges.id"), nullable=False)
    excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ActivityRow(Base):
    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    polyline: Mapped[str] = mapped_column(Text, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    elapsed_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )


class StageResultRow(Base):
    __tablename__ = "stage_results"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "challenge_id", "stage_number", name="uq_stage_results_key"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(ForeignKey("challenges.id"), nullable=False)
    stage_number: Mapped[int] = mapped_column(Integer, nullable=False)
    best_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    activity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class AuditLogRow(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # ``metadata`` is reserved on declarative classes
    details: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class ChallengeStore:
    """Repository over the challenge tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)
        self._log = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_url(
        cls,
        url: str = DATABASE_URL,
        *,
        echo: bool = SQL_ECHO,
        create_schema: bool = False,
    ) -> "ChallengeStore":
        """Build a store for any SQLAlchemy URL.

        In-memory SQLite URLs share one connection so every session sees the
        same database.
        """

        kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite") and (url in {"sqlite://", "sqlite:///"} or ":memory:" in url):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        try:
            engine = create_engine(url, echo=echo, **kwargs)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Unable to create engine for {url!r}: {exc}") from exc
        store = cls(engine)
        if create_schema:
            store.create_schema()
        return store

    def create_schema(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Unable to create schema: {exc}") from exc

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Challenges and participants
    # ------------------------------------------------------------------
    def add_challenge(
        self,
        name: str,
        starts_at: datetime,
        ends_at: datetime,
        *,
        is_active: bool = False,
        slug: Optional[str] = None,
    ) -> Challenge:
        if ends_at < starts_at:
            raise ValueError("Challenge ends_at must not be before starts_at")
        with self.session() as session:
            row = ChallengeRow(
                name=name,
                slug=slug,
                starts_at=starts_at,
                ends_at=ends_at,
                is_active=is_active,
            )
            session.add(row)
            session.flush()
            return _challenge_from_row(row)

    def get_challenge(self, challenge_id: int) -> Optional[Challenge]:
        with self.session() as session:
            row = session.get(ChallengeRow, challenge_id)
            return _challenge_from_row(row) if row is not None else None

    def get_active_challenge(self) -> Optional[Challenge]:
        """Return the active challenge, or ``None`` when nothing is active."""

        with self.session() as session:
            rows = (
                session.execute(
                    select(ChallengeRow)
                    .where(ChallengeRow.is_active.is_(True))
                    .order_by(ChallengeRow.id)
                )
                .scalars()
                .all()
            )
            if not rows:
                return None
            if len(rows) > 1:
                self._log.warning(
                    "%d challenges flagged active; using the oldest (id=%s)",
                    len(rows),
                    rows[0].id,
                )
            return _challenge_from_row(rows[0])

    def add_participant(
        self, user_id: str, challenge_id: int, *, excluded: bool = False
    ) -> Participant:
        with self.session() as session:
            row = ParticipantRow(user_id=user_id, challenge_id=challenge_id, excluded=excluded)
            session.add(row)
            session.flush()
            return _participant_from_row(row)

    def get_participant(self, user_id: str, challenge_id: int) -> Optional[Participant]:
        with self.session() as session:
            row = session.execute(
                select(ParticipantRow).where(
                    ParticipantRow.user_id == user_id,
                    ParticipantRow.challenge_id == challenge_id,
                )
            ).scalar_one_or_none()
            return _participant_from_row(row) if row is not None else None

    def list_participants(self, challenge_id: int) -> List[Participant]:
        with self.session() as session:
            rows = session.execute(
                select(ParticipantRow)
                .where(ParticipantRow.challenge_id == challenge_id)
                .order_by(ParticipantRow.user_id)
            ).scalars()
            return [_participant_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------
    def list_routes(self, challenge_id: int) -> List[Route]:
        """Return all routes of a challenge in ascending stage order."""

        with self.session() as session:
            rows = session.execute(
                select(RouteRow)
                .where(RouteRow.challenge_id == challenge_id)
                .order_by(RouteRow.stage_number, RouteRow.id)
            ).scalars()
            return [_route_from_row(row) for row in rows]

    def get_route(self, route_id: int) -> Optional[Route]:
        with self.session() as session:
            row = session.get(RouteRow, route_id)
            return _route_from_row(row) if row is not None else None

    def replace_routes(
        self, challenge_id: int, routes: Mapping[int, RouteDefinition]
    ) -> List[Route]:
        """Replace the supplied stages of a challenge in a single transaction.

        Stages missing from ``routes`` keep their current geometry.
        """

        synced_at = utc_now()
        with self.session() as session:
            if session.get(ChallengeRow, challenge_id) is None:
                raise ChallengeNotFound(f"Challenge {challenge_id} does not exist")
            stages = sorted(routes)
            session.execute(
                delete(RouteRow).where(
                    RouteRow.challenge_id == challenge_id,
                    RouteRow.stage_number.in_(stages),
                )
            )
            rows: List[RouteRow] = []
            for stage in stages:
                corridor, buffer_meters, min_overlap_ratio = routes[stage]
                row = RouteRow(
                    challenge_id=challenge_id,
                    stage_number=stage,
                    corridor=[[float(lat), float(lon)] for lat, lon in corridor],
                    buffer_meters=float(buffer_meters),
                    min_overlap_ratio=float(min_overlap_ratio),
                    point_count=len(corridor),
                    synced_at=synced_at,
                )
                session.add(row)
                rows.append(row)
            session.flush()
            return [_route_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    def add_activity(
        self,
        user_id: str,
        polyline: str,
        started_at: Optional[datetime],
        elapsed_seconds: int,
    ) -> Activity:
        if elapsed_seconds < 0:
            raise ValueError("elapsed_seconds must be zero or greater")
        with self.session() as session:
            row = ActivityRow(
                user_id=user_id,
                polyline=polyline,
                started_at=started_at,
                elapsed_seconds=int(elapsed_seconds),
                processed_at=None,
            )
            session.add(row)
            session.flush()
            return _activity_from_row(row)

    def get_activity(self, activity_id: int) -> Optional[Activity]:
        with self.session() as session:
            row = session.get(ActivityRow, activity_id)
            return _activity_from_row(row) if row is not None else None

    def list_unprocessed_activities(self, limit: Optional[int] = None) -> List[Activity]:
        """Return the unprocessed queue, oldest activities first."""

        query = (
            select(ActivityRow)
            .where(ActivityRow.processed_at.is_(None))
            .order_by(ActivityRow.started_at, ActivityRow.id)
        )
        if limit is not None:
            query = query.limit(limit)
        with self.session() as session:
            return [_activity_from_row(row) for row in session.execute(query).scalars()]

    def mark_processed(self, activity_id: int, processed_at: datetime) -> bool:
        """Set the processed marker if it is still empty.

        Returns ``True`` when this call wrote the marker and ``False`` when
        another run got there first.
        """

        with self.session() as session:
            outcome = session.execute(
                update(ActivityRow)
                .where(ActivityRow.id == activity_id, ActivityRow.processed_at.is_(None))
                .values(processed_at=processed_at)
            )
            return bool(outcome.rowcount)

    # ------------------------------------------------------------------
    # Stage results
    # ------------------------------------------------------------------
    def get_stage_result(
        self, user_id: str, challenge_id: int, stage_number: int
    ) -> Optional[StageResult]:
        with self.session() as session:
            row = _select_stage_result(session, user_id, challenge_id, stage_number)
            return _stage_result_from_row(row) if row is not None else None

    def list_stage_results(self, challenge_id: int) -> List[StageResult]:
        with self.session() as session:
            rows = session.execute(
                select(StageResultRow)
                .where(StageResultRow.challenge_id == challenge_id)
                .order_by(
                    StageResultRow.stage_number,
                    StageResultRow.best_time_seconds,
                    StageResultRow.completed_at,
                )
            ).scalars()
            return [_stage_result_from_row(row) for row in rows]

    def save_best_time(self, result: StageResult) -> bool:
        """Insert or lower a stage result; never raises a stored best time.

        Returns ``True`` when a row was created or improved. A unique-key
        conflict from a concurrent insert is retried once as an update.
        """

        try:
            return self._save_best_time(result)
        except PersistenceError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            self._log.info(
                "Stage result for user=%s stage=%s inserted concurrently; retrying",
                result.user_id,
                result.stage_number,
            )
            return self._save_best_time(result)

    def _save_best_time(self, result: StageResult) -> bool:
        with self.session() as session:
            row = _select_stage_result(
                session,
                result.user_id,
                result.challenge_id,
                result.stage_number,
                for_update=True,
            )
            if row is None:
                session.add(
                    StageResultRow(
                        user_id=result.user_id,
                        challenge_id=result.challenge_id,
                        stage_number=result.stage_number,
                        best_time_seconds=int(result.best_time_seconds),
                        completed_at=result.completed_at,
                        activity_id=result.activity_id,
                        updated_at=utc_now(),
                    )
                )
                return True
            if result.best_time_seconds >= row.best_time_seconds:
                return False
            row.best_time_seconds = int(result.best_time_seconds)
            row.completed_at = result.completed_at
            row.activity_id = result.activity_id
            row.updated_at = utc_now()
            return True

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    def write_audit_log(self, entry: AuditLogEntry) -> None:
        with self.session() as session:
            session.add(
                AuditLogRow(
                    actor_id=entry.actor_id,
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    details=to_json_safe(dict(entry.metadata)),
                    created_at=entry.created_at or utc_now(),
                )
            )

    def list_audit_logs(self, action: Optional[str] = None) -> List[AuditLogEntry]:
        query = select(AuditLogRow).order_by(AuditLogRow.id)
        if action is not None:
            query = query.where(AuditLogRow.action == action)
        with self.session() as session:
            return [
                AuditLogEntry(
                    action=row.action,
                    entity_type=row.entity_type,
                    actor_id=row.actor_id,
                    entity_id=row.entity_id,
                    metadata=dict(row.details or {}),
                    created_at=row.created_at,
                )
                for row in session.execute(query).scalars()
            ]


def _select_stage_result(
    session: Session,
    user_id: str,
    challenge_id: int,
    stage_number: int,
    *,
    for_update: bool = False,
) -> Optional[StageResultRow]:
    query = select(StageResultRow).where(
        StageResultRow.user_id == user_id,
        StageResultRow.challenge_id == challenge_id,
        StageResultRow.stage_number == stage_number,
    )
    if for_update:
        query = query.with_for_update()
    return session.execute(query).scalar_one_or_none()


def _challenge_from_row(row: ChallengeRow) -> Challenge:
    return Challenge(
        id=row.id,
        name=row.name,
        starts_at=ensure_utc(row.starts_at),
        ends_at=ensure_utc(row.ends_at),
        is_active=bool(row.is_active),
        slug=row.slug,
    )


def _route_from_row(row: RouteRow) -> Route:
    return Route(
        id=row.id,
        challenge_id=row.challenge_id,
        stage_number=row.stage_number,
        corridor=[(float(lat), float(lon)) for lat, lon in row.corridor],
        buffer_meters=float(row.buffer_meters),
        min_overlap_ratio=float(row.min_overlap_ratio),
    )


def _participant_from_row(row: ParticipantRow) -> Participant:
    return Participant(
        user_id=row.user_id,
        challenge_id=row.challenge_id,
        excluded=bool(row.excluded),
        id=row.id,
    )


def _activity_from_row(row: ActivityRow) -> Activity:
    return Activity(
        id=row.id,
        user_id=row.user_id,
        polyline=row.polyline,
        started_at=ensure_utc(row.started_at),
        elapsed_seconds=int(row.elapsed_seconds),
        processed_at=ensure_utc(row.processed_at),
    )


def _stage_result_from_row(row: StageResultRow) -> StageResult:
    return StageResult(
        user_id=row.user_id,
        challenge_id=row.challenge_id,
        stage_number=row.stage_number,
        best_time_seconds=int(row.best_time_seconds),
        completed_at=ensure_utc(row.completed_at),
        activity_id=row.activity_id,
    )


__all__ = [
    "Base",
    "ChallengeStore",
    "RouteDefinition",
]
