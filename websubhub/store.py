import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import BigInteger, Column, Integer, String, UniqueConstraint, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError, IntegrityError, ProgrammingError
from sqlmodel import Field, Session, SQLModel, create_engine, delete, select

log = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    """The subscription database could not be reached."""


class Subscription(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("subscriber", "topic", name="uq_subscription_subscriber_topic"),
    )

    id: int | None = Field(default=None, primary_key=True)
    subscriber: str = Field(sa_column=Column(String(2048), nullable=False))
    secret: str = Field(
        default="", sa_column=Column(String(512), nullable=False, default="")
    )
    topic: str = Field(sa_column=Column(String(2048), nullable=False, index=True))
    timestamp: int = Field(sa_column=Column(BigInteger, nullable=False))
    failures: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )


_table = Subscription.__table__


class SubscriptionStore:
    """SQLite-backed set of subscriptions, unique per (subscriber, topic).

    Every write is a single transaction taken under one process-wide lock,
    so concurrent verification and delivery tasks see each ``put``,
    ``remove`` and ``record_failure`` as atomic. Database failures surface
    as :class:`StoreUnavailable` and the engine is rebuilt on the next call.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._engine: Engine | None = None
        self._ready = False
        self._lock = threading.RLock()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _get_engine(self) -> Engine:
        if self._engine is None:
            path = Path(self._db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(
                f"sqlite:///{path}",
                echo=False,
                connect_args={"check_same_thread": False},
            )
        return self._engine

    def _prepare_schema(self) -> None:
        eng = self._get_engine()
        SQLModel.metadata.create_all(eng, tables=[_table])

        with eng.begin() as connection:
            table_name = _table.name
            pragma_rows = connection.exec_driver_sql(
                f"PRAGMA table_info('{table_name}')"
            ).all()
            # databases created before delivery failures were counted
            if not any(column[1] == "failures" for column in pragma_rows):
                connection.exec_driver_sql(
                    f'ALTER TABLE "{table_name}" '
                    "ADD COLUMN failures INTEGER NOT NULL DEFAULT 0"
                )
        self._ready = True

    def _reset(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._ready = False

    @contextmanager
    def _guard(self) -> Iterator[Engine]:
        try:
            if not self._ready:
                with self._lock:
                    if not self._ready:
                        self._prepare_schema()
            yield self._get_engine()
        except (IntegrityError, ProgrammingError):
            raise
        except DatabaseError as exc:
            # unreachable, locked or not a SQLite file at all
            log.error("subscription store unavailable (%s): %s", self._db_path, exc)
            with self._lock:
                self._reset()
            raise StoreUnavailable(str(exc.orig or exc)) from exc

    def init(self) -> None:
        with self._guard():
            log.info("subscription store ready at %s", self._db_path)

    def ping(self) -> None:
        with self._guard() as eng, eng.connect() as connection:
            connection.exec_driver_sql("SELECT 1")

    def close(self) -> None:
        with self._lock:
            self._reset()

    def put(self, subscriber: str, secret: str, topic: str, timestamp: int) -> None:
        """Insert or refresh a subscription.

        An existing row is only overwritten when ``timestamp`` is strictly
        newer than the stored one; late duplicates are dropped silently.
        """
        stmt = sqlite_insert(_table).values(
            subscriber=subscriber,
            secret=secret or "",
            topic=topic,
            timestamp=timestamp,
            failures=0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_table.c.subscriber, _table.c.topic],
            set_={
                "secret": stmt.excluded.secret,
                "timestamp": stmt.excluded.timestamp,
                "failures": 0,
            },
            where=stmt.excluded.timestamp > _table.c.timestamp,
        )
        with self._guard() as eng, self._lock, eng.begin() as connection:
            connection.execute(stmt)

    def remove(self, subscriber: str, topic: str) -> None:
        stmt = delete(_table).where(
            _table.c.subscriber == subscriber, _table.c.topic == topic
        )
        with self._guard() as eng, self._lock, eng.begin() as connection:
            connection.execute(stmt)

    def get(self, subscriber: str, topic: str) -> Subscription | None:
        with self._guard() as eng, Session(eng) as session:
            stmt = select(Subscription).where(
                Subscription.subscriber == subscriber, Subscription.topic == topic
            )
            return session.exec(stmt).first()

    def list_by_topic(self, topic: str) -> list[Subscription]:
        with self._guard() as eng, Session(eng) as session:
            stmt = select(Subscription).where(Subscription.topic == topic)
            return list(session.exec(stmt))

    def record_failure(self, subscriber: str, topic: str, limit: int = 1) -> bool:
        """Count a failed delivery; evict once ``limit`` is reached.

        Returns True when the subscription was removed.
        """
        match = (_table.c.subscriber == subscriber, _table.c.topic == topic)
        with self._guard() as eng, self._lock, eng.begin() as connection:
            connection.execute(
                update(_table).where(*match).values(failures=_table.c.failures + 1)
            )
            result = connection.execute(
                delete(_table).where(*match, _table.c.failures >= limit)
            )
            return bool(result.rowcount)

    def reset_failures(self, subscriber: str, topic: str) -> None:
        stmt = (
            update(_table)
            .where(
                _table.c.subscriber == subscriber,
                _table.c.topic == topic,
                _table.c.failures != 0,
            )
            .values(failures=0)
        )
        with self._guard() as eng, self._lock, eng.begin() as connection:
            connection.execute(stmt)
