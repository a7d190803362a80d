"""
Content store for results, documents and admin users.

Binary payloads live inline in the database rows. The SQLAlchemy
implementation accepts any SQLAlchemy URL (MySQL, Postgres, or SQLite
for tests and small deployments).
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    select,
)
from sqlalchemy.dialects.mysql import LONGBLOB
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, deferred, sessionmaker

from club_backend.migrations import BlobMigration, run_migrations


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DuplicateResultError(Exception):
    """Raised when an update would give a result another result's business key."""

    def __init__(self, category: str, year: str):
        super().__init__(f"A result for {category}/{year} already exists")
        self.category = category
        self.year = year


@dataclass
class FilePayload:
    data: bytes
    filename: str
    mimetype: str


@dataclass
class ResultRecord:
    id: int
    category: str
    year: str
    image_filename: str
    image_mimetype: str
    description: Optional[str]
    created_at: datetime
    updated_at: datetime

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class DocumentRecord:
    id: int
    title: str
    category: str
    file_filename: str
    file_mimetype: str
    description: Optional[str]
    created_at: datetime
    updated_at: datetime

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class AdminUserRecord:
    id: int
    username: str
    password_hash: str
    created_at: datetime


class ContentStore(Protocol):
    """Interface the API needs from the content store."""

    def save_result(
        self,
        category: str,
        year: str,
        image: FilePayload,
        description: Optional[str] = None,
    ) -> ResultRecord:
        ...

    def get_result(self, result_id: int) -> Optional[ResultRecord]:
        ...

    def get_result_by_key(self, category: str, year: str) -> Optional[ResultRecord]:
        ...

    def get_result_image(self, result_id: int) -> Optional[FilePayload]:
        ...

    def list_results(self) -> list[ResultRecord]:
        ...

    def update_result(
        self,
        result_id: int,
        *,
        category: Optional[str] = None,
        year: Optional[str] = None,
        description: Optional[str] = None,
        image: Optional[FilePayload] = None,
    ) -> Optional[ResultRecord]:
        ...

    def delete_result(self, result_id: int) -> bool:
        ...

    def create_document(
        self,
        title: str,
        category: str,
        file: FilePayload,
        description: Optional[str] = None,
    ) -> DocumentRecord:
        ...

    def get_document(self, document_id: int) -> Optional[DocumentRecord]:
        ...

    def get_document_file(self, document_id: int) -> Optional[FilePayload]:
        ...

    def list_documents(self) -> list[DocumentRecord]:
        ...

    def update_document(
        self,
        document_id: int,
        *,
        title: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        file: Optional[FilePayload] = None,
    ) -> Optional[DocumentRecord]:
        ...

    def delete_document(self, document_id: int) -> bool:
        ...

    def count_admin_users(self) -> int:
        ...

    def create_admin_user(self, username: str, password_hash: str) -> AdminUserRecord:
        ...

    def get_admin_user(self, username: str) -> Optional[AdminUserRecord]:
        ...

    def close(self) -> None:
        ...


def create_db_engine(database_url: str) -> Engine:
    """
    Build an engine for the given URL.

    SQLite connections are shared across the request thread pool and the
    pysqlite driver is switched to explicit BEGIN so DDL participates in
    transactions. An in-memory URL is backed by a scratch file instead, so
    pooled connections on different threads see one database; the file is
    removed when the engine is disposed.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )

    scratch_path = None
    if url.database in (None, "", ":memory:"):
        fd, scratch_path = tempfile.mkstemp(prefix="club-site-", suffix=".db")
        os.close(fd)
        url = url.set(database=scratch_path)
    engine = create_engine(
        url, future=True, connect_args={"check_same_thread": False}
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    if scratch_path:

        @event.listens_for(engine, "engine_disposed")
        def _remove_scratch_file(disposed):
            with contextlib.suppress(FileNotFoundError):
                os.remove(scratch_path)

    return engine


_RESULT_REPLACED_COLUMNS = (
    "image_data",
    "image_filename",
    "image_mimetype",
    "description",
    "updated_at",
)


def _result_upsert(dialect_name: str, values: dict):
    """Insert a result, replacing the payload of an existing (category, year) row."""
    table = ResultRow.__table__
    if dialect_name in ("sqlite", "postgresql"):
        insert = sqlite_insert if dialect_name == "sqlite" else postgresql_insert
        stmt = insert(table).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[table.c.category, table.c.year],
            set_={name: stmt.excluded[name] for name in _RESULT_REPLACED_COLUMNS},
        )
    if dialect_name in ("mysql", "mariadb"):
        stmt = mysql_insert(table).values(**values)
        return stmt.on_duplicate_key_update(
            {name: stmt.inserted[name] for name in _RESULT_REPLACED_COLUMNS}
        )
    raise NotImplementedError(f"Result upsert is not supported on {dialect_name}")


class SqlContentStore:
    """
    SQLAlchemy-backed content store. Migrates legacy layouts and creates
    missing tables before returning, so a constructed store is ready to serve.
    """

    def __init__(self, database_url: str, *, legacy_upload_root: Optional[str] = None):
        if not database_url:
            raise ValueError("database_url is required for SqlContentStore")
        self.engine = create_db_engine(database_url)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        run_migrations(self.engine, MIGRATIONS, legacy_upload_root=legacy_upload_root)
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _to_result_record(row: "ResultRow") -> ResultRecord:
        return ResultRecord(
            id=row.id,
            category=row.category,
            year=row.year,
            image_filename=row.image_filename,
            image_mimetype=row.image_mimetype,
            description=row.description,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_document_record(row: "DocumentRow") -> DocumentRecord:
        return DocumentRecord(
            id=row.id,
            title=row.title,
            category=row.category,
            file_filename=row.file_filename,
            file_mimetype=row.file_mimetype,
            description=row.description,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # Results

    def save_result(
        self,
        category: str,
        year: str,
        image: FilePayload,
        description: Optional[str] = None,
    ) -> ResultRecord:
        now = _utcnow()
        stmt = _result_upsert(
            self.engine.dialect.name,
            {
                "category": category,
                "year": year,
                "image_data": image.data,
                "image_filename": image.filename,
                "image_mimetype": image.mimetype,
                "description": description,
                "created_at": now,
                "updated_at": now,
            },
        )
        summary = [
            column for column in ResultRow.__table__.c if column.name != "image_data"
        ]
        with self.Session() as session:
            if self.engine.dialect.name in ("sqlite", "postgresql"):
                row = session.execute(stmt.returning(*summary)).one()
            else:
                # MySQL has no RETURNING; the upserted row stays locked until commit.
                session.execute(stmt)
                row = session.execute(
                    select(*summary).where(
                        ResultRow.category == category, ResultRow.year == year
                    )
                ).one()
            session.commit()
            return self._to_result_record(row)

    def get_result(self, result_id: int) -> Optional[ResultRecord]:
        with self.Session() as session:
            row = session.get(ResultRow, result_id)
            return self._to_result_record(row) if row else None

    def get_result_by_key(self, category: str, year: str) -> Optional[ResultRecord]:
        with self.Session() as session:
            row = session.execute(
                select(ResultRow).where(
                    ResultRow.category == category, ResultRow.year == year
                )
            ).scalar_one_or_none()
            return self._to_result_record(row) if row else None

    def get_result_image(self, result_id: int) -> Optional[FilePayload]:
        with self.Session() as session:
            row = session.execute(
                select(
                    ResultRow.image_data,
                    ResultRow.image_filename,
                    ResultRow.image_mimetype,
                ).where(ResultRow.id == result_id)
            ).one_or_none()
            if row is None:
                return None
            return FilePayload(
                data=bytes(row.image_data),
                filename=row.image_filename,
                mimetype=row.image_mimetype,
            )

    def list_results(self) -> list[ResultRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(ResultRow).order_by(
                        ResultRow.year.desc(), ResultRow.category.asc()
                    )
                )
                .scalars()
                .all()
            )
            return [self._to_result_record(row) for row in rows]

    def update_result(
        self,
        result_id: int,
        *,
        category: Optional[str] = None,
        year: Optional[str] = None,
        description: Optional[str] = None,
        image: Optional[FilePayload] = None,
    ) -> Optional[ResultRecord]:
        with self.Session() as session:
            row = session.get(ResultRow, result_id)
            if not row:
                return None
            if category is not None:
                row.category = category
            if year is not None:
                row.year = year
            if description is not None:
                row.description = description
            if image is not None:
                row.image_data = image.data
                row.image_filename = image.filename
                row.image_mimetype = image.mimetype
            row.updated_at = _utcnow()
            key = (row.category, row.year)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateResultError(*key) from exc
            return self._to_result_record(row)

    def delete_result(self, result_id: int) -> bool:
        with self.Session() as session:
            deleted = session.execute(
                delete(ResultRow).where(ResultRow.id == result_id)
            ).rowcount
            session.commit()
            return bool(deleted)

    # Documents

    def create_document(
        self,
        title: str,
        category: str,
        file: FilePayload,
        description: Optional[str] = None,
    ) -> DocumentRecord:
        now = _utcnow()
        with self.Session() as session:
            row = DocumentRow(
                title=title,
                category=category,
                file_data=file.data,
                file_filename=file.filename,
                file_mimetype=file.mimetype,
                description=description,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            return self._to_document_record(row)

    def get_document(self, document_id: int) -> Optional[DocumentRecord]:
        with self.Session() as session:
            row = session.get(DocumentRow, document_id)
            return self._to_document_record(row) if row else None

    def get_document_file(self, document_id: int) -> Optional[FilePayload]:
        with self.Session() as session:
            row = session.execute(
                select(
                    DocumentRow.file_data,
                    DocumentRow.file_filename,
                    DocumentRow.file_mimetype,
                ).where(DocumentRow.id == document_id)
            ).one_or_none()
            if row is None:
                return None
            return FilePayload(
                data=bytes(row.file_data),
                filename=row.file_filename,
                mimetype=row.file_mimetype,
            )

    def list_documents(self) -> list[DocumentRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(DocumentRow).order_by(
                        DocumentRow.created_at.desc(), DocumentRow.id.desc()
                    )
                )
                .scalars()
                .all()
            )
            return [self._to_document_record(row) for row in rows]

    def update_document(
        self,
        document_id: int,
        *,
        title: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        file: Optional[FilePayload] = None,
    ) -> Optional[DocumentRecord]:
        with self.Session() as session:
            row = session.get(DocumentRow, document_id)
            if not row:
                return None
            if title is not None:
                row.title = title
            if category is not None:
                row.category = category
            if description is not None:
                row.description = description
            if file is not None:
                row.file_data = file.data
                row.file_filename = file.filename
                row.file_mimetype = file.mimetype
            row.updated_at = _utcnow()
            session.commit()
            return self._to_document_record(row)

    def delete_document(self, document_id: int) -> bool:
        with self.Session() as session:
            deleted = session.execute(
                delete(DocumentRow).where(DocumentRow.id == document_id)
            ).rowcount
            session.commit()
            return bool(deleted)

    # Admin users

    def count_admin_users(self) -> int:
        with self.Session() as session:
            return session.scalar(select(func.count()).select_from(AdminUserRow)) or 0

    def create_admin_user(self, username: str, password_hash: str) -> AdminUserRecord:
        with self.Session() as session:
            row = AdminUserRow(
                username=username,
                password_hash=password_hash,
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            return AdminUserRecord(
                id=row.id,
                username=row.username,
                password_hash=row.password_hash,
                created_at=row.created_at,
            )

    def get_admin_user(self, username: str) -> Optional[AdminUserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(AdminUserRow).where(AdminUserRow.username == username)
            ).scalar_one_or_none()
            if not row:
                return None
            return AdminUserRecord(
                id=row.id,
                username=row.username,
                password_hash=row.password_hash,
                created_at=row.created_at,
            )


Base = declarative_base()

# Plain BLOB on MySQL caps at 64 KB.
_Blob = LargeBinary().with_variant(LONGBLOB(), "mysql", "mariadb")


class ResultRow(Base):
    __tablename__ = "results"
    __table_args__ = (
        UniqueConstraint("category", "year", name="uq_results_category_year"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(50), nullable=False)
    year = Column(String(10), nullable=False)
    image_data = deferred(Column(_Blob, nullable=False))
    image_filename = Column(String(255), nullable=False)
    image_mimetype = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class DocumentRow(Base):
    __tablename__ = "documents"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False, default="general")
    file_data = deferred(Column(_Blob, nullable=False))
    file_filename = Column(String(255), nullable=False)
    file_mimetype = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AdminUserRow(Base):
    __tablename__ = "admin_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


MIGRATIONS = (
    BlobMigration(
        name="0001_results_inline_image",
        target=ResultRow.__table__,
        legacy_column="image_path",
        data_column="image_data",
        filename_column="image_filename",
        mimetype_column="image_mimetype",
    ),
    BlobMigration(
        name="0002_documents_inline_file",
        target=DocumentRow.__table__,
        legacy_column="file_path",
        data_column="file_data",
        filename_column="file_filename",
        mimetype_column="file_mimetype",
    ),
)
