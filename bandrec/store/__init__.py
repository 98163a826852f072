"""Document store adapter.

The core only talks to the backing store through :class:`StoreAdapter`.
:class:`PostgresStore` keeps documents as JSONB rows and binary assets as
BYTEA rows in PostgreSQL.  Every failure is raised as :class:`StoreError`;
nothing is retried here.
"""

import datetime
import logging
import os
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager

import psycopg2
import psycopg2.extras as psycopg2_extras
from psycopg2 import sql

logger = logging.getLogger(__name__)

DRAFT_PREFIX = 'drafts.'

# Fields that may be used for ordering query results
ORDERABLE_FIELDS = {'created_at', 'name'}


class StoreError(Exception):
    """Any failure reported by the backing store."""


def new_id() -> str:
    return uuid.uuid4().hex


def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def read_binary(data) -> bytes:
    """Return ``data`` as bytes, reading it first if it is a stream."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    return data.read()


class StoreAdapter(ABC):
    """Operations the core needs from the backing document store."""

    @abstractmethod
    def query(self, doc_type: str, where: dict | None = None, *, order_by: str | None = None,
              descending: bool = False, start: int = 0, end: int | None = None) -> list[dict]:
        """Return documents of ``doc_type`` containing every field of ``where``.

        ``start`` and ``end`` select an inclusive slice of the ordered result.
        Drafts are never returned."""

    @abstractmethod
    def get(self, doc_id: str) -> dict | None:
        ...

    @abstractmethod
    def create(self, doc: dict) -> dict:
        ...

    @abstractmethod
    def replace(self, doc: dict) -> dict:
        """Overwrite the whole document, creating it when it does not exist."""

    @abstractmethod
    def delete(self, doc_id: str) -> None:
        ...

    @abstractmethod
    def upload(self, kind: str, data, meta: dict | None = None) -> dict:
        """Store a binary asset and return ``{"id": ..., "url": ...}``."""

    @abstractmethod
    def delete_asset(self, asset_id: str) -> None:
        ...

    @abstractmethod
    def fetch_asset(self, asset_id: str) -> dict | None:
        ...

    @abstractmethod
    def asset_url(self, asset_id: str | None) -> str | None:
        ...


def _pg_dsn(project: str | None = None, token: str | None = None) -> str:
    """Build a PostgreSQL connection string from environment variables.

    The store project doubles as database name and the store token as
    password when no ``DATABASE_URL`` is given."""
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", "5432")
    user = os.environ.get("DB_USER", "postgres")
    password = token or os.environ.get("DB_PASSWORD", "")
    dbname = project or os.environ.get("DB_NAME", "postgres")
    return f"postgresql://{user}:{password}@{host}:{port}/{dbname}"


class PostgresStore(StoreAdapter):
    """Document store on top of two PostgreSQL tables."""

    def __init__(self, dsn: str, dataset: str, asset_base_url: str = '/api/assets', connect_timeout: int = 10):
        self.dsn = dsn
        self.dataset = dataset
        self.asset_base_url = asset_base_url.rstrip('/')
        self.connect_timeout = connect_timeout

    @classmethod
    def from_settings(cls, settings) -> 'PostgresStore':
        store = settings.store
        return cls(
            _pg_dsn(store.project, store.token),
            store.dataset,
            asset_base_url=store.asset_base_url,
            connect_timeout=store.connect_timeout,
        )

    @contextmanager
    def _cursor(self):
        """Yield a cursor inside a transaction, committing on success."""
        try:
            conn = psycopg2.connect(
                self.dsn,
                cursor_factory=psycopg2_extras.RealDictCursor,
                connect_timeout=self.connect_timeout,
            )
        except psycopg2.Error as exc:
            raise StoreError(f"Could not connect to document store: {exc}") from exc
        try:
            with conn.cursor() as cur:
                yield cur
            conn.commit()
        except psycopg2.Error as exc:
            conn.rollback()
            raise StoreError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create the tables if they do not already exist."""
        with self._cursor() as cur:
            cur.execute(
                '''CREATE TABLE IF NOT EXISTS documents (
                       id TEXT NOT NULL,
                       dataset TEXT NOT NULL,
                       doc_type TEXT NOT NULL,
                       body JSONB NOT NULL,
                       created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                       PRIMARY KEY (dataset, id)
                   );'''
            )
            cur.execute(
                'CREATE INDEX IF NOT EXISTS documents_type_idx ON documents (dataset, doc_type)'
            )
            cur.execute(
                'CREATE INDEX IF NOT EXISTS documents_body_idx ON documents USING GIN (body jsonb_path_ops)'
            )
            cur.execute(
                '''CREATE TABLE IF NOT EXISTS assets (
                       id TEXT NOT NULL,
                       dataset TEXT NOT NULL,
                       kind TEXT NOT NULL,
                       filename TEXT,
                       content_type TEXT,
                       data BYTEA NOT NULL,
                       created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                       PRIMARY KEY (dataset, id)
                   );'''
            )

    def query(self, doc_type, where=None, *, order_by=None, descending=False, start=0, end=None):
        stmt = sql.SQL(
            "SELECT body FROM documents WHERE dataset = %s AND doc_type = %s "
            "AND id NOT LIKE %s AND body @> %s"
        )
        params = [self.dataset, doc_type, DRAFT_PREFIX + '%', psycopg2_extras.Json(where or {})]
        if order_by:
            if order_by not in ORDERABLE_FIELDS:
                raise ValueError(f"Cannot order by {order_by!r}")
            stmt += sql.SQL(" ORDER BY body->>{} {}").format(
                sql.Literal(order_by), sql.SQL('DESC' if descending else 'ASC')
            )
        if end is not None:
            stmt += sql.SQL(" LIMIT %s")
            params.append(max(end - start + 1, 0))
        if start:
            stmt += sql.SQL(" OFFSET %s")
            params.append(start)
        with self._cursor() as cur:
            cur.execute(stmt, params)
            return [row['body'] for row in cur.fetchall()]

    def get(self, doc_id):
        with self._cursor() as cur:
            cur.execute(
                'SELECT body FROM documents WHERE id = %s AND dataset = %s',
                (doc_id, self.dataset),
            )
            row = cur.fetchone()
        return row['body'] if row else None

    def create(self, doc):
        doc = dict(doc)
        doc.setdefault('id', new_id())
        doc.setdefault('created_at', now_iso())
        if not doc.get('type'):
            raise ValueError('Documents need a type')
        with self._cursor() as cur:
            cur.execute(
                'INSERT INTO documents (id, dataset, doc_type, body) VALUES (%s, %s, %s, %s)',
                (doc['id'], self.dataset, doc['type'], psycopg2_extras.Json(doc)),
            )
        logger.debug("Created %s document %s", doc['type'], doc['id'])
        return doc

    def replace(self, doc):
        doc = dict(doc)
        if not doc.get('id') or not doc.get('type'):
            raise ValueError('Whole-document replace needs an id and a type')
        doc.setdefault('created_at', now_iso())
        with self._cursor() as cur:
            cur.execute(
                '''INSERT INTO documents (id, dataset, doc_type, body) VALUES (%s, %s, %s, %s)
                   ON CONFLICT (dataset, id) DO UPDATE SET doc_type = EXCLUDED.doc_type, body = EXCLUDED.body''',
                (doc['id'], self.dataset, doc['type'], psycopg2_extras.Json(doc)),
            )
        return doc

    def delete(self, doc_id):
        with self._cursor() as cur:
            cur.execute('DELETE FROM documents WHERE id = %s AND dataset = %s', (doc_id, self.dataset))

    def upload(self, kind, data, meta=None):
        meta = meta or {}
        asset_id = f"{kind}-{new_id()}"
        with self._cursor() as cur:
            cur.execute(
                'INSERT INTO assets (id, dataset, kind, filename, content_type, data) VALUES (%s, %s, %s, %s, %s, %s)',
                (
                    asset_id,
                    self.dataset,
                    kind,
                    meta.get('filename'),
                    meta.get('content_type', 'application/octet-stream'),
                    psycopg2.Binary(read_binary(data)),
                ),
            )
        return {'id': asset_id, 'url': self.asset_url(asset_id)}

    def delete_asset(self, asset_id):
        with self._cursor() as cur:
            cur.execute('DELETE FROM assets WHERE id = %s AND dataset = %s', (asset_id, self.dataset))

    def fetch_asset(self, asset_id):
        with self._cursor() as cur:
            cur.execute(
                'SELECT id, kind, filename, content_type, data FROM assets WHERE id = %s AND dataset = %s',
                (asset_id, self.dataset),
            )
            row = cur.fetchone()
        if not row:
            return None
        asset = dict(row)
        asset['data'] = bytes(asset['data'])
        return asset

    def asset_url(self, asset_id):
        if not asset_id:
            return None
        return f"{self.asset_base_url}/{asset_id}"
