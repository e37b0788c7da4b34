from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from sqlalchemy import (
    Column,
    Engine,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from redis_operator.core.models import StoreSettings
from redis_operator.utils.diagnostics import ConflictError, TransientError

metadata = MetaData()

kv_records = Table(
    "kv_records",
    metadata,
    Column("namespace", String(255), primary_key=True),
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("version", Integer, nullable=False),
)


def _resolve_database_url(url: str, base_dir: Optional[Path]) -> str:
    """Resolve relative SQLite database URLs against a configured base directory."""
    if base_dir is None:
        return url

    try:
        parsed = make_url(url)
    except Exception:
        return url

    if not parsed.drivername.startswith("sqlite"):
        return url

    database = parsed.database
    if not database or database == ":memory:" or database.startswith("file:"):
        return url

    db_path = Path(database)
    if db_path.is_absolute():
        return url

    resolved_db = (base_dir / db_path).resolve()
    return parsed.set(database=str(resolved_db)).render_as_string(hide_password=False)


def initialize_store_engine(settings: StoreSettings, base_dir: Optional[Path] = None) -> Engine:
    """
    Create the SQLAlchemy engine backing the blueprint store and ensure its schema exists.

    Args:
        settings: The 'store' section of operator.yaml.
        base_dir: Optional root directory used to resolve relative SQLite file URLs.
    """
    resolved_url = _resolve_database_url(settings.url, base_dir=base_dir)
    connect_args = dict(settings.connect_args)
    if resolved_url.startswith("sqlite"):
        # Probe and loop threads share the engine.
        connect_args.setdefault("check_same_thread", False)

    engine = create_engine(resolved_url, connect_args=connect_args)
    metadata.create_all(engine)
    return engine


class SqlKeyValueBackend:
    """Versioned key/value records with optimistic concurrency on a single table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine)

    @contextmanager
    def _translate_errors(self, namespace: str, key: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except (ConflictError, TransientError):
            raise
        except IntegrityError as exc:
            raise ConflictError(f"Concurrent write to {namespace}/{key}: {exc.orig}") from exc
        except OperationalError as exc:
            raise TransientError(f"Store unavailable: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise TransientError(f"Store error: {exc}") from exc

    def get(self, namespace: str, key: str) -> Optional[Tuple[str, int]]:
        with self._translate_errors(namespace, key), self.engine.connect() as conn:
            row = conn.execute(
                select(kv_records.c.value, kv_records.c.version).where(
                    kv_records.c.namespace == namespace,
                    kv_records.c.key == key,
                )
            ).first()
        if row is None:
            return None
        return row.value, row.version

    def put(self, namespace: str, key: str, value: str, expected_version: Optional[int]) -> int:
        """Write a record; `expected_version=None` requires that the key does not exist yet."""
        with self._translate_errors(namespace, key), self.engine.begin() as conn:
            if expected_version is None:
                conn.execute(insert(kv_records).values(namespace=namespace, key=key, value=value, version=1))
                return 1

            result = conn.execute(
                update(kv_records)
                .where(
                    kv_records.c.namespace == namespace,
                    kv_records.c.key == key,
                    kv_records.c.version == expected_version,
                )
                .values(value=value, version=expected_version + 1)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Version {expected_version} of {namespace}/{key} is no longer current")
            return expected_version + 1

    def delete(self, namespace: str, key: str) -> None:
        with self._translate_errors(namespace, key), self.engine.begin() as conn:
            conn.execute(
                delete(kv_records).where(kv_records.c.namespace == namespace, kv_records.c.key == key)
            )

    def list(self, namespace: str) -> Dict[str, Tuple[str, int]]:
        with self._translate_errors(namespace), self.engine.connect() as conn:
            rows = conn.execute(
                select(kv_records.c.key, kv_records.c.value, kv_records.c.version)
                .where(kv_records.c.namespace == namespace)
                .order_by(kv_records.c.key)
            ).all()
        return {row.key: (row.value, row.version) for row in rows}

    def replace_all(self, namespace: str, values: Dict[str, str]) -> None:
        """Swap the whole namespace in one transaction."""
        with self._translate_errors(namespace), self.engine.begin() as conn:
            conn.execute(delete(kv_records).where(kv_records.c.namespace == namespace))
            if values:
                conn.execute(
                    insert(kv_records),
                    [
                        {"namespace": namespace, "key": key, "value": value, "version": 1}
                        for key, value in values.items()
                    ],
                )
