"""Relational ingredient store with upsert-by-fdc_id semantics.

Backed by SQLAlchemy so the same code runs against SQLite (local runs,
tests) and PostgreSQL (production). The store knows nothing about batches
or counters; it reports per-record outcomes and the BatchWriter tallies them.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from fdc_seeder.data_layer.models import NUTRIENT_FIELDS, CanonicalIngredient
from fdc_seeder.ingestion.ingestion_errors import WriteConflictError, WriteFailureError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class IngredientRow(Base):
    __tablename__ = "ingredients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fdc_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    searchable_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    dietary_flags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    usda_data_type: Mapped[str] = mapped_column(Text, nullable=False)
    usda_sync_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    calories_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    protein_g_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    carbs_g_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    fat_g_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    fiber_g_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    sugar_g_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    sodium_mg_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    calcium_mg_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    iron_mg_per_100g: Mapped[Optional[float]] = mapped_column(Float)
    vitamin_c_mg_per_100g: Mapped[Optional[float]] = mapped_column(Float)


WRITABLE_COLUMNS = (
    "fdc_id",
    "name",
    "category",
    "searchable_text",
    "tags",
    "dietary_flags",
    "usda_data_type",
    "usda_sync_date",
) + NUTRIENT_FIELDS


def ingredient_to_row(ingredient: CanonicalIngredient) -> Dict[str, Any]:
    """Column values for one ingredient.

    Every nutrient column is written, absent ones as NULL, so re-ingestion
    replaces the whole row rather than patching it.
    """
    row: Dict[str, Any] = {
        "fdc_id": ingredient.fdc_id,
        "name": ingredient.name,
        "category": ingredient.category,
        "searchable_text": ingredient.searchable_text,
        "tags": list(ingredient.tags),
        "dietary_flags": list(ingredient.dietary_flags),
        "usda_data_type": ingredient.usda_data_type,
        "usda_sync_date": ingredient.usda_sync_date,
    }
    for name in NUTRIENT_FIELDS:
        row[name] = getattr(ingredient, name)
    return row


class IngredientStore:
    """Ingredient table access.

    Usage:
        store = IngredientStore.from_url("sqlite:///ingredients.db")
        store.create_schema()

        existing = store.existing_ids([171705, 171706])
        store.upsert_many(ingredients)
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine)
        self._table = IngredientRow.__table__

    @classmethod
    def from_url(cls, database_url: str) -> "IngredientStore":
        return cls(create_engine(database_url, pool_pre_ping=True))

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine, tables=[self._table])

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        sess = self._session_factory()
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    def _insert(self):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(self._table)
        if dialect == "sqlite":
            return sqlite.insert(self._table)
        raise WriteFailureError(f"upsert is not supported on dialect '{dialect}'")

    def existing_ids(self, fdc_ids: Iterable[int]) -> Set[int]:
        """Subset of ``fdc_ids`` already present in the store."""
        ids = list(set(fdc_ids))
        if not ids:
            return set()
        try:
            with self.session_scope() as sess:
                rows = sess.execute(
                    select(IngredientRow.fdc_id).where(IngredientRow.fdc_id.in_(ids))
                ).scalars()
                return set(rows)
        except SQLAlchemyError as e:
            raise WriteFailureError(f"existence check failed: {e}") from e

    def upsert_many(self, ingredients: List[CanonicalIngredient]) -> None:
        """Upsert a batch in one statement and one transaction.

        Raises:
            WriteFailureError: If the statement fails (nothing is written)
        """
        if not ingredients:
            return
        rows = [ingredient_to_row(ingredient) for ingredient in ingredients]
        stmt = self._insert()
        stmt = stmt.on_conflict_do_update(
            index_elements=["fdc_id"],
            set_={name: stmt.excluded[name] for name in WRITABLE_COLUMNS if name != "fdc_id"},
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt, rows)
        except SQLAlchemyError as e:
            raise WriteFailureError(str(e).splitlines()[0]) from e

    def insert_one(self, ingredient: CanonicalIngredient) -> None:
        """Insert a new ingredient.

        Raises:
            WriteConflictError: If the fdc_id already exists
            WriteFailureError: For any other rejection
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(self._table.insert(), [ingredient_to_row(ingredient)])
        except IntegrityError as e:
            if self._exists(ingredient.fdc_id):
                raise WriteConflictError(ingredient.fdc_id) from e
            raise WriteFailureError(str(e.orig), fdc_id=ingredient.fdc_id) from e
        except SQLAlchemyError as e:
            raise WriteFailureError(str(e).splitlines()[0], fdc_id=ingredient.fdc_id) from e

    def replace_one(self, ingredient: CanonicalIngredient) -> None:
        """Overwrite the row holding this fdc_id.

        Raises:
            WriteFailureError: If the update fails
        """
        row = ingredient_to_row(ingredient)
        fdc_id = row.pop("fdc_id")
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    self._table.update().where(self._table.c.fdc_id == fdc_id).values(**row)
                )
        except SQLAlchemyError as e:
            raise WriteFailureError(str(e).splitlines()[0], fdc_id=fdc_id) from e

    def _exists(self, fdc_id: int) -> bool:
        try:
            return fdc_id in self.existing_ids([fdc_id])
        except WriteFailureError:
            return False

    def get(self, fdc_id: int) -> Optional[CanonicalIngredient]:
        with self.session_scope() as sess:
            row = sess.execute(
                select(IngredientRow).where(IngredientRow.fdc_id == fdc_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            return CanonicalIngredient(
                name=row.name,
                fdc_id=row.fdc_id,
                category=row.category,
                searchable_text=row.searchable_text,
                tags=tuple(row.tags or ()),
                dietary_flags=tuple(row.dietary_flags or ()),
                usda_data_type=row.usda_data_type,
                usda_sync_date=row.usda_sync_date,
                **{name: getattr(row, name) for name in NUTRIENT_FIELDS},
            )

    def count(self) -> int:
        with self.session_scope() as sess:
            return sess.execute(select(func.count()).select_from(IngredientRow)).scalar_one()

    def stats(self, recent: int = 5) -> Dict[str, Any]:
        """Summary used by ``status --db``.

        Returns:
            Dict with total rows, rows with a calorie value, per-category counts
            and the most recently synced names
        """
        with self.session_scope() as sess:
            total = sess.execute(select(func.count()).select_from(IngredientRow)).scalar_one()
            with_calories = sess.execute(
                select(func.count()).select_from(IngredientRow)
                .where(IngredientRow.calories_per_100g.is_not(None))
            ).scalar_one()
            category_rows = sess.execute(
                select(IngredientRow.category, func.count())
                .group_by(IngredientRow.category)
                .order_by(func.count().desc(), IngredientRow.category)
            ).all()
            recent_rows = sess.execute(
                select(IngredientRow.name, IngredientRow.usda_sync_date)
                .order_by(IngredientRow.usda_sync_date.desc(), IngredientRow.id.desc())
                .limit(recent)
            ).all()
        return {
            "total_ingredients": total,
            "with_calories": with_calories,
            "category_counts": {category: count for category, count in category_rows},
            "recently_added": [
                {"name": name, "usda_sync_date": synced_at.isoformat() if synced_at else None}
                for name, synced_at in recent_rows
            ],
        }
