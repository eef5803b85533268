"""Data models for the FoodData Central seeder."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


# Canonical per-100g nutrient columns, in display order.
NUTRIENT_FIELDS: Tuple[str, ...] = (
    "calories_per_100g",
    "protein_g_per_100g",
    "carbs_g_per_100g",
    "fat_g_per_100g",
    "fiber_g_per_100g",
    "sugar_g_per_100g",
    "sodium_mg_per_100g",
    "calcium_mg_per_100g",
    "iron_mg_per_100g",
    "vitamin_c_mg_per_100g",
)


def _nutrient_code(entry: Dict[str, Any]) -> Optional[int]:
    """Numeric code of a foodNutrients entry, in either API shape.

    The search endpoint returns ``nutrientId``/``nutrientNumber``; the
    details and list endpoints nest ``nutrient: {id, number}``. The id is
    preferred and the legacy number used only when no id is present.
    """
    nested = entry.get("nutrient") or {}
    candidates = (
        entry.get("nutrientId"),
        nested.get("id"),
        entry.get("nutrientNumber"),
        nested.get("number"),
        entry.get("number"),
    )
    for candidate in candidates:
        if candidate is None or isinstance(candidate, bool):
            continue
        try:
            return int(float(candidate))
        except (TypeError, ValueError):
            continue
    return None


def _category_label(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        raw = raw.get("description")
    if raw is None:
        return None
    label = str(raw).strip()
    return label or None


def _optional_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


@dataclass(frozen=True)
class ExternalFoodRecord:
    """One food item from a FoodData Central search page.

    ``nutrients`` holds raw (code, value) pairs exactly as received; values
    are validated later by the nutrient mapper.
    """

    fdc_id: int
    description: str
    data_type: str
    food_category: Optional[str] = None
    brand_owner: Optional[str] = None
    scientific_name: Optional[str] = None
    additional_descriptions: Optional[str] = None
    ingredients: Optional[str] = None
    nutrients: Tuple[Tuple[int, Any], ...] = ()

    @classmethod
    def from_api(cls, food: Dict[str, Any]) -> "ExternalFoodRecord":
        """Build a record from one element of the API ``foods`` array.

        Raises:
            ValueError: If the item has no usable ``fdcId``
        """
        fdc_id = food.get("fdcId")
        if fdc_id is None or isinstance(fdc_id, bool):
            raise ValueError(f"Food item without fdcId: {str(food)[:80]}")
        fdc_id = int(fdc_id)

        pairs: List[Tuple[int, Any]] = []
        for entry in food.get("foodNutrients") or []:
            if not isinstance(entry, dict):
                continue
            code = _nutrient_code(entry)
            if code is None:
                continue
            value = entry.get("value", entry.get("amount"))
            pairs.append((code, value))

        return cls(
            fdc_id=fdc_id,
            description=str(food.get("description") or "").strip(),
            data_type=str(food.get("dataType") or "").strip(),
            food_category=_category_label(food.get("foodCategory")),
            brand_owner=_optional_text(food.get("brandOwner")),
            scientific_name=_optional_text(food.get("scientificName")),
            additional_descriptions=_optional_text(food.get("additionalDescriptions")),
            ingredients=_optional_text(food.get("ingredients")),
            nutrients=tuple(pairs),
        )


@dataclass(frozen=True)
class CanonicalIngredient:
    """Normalized, store-ready ingredient.

    Every nutrient field is either a finite non-negative float or None.
    """

    name: str
    fdc_id: int
    category: str
    searchable_text: str
    tags: Tuple[str, ...]
    dietary_flags: Tuple[str, ...]
    usda_data_type: str
    usda_sync_date: datetime
    calories_per_100g: Optional[float] = None
    protein_g_per_100g: Optional[float] = None
    carbs_g_per_100g: Optional[float] = None
    fat_g_per_100g: Optional[float] = None
    fiber_g_per_100g: Optional[float] = None
    sugar_g_per_100g: Optional[float] = None
    sodium_mg_per_100g: Optional[float] = None
    calcium_mg_per_100g: Optional[float] = None
    iron_mg_per_100g: Optional[float] = None
    vitamin_c_mg_per_100g: Optional[float] = None

    def nutrients(self) -> Dict[str, float]:
        """Populated nutrient fields only."""
        values = {name: getattr(self, name) for name in NUTRIENT_FIELDS}
        return {name: value for name, value in values.items() if value is not None}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary.

        Absent nutrients are omitted rather than written as null.
        """
        data: Dict[str, Any] = {
            "name": self.name,
            "fdc_id": self.fdc_id,
            "category": self.category,
            "searchable_text": self.searchable_text,
            "tags": list(self.tags),
            "dietary_flags": list(self.dietary_flags),
            "usda_data_type": self.usda_data_type,
            "usda_sync_date": self.usda_sync_date.isoformat(),
        }
        data.update(self.nutrients())
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalIngredient":
        """Rebuild an ingredient from :meth:`to_dict` output.

        Raises:
            KeyError: If a required field is missing
            ValueError: If the sync date is not ISO-8601
        """
        nutrients = {
            name: float(data[name])
            for name in NUTRIENT_FIELDS
            if data.get(name) is not None
        }
        return cls(
            name=data["name"],
            fdc_id=int(data["fdc_id"]),
            category=data["category"],
            searchable_text=data.get("searchable_text", ""),
            tags=tuple(data.get("tags", ())),
            dietary_flags=tuple(data.get("dietary_flags", ())),
            usda_data_type=data.get("usda_data_type", ""),
            usda_sync_date=datetime.fromisoformat(data["usda_sync_date"]),
            **nutrients,
        )


@dataclass(frozen=True)
class RecordFailure:
    """A record the store refused to write."""

    fdc_id: int
    detail: str


@dataclass
class BatchWriteResult:
    """Outcome of one batch flush.

    Attributes:
        written: Records inserted under a new external identifier
        duplicates: Records whose identifier already existed (overwritten, not errors)
        failures: Records that could not be written
    """

    written: int = 0
    duplicates: int = 0
    failures: List[RecordFailure] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.written + self.duplicates + len(self.failures)
