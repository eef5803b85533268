"""Transformation of FoodData Central records into canonical ingredients.

The transformer is pure: no network, no disk, no clock unless the caller
leaves ``synced_at`` unset. Given the same record and sync time it always
returns the same ingredient.

Steps for one record:
1. Nutrients: static code table (see nutrient_mapper)
2. Category: normalization table, raw label pass-through, data-type fallback
3. Dietary flags: category heuristics (whole foods) + ingredient text scan
4. Tags: data type, category, brand, scientific name tokens (max 10)
5. Name truncation and searchable text
"""

import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from fdc_seeder.data_layer.models import CanonicalIngredient, ExternalFoodRecord
from fdc_seeder.ingestion.nutrient_mapper import NutrientMapper


MAX_NAME_LENGTH = 500
TRUNCATED_NAME_LENGTH = 497
ELLIPSIS = "..."
MAX_TAGS = 10

CATEGORY_MAP: Dict[str, str] = {
    "vegetables and vegetable products": "Vegetables",
    "fruits and fruit juices": "Fruits",
    "dairy and egg products": "Dairy",
    "poultry products": "Meat & Poultry",
    "beef products": "Meat & Poultry",
    "pork products": "Meat & Poultry",
    "lamb, veal, and game products": "Meat & Poultry",
    "finfish and shellfish products": "Seafood",
    "legumes and legume products": "Legumes",
    "nut and seed products": "Nuts & Seeds",
    "cereal grains and pasta": "Grains",
    "baked products": "Baked Goods",
    "fats and oils": "Oils",
    "spices and herbs": "Seasonings",
    "beverages": "Beverages",
    "sweets": "Desserts",
    "snacks": "Snacks",
    "soups, sauces, and gravies": "Condiments",
    "meals, entrees, and side dishes": "Prepared Foods",
    "fast foods": "Fast Food",
}

DATA_TYPE_CATEGORY: Dict[str, str] = {
    "Foundation": "Foundation Foods",
    "SR Legacy": "Standard Reference",
    "Survey (FNDDS)": "Survey Foods",
    "Branded": "Packaged Foods",
}
DEFAULT_CATEGORY = "Other"

# Data types whose records are unprocessed whole foods.
WHOLE_FOOD_DATA_TYPES = frozenset({"Foundation", "SR Legacy"})

# (pattern on the raw category label, flags), first match wins
CATEGORY_FLAG_RULES: List[Tuple[re.Pattern, Tuple[str, ...]]] = [
    (re.compile(r"vegetable", re.I), ("vegan", "vegetarian", "gluten-free")),
    (re.compile(r"fruit", re.I), ("vegan", "vegetarian", "gluten-free")),
    (re.compile(r"legume", re.I), ("vegan", "vegetarian", "high-protein")),
    (re.compile(r"\bnuts?\b", re.I), ("vegan", "vegetarian", "high-fat")),
]

# (substrings in the ingredient statement, flag)
INGREDIENT_FLAG_RULES: List[Tuple[Tuple[str, ...], str]] = [
    (("milk", "dairy", "cheese", "cream"), "contains-dairy"),
    (("wheat", "gluten"), "contains-gluten"),
    (("soy",), "contains-soy"),
    (("egg",), "contains-eggs"),
]

_NON_SLUG = re.compile(r"[^a-z0-9]")


def slugify(value: str) -> str:
    """Lower-case and replace every non-alphanumeric character with '-'."""
    return _NON_SLUG.sub("-", value.lower())


def _unique(items: List[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


class RecordTransformer:
    """Maps ExternalFoodRecord → CanonicalIngredient.

    Usage:
        transformer = RecordTransformer()
        ingredient = transformer.transform(record)
    """

    def __init__(self, mapper: Optional[NutrientMapper] = None):
        self.mapper = mapper or NutrientMapper()

    def transform(
        self,
        record: ExternalFoodRecord,
        synced_at: Optional[datetime] = None
    ) -> CanonicalIngredient:
        """Transform one record.

        Args:
            record: Record from the reference API
            synced_at: Sync timestamp to stamp on the ingredient (default: now, UTC)

        Returns:
            CanonicalIngredient ready for the batch writer
        """
        nutrients = self.mapper.extract(record.nutrients)
        category = self.resolve_category(record)
        tags = self.generate_tags(record)
        name = self.truncate_name(record.description)

        return CanonicalIngredient(
            name=name,
            fdc_id=record.fdc_id,
            category=category,
            searchable_text=self.searchable_text(record, name, category, tags),
            tags=tuple(tags),
            dietary_flags=tuple(self.dietary_flags(record)),
            usda_data_type=record.data_type,
            usda_sync_date=synced_at or datetime.now(timezone.utc),
            **nutrients,
        )

    def resolve_category(self, record: ExternalFoodRecord) -> str:
        if record.food_category:
            mapped = CATEGORY_MAP.get(record.food_category.strip().lower())
            return mapped or record.food_category
        return DATA_TYPE_CATEGORY.get(record.data_type, DEFAULT_CATEGORY)

    def dietary_flags(self, record: ExternalFoodRecord) -> List[str]:
        """Infer dietary flags from category (whole foods) and ingredient text.

        Both sources may contribute; the result has no repeats.
        """
        flags: List[str] = []

        if record.data_type in WHOLE_FOOD_DATA_TYPES and record.food_category:
            for pattern, category_flags in CATEGORY_FLAG_RULES:
                if pattern.search(record.food_category):
                    flags.extend(category_flags)
                    break

        if record.ingredients:
            text = record.ingredients.lower()
            for needles, flag in INGREDIENT_FLAG_RULES:
                if any(needle in text for needle in needles):
                    flags.append(flag)

        return _unique(flags)

    def generate_tags(self, record: ExternalFoodRecord) -> List[str]:
        tags: List[str] = []
        if record.data_type:
            tags.append(slugify(record.data_type))
        if record.food_category:
            tags.append(slugify(record.food_category))
        if record.brand_owner:
            tags.append("branded")
            tags.append(slugify(record.brand_owner))
        if record.scientific_name:
            tags.extend(record.scientific_name.lower().split())
        return _unique(tags)[:MAX_TAGS]

    @staticmethod
    def truncate_name(description: str) -> str:
        if len(description) > MAX_NAME_LENGTH:
            return description[:TRUNCATED_NAME_LENGTH] + ELLIPSIS
        return description

    @staticmethod
    def searchable_text(
        record: ExternalFoodRecord,
        name: str,
        category: str,
        tags: List[str]
    ) -> str:
        # Empty parts are skipped so the blob never holds double spaces.
        parts = [
            name,
            category,
            record.brand_owner or "",
            record.scientific_name or "",
            record.additional_descriptions or "",
            " ".join(tags),
        ]
        return " ".join(part for part in parts if part).lower()
