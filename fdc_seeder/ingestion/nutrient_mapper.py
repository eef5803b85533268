"""Nutrient mapping from FoodData Central codes to canonical ingredient columns.

DESIGN DECISIONS:
- Static mapping table: nutrient code → canonical field name
- Both current nutrient ids (1008, 1003, ...) and legacy SR numbers
  (208, 203, ...) are listed; several codes may feed one field
- The first code encountered for a field wins, later ones are ignored
- Unknown codes are silently dropped (not all nutrients are tracked)
- Missing nutrients stay absent; they are never defaulted to zero
- Values that are not finite non-negative numbers are dropped
"""

import math
from typing import Any, Dict, Iterable, Optional, Tuple

from fdc_seeder.data_layer.models import NUTRIENT_FIELDS


# ============================================================================
# NUTRIENT CODE MAPPING TABLE
# ============================================================================
#
# Format:
#   CODE: {
#       "field": canonical column name,
#       "unit": unit as reported per 100g (for documentation),
#       "description": FDC nutrient name
#   }
#
# New codes are added here, not in the mapper logic.
# ============================================================================

NUTRIENT_CODE_MAP: Dict[int, Dict[str, str]] = {
    # === ENERGY ===
    1008: {"field": "calories_per_100g", "unit": "kcal", "description": "Energy"},
    2047: {
        "field": "calories_per_100g",
        "unit": "kcal",
        "description": "Energy (Atwater General Factors)"
    },
    2048: {
        "field": "calories_per_100g",
        "unit": "kcal",
        "description": "Energy (Atwater Specific Factors)"
    },
    208: {"field": "calories_per_100g", "unit": "kcal", "description": "Energy (legacy)"},
    957: {
        "field": "calories_per_100g",
        "unit": "kcal",
        "description": "Energy (Atwater General Factors, legacy)"
    },
    958: {
        "field": "calories_per_100g",
        "unit": "kcal",
        "description": "Energy (Atwater Specific Factors, legacy)"
    },

    # === MACRONUTRIENTS ===
    1003: {"field": "protein_g_per_100g", "unit": "g", "description": "Protein"},
    203: {"field": "protein_g_per_100g", "unit": "g", "description": "Protein (legacy)"},
    1005: {
        "field": "carbs_g_per_100g",
        "unit": "g",
        "description": "Carbohydrate, by difference"
    },
    205: {
        "field": "carbs_g_per_100g",
        "unit": "g",
        "description": "Carbohydrate, by difference (legacy)"
    },
    1004: {"field": "fat_g_per_100g", "unit": "g", "description": "Total lipid (fat)"},
    204: {"field": "fat_g_per_100g", "unit": "g", "description": "Total lipid (fat) (legacy)"},
    1079: {"field": "fiber_g_per_100g", "unit": "g", "description": "Fiber, total dietary"},
    291: {
        "field": "fiber_g_per_100g",
        "unit": "g",
        "description": "Fiber, total dietary (legacy)"
    },
    2000: {
        "field": "sugar_g_per_100g",
        "unit": "g",
        "description": "Total Sugars"
    },
    1063: {"field": "sugar_g_per_100g", "unit": "g", "description": "Sugars, Total NLEA"},
    269: {"field": "sugar_g_per_100g", "unit": "g", "description": "Sugars, total (legacy)"},

    # === MINERALS ===
    1093: {"field": "sodium_mg_per_100g", "unit": "mg", "description": "Sodium, Na"},
    307: {"field": "sodium_mg_per_100g", "unit": "mg", "description": "Sodium, Na (legacy)"},
    1087: {"field": "calcium_mg_per_100g", "unit": "mg", "description": "Calcium, Ca"},
    301: {"field": "calcium_mg_per_100g", "unit": "mg", "description": "Calcium, Ca (legacy)"},
    1089: {"field": "iron_mg_per_100g", "unit": "mg", "description": "Iron, Fe"},
    303: {"field": "iron_mg_per_100g", "unit": "mg", "description": "Iron, Fe (legacy)"},

    # === VITAMINS ===
    1162: {
        "field": "vitamin_c_mg_per_100g",
        "unit": "mg",
        "description": "Vitamin C, total ascorbic acid"
    },
    401: {
        "field": "vitamin_c_mg_per_100g",
        "unit": "mg",
        "description": "Vitamin C, total ascorbic acid (legacy)"
    },
}


def clean_amount(value: Any) -> Optional[float]:
    """Return ``value`` as a finite non-negative float, or None.

    Booleans, strings that do not parse, NaN, infinities and negative
    numbers are all rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(amount) or amount < 0:
        return None
    return amount


class NutrientMapper:
    """Maps raw (code, value) pairs onto canonical nutrient columns.

    Usage:
        mapper = NutrientMapper()
        nutrients = mapper.extract(record.nutrients)
        # {"calories_per_100g": 52.0, "protein_g_per_100g": 0.26}
    """

    def __init__(self, code_map: Optional[Dict[int, Dict[str, str]]] = None):
        self.code_map = code_map if code_map is not None else NUTRIENT_CODE_MAP
        unknown = {
            mapping["field"] for mapping in self.code_map.values()
        } - set(NUTRIENT_FIELDS)
        if unknown:
            raise ValueError(f"Nutrient map targets unknown fields: {sorted(unknown)}")

    def extract(self, pairs: Iterable[Tuple[int, Any]]) -> Dict[str, float]:
        """Extract canonical nutrients from raw pairs.

        Args:
            pairs: (nutrient code, value) pairs in API order

        Returns:
            Dict of populated canonical fields only
        """
        nutrients: Dict[str, float] = {}
        for code, value in pairs:
            field_name = self.get_field_for_code(code)
            if field_name is None or field_name in nutrients:
                continue
            amount = clean_amount(value)
            if amount is None:
                continue
            nutrients[field_name] = amount
        return nutrients

    def get_field_for_code(self, code: int) -> Optional[str]:
        """Canonical field for a nutrient code, or None if untracked."""
        mapping = self.code_map.get(code)
        return mapping["field"] if mapping else None
