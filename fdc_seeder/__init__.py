"""USDA FoodData Central ingredient seeder."""

__version__ = "0.1.0"
