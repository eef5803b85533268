"""Ingredient models and the relational ingredient store."""
