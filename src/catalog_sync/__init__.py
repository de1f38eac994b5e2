"""Catalog sync: pull a store catalog, enrich it with AI, persist it."""

__version__ = "0.1.0"
