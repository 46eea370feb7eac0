"""Persistence layer: async engine and ORM models."""
