"""Generators for new formula declarations."""
