"""Payload normalization into typed entities."""

from .normalizer import ExtractedEntities, extract_entities, normalize_commit, normalize_repository

__all__ = ["ExtractedEntities", "extract_entities", "normalize_commit", "normalize_repository"]
