"""Shared utilities for the KeepWatch pipeline."""
from .pii import hash_pii, hash_text_for_audit, configure_pii_salt, truncate_excerpt

__all__ = ["hash_pii", "hash_text_for_audit", "configure_pii_salt", "truncate_excerpt"]
