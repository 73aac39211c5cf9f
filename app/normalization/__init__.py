"""Normalization package.

Canonical forms for recipient contact data.  Normalizers are pure
functions safe to call from property-based tests::

    def normalize_phone(raw: str) -> str:
        ...
"""
