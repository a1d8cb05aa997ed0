"""
Record-level logic: field parsing, normalization, deduplication and
career level classification.
"""
