"""
Job market analysis pipeline.

Turns scraped job postings from several collectors into one normalized,
deduplicated corpus with career levels, job clusters and keyword tags.
"""

__version__ = "1.0.0"
