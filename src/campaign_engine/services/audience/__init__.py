"""Audience resolution exports."""

from .resolver import AudienceResolver, consent_clause, resolve_audience_ids  # noqa: F401
