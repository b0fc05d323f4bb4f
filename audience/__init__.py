"""Audience resolution — selector → ordered recipient list."""
from audience.resolver import (
    AudienceResolver,
    StaticAudienceResolver,
    RESTAudienceResolver,
    create_audience_resolver,
    filter_valid,
    is_valid_for_channel,
)

__all__ = [
    "AudienceResolver", "StaticAudienceResolver", "RESTAudienceResolver",
    "create_audience_resolver", "filter_valid", "is_valid_for_channel",
]
