"""
Closed vocabularies for feeds, request types, process types and pricing tiers
Free text from uploads is matched once here; everything downstream uses the canonical values
"""
from django.db import models


class Feed(models.TextChoices):
    VERISMA = 'verisma', 'Verisma'
    MRO = 'mro', 'MRO'


class RequestType(models.TextChoices):
    NEW_REQUEST = 'New Request', 'New Request'
    KEY = 'Key', 'Key'
    DUPLICATE = 'Duplicate', 'Duplicate'
    BATCH = 'Batch', 'Batch'
    DDS = 'DDS', 'DDS'
    E_LINK = 'E-link', 'E-link'
    E_REQUEST = 'E-Request', 'E-Request'
    FOLLOW_UP = 'Follow up', 'Follow up'


class ProcessType(models.TextChoices):
    PROCESSING = 'Processing', 'Processing'
    LOGGING = 'Logging', 'Logging'
    MRO_PAYER_PROJECT = 'MRO Payer Project', 'MRO Payer Project'


class ProductivityLevel(models.TextChoices):
    LOW = 'low', 'Low'
    MEDIUM = 'medium', 'Medium'
    HIGH = 'high', 'High'
    BEST = 'best', 'Best'


class BillableStatus(models.TextChoices):
    BILLABLE = 'Billable', 'Billable'
    NON_BILLABLE = 'Non-Billable', 'Non-Billable'


FEED_REQUEST_TYPES = {
    Feed.VERISMA: [RequestType.NEW_REQUEST, RequestType.KEY, RequestType.DUPLICATE],
    Feed.MRO: [
        RequestType.BATCH,
        RequestType.DDS,
        RequestType.E_LINK,
        RequestType.E_REQUEST,
        RequestType.FOLLOW_UP,
        RequestType.NEW_REQUEST,
    ],
}

# Verisma process types are project names and stay free text
FEED_PROCESS_TYPES = {
    Feed.VERISMA: None,
    Feed.MRO: list(ProcessType),
}


def match(value, choices):
    """
    Case-insensitive exact match of free text against a closed set

    Args:
        value: raw text from an upload or request
        choices: iterable of TextChoices members

    Returns:
        The canonical member, or None when nothing matches
    """
    if value is None:
        return None
    wanted = str(value).strip().lower()
    if not wanted:
        return None
    for choice in choices:
        if choice.value.lower() == wanted:
            return choice
    return None


def request_types_for(feed):
    return FEED_REQUEST_TYPES[Feed(feed)]


def match_request_type(value, feed=Feed.VERISMA):
    return match(value, request_types_for(feed))


def match_process_type(value, feed=Feed.MRO):
    allowed = FEED_PROCESS_TYPES[Feed(feed)]
    if allowed is None:
        return None
    return match(value, allowed)


def match_productivity_level(value):
    return match(value, ProductivityLevel)


def match_feed(value):
    if value in (None, ''):
        return Feed.VERISMA
    return match(value, Feed)


class GeographyType(models.TextChoices):
    ONSHORE = 'onshore', 'Onshore'
    OFFSHORE = 'offshore', 'Offshore'


GEOGRAPHY_TYPE_ALIASES = {
    'us': GeographyType.ONSHORE,
    'usa': GeographyType.ONSHORE,
    'united states': GeographyType.ONSHORE,
    'onshore': GeographyType.ONSHORE,
    'ind': GeographyType.OFFSHORE,
    'india': GeographyType.OFFSHORE,
    'offshore': GeographyType.OFFSHORE,
}


def geography_type_for(geography_name):
    """Onshore/offshore classification of a geography name, '' when unknown"""
    key = ' '.join(str(geography_name or '').lower().split())
    return GEOGRAPHY_TYPE_ALIASES.get(key, '')
