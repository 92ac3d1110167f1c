"""
Import tuning settings with defaults
"""
from django.conf import settings

DEFAULTS = {
    'HIERARCHY_BATCH_SIZE': 500,
    'SUMMARY_BATCH_SIZE': 5000,
    'RESOURCE_BATCH_SIZE': 100,
    'CSV_CHUNK_SIZE': 10000,
    'DEFAULT_PAGE_SIZE': 50,
    'MAX_PAGE_SIZE': 500,
    'PLACEHOLDER_EMAIL_DOMAIN': 'placeholder.com',
}


def import_setting(name):
    """Return a BILLING_IMPORT value, falling back to the built-in default"""
    overrides = getattr(settings, 'BILLING_IMPORT', None) or {}
    if name in overrides:
        return overrides[name]
    if name not in DEFAULTS:
        raise KeyError(f'Unknown import setting: {name}')
    return DEFAULTS[name]
