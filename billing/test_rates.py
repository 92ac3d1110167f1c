"""
Tests for rate lookup by request type and productivity tier
"""
from decimal import Decimal

import pytest

from billing.models import SubprojectProductivity
from billing.rates import RateResolver, resolve_rate


@pytest.fixture
def resolver():
    return RateResolver(
        request_type_rates={(1, 'Key'): Decimal('2.50'), (1, 'New Request'): Decimal('1.75')},
        subproject_tiers={(1, 'high'): Decimal('40')},
        project_tiers={(10, 'high'): Decimal('35'), (10, 'low'): Decimal('20')},
        subproject_projects={1: 10, 2: 10},
    )


def test_request_type_rate(resolver):
    assert resolver.resolve_rate(1, 'key') == Decimal('2.50')
    assert resolver.resolve_rate(1, 'New Request') == Decimal('1.75')


def test_missing_request_type_rate_is_zero(resolver):
    assert resolver.resolve_rate(1, 'Duplicate') == Decimal('0')
    assert resolver.resolve_rate(2, 'Key') == Decimal('0')


def test_subproject_tier_wins_over_project_tier(resolver):
    assert resolver.resolve_rate(1, 'HIGH') == Decimal('40')
    assert resolver.resolve_rate(2, 'high') == Decimal('35')


def test_project_tier_fallback_and_defaults(resolver):
    assert resolver.resolve_rate(1, 'low') == Decimal('20')
    assert resolver.resolve_rate(1, 'best') == Decimal('0')
    assert resolver.resolve_rate(1, 'overtime') == Decimal('0')


def test_load_reads_both_tier_kinds(make_subproject):
    subproject = make_subproject(rates={'Key': '2.5'})
    other = make_subproject(subproject='SiteB')
    SubprojectProductivity.objects.create(subproject=subproject, level='high', base_rate=Decimal('40'))
    SubprojectProductivity.objects.create(project=subproject.project, level='medium', base_rate=Decimal('30'))

    assert resolve_rate(subproject.id, 'Key') == Decimal('2.5')
    assert resolve_rate(subproject.id, 'high') == Decimal('40')
    assert resolve_rate(subproject.id, 'medium') == Decimal('30')
    assert resolve_rate(other.id, 'medium') == Decimal('30')
    assert resolve_rate(other.id, 'high') == Decimal('0')
    assert resolve_rate(None, 'Key') == Decimal('0')


def test_subproject_tier_records_its_project(make_subproject):
    subproject = make_subproject()

    tier = SubprojectProductivity.objects.create(subproject=subproject, level='low', base_rate=Decimal('10'))

    assert tier.project_id == subproject.project_id
