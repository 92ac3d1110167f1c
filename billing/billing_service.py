"""
Billing record writes and period totals
Every write is keyed on (resource, subproject, request_type, month, year)
"""
import logging
from decimal import Decimal, InvalidOperation

from django.db import DatabaseError, transaction
from django.db.models import Count, Q, Sum

from billing.exceptions import BillingError
from billing.models import Billing, Resource, Subproject
from billing.rates import RateResolver
from billing.vocabulary import (
    BillableStatus, ProductivityLevel, RequestType, match, match_productivity_level,
)

logger = logging.getLogger(__name__)

ZERO = Decimal('0')

KEY_FIELDS = ('resource_id', 'subproject_id', 'request_type', 'month', 'year')


def to_decimal(value, label):
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise BillingError(f'{label} must be a number')
    if not number.is_finite():
        raise BillingError(f'{label} must be a number')
    if number < 0:
        raise BillingError(f'{label} cannot be negative')
    return number


def validate_period(month, year):
    try:
        month = int(month)
        year = int(year)
    except (TypeError, ValueError):
        raise BillingError('month and year must be integers')
    if not 1 <= month <= 12:
        raise BillingError('month must be between 1 and 12')
    if not 2000 <= year <= 2100:
        raise BillingError('year is out of range')
    return month, year


def _hierarchy_fields(subproject):
    """Parent ids and display names copied from the subproject at write time"""
    return {
        'geography_id': subproject.geography_id,
        'client_id': subproject.client_id,
        'project_id': subproject.project_id,
        'geography_name': subproject.geography_name,
        'client_name': subproject.client_name,
        'project_name': subproject.project_name,
        'subproject_name': subproject.name,
    }


def upsert_billing(resource, subproject, request_type, month, year, hours=None, rate=None, flatrate=None,
                   productivity_level=None, billable_status=None, description=None, rate_resolver=None,
                   overwrite=True):
    """
    Create or update the billing record for one resource/subproject/request type/month

    Args:
        resource, subproject: model instances
        hours, rate, flatrate: new values; None leaves the stored value alone
        productivity_level: re-resolves the rate from the productivity tiers unless `rate` is given
        overwrite: False only fills in a record that does not exist yet

    Returns:
        (Billing, created)

    Raises:
        BillingError: for an unknown request type, level, status or bad period
    """
    canonical_type = match(request_type, RequestType)
    if canonical_type is None:
        raise BillingError(f'Invalid request type "{request_type}"')
    month, year = validate_period(month, year)

    level = None
    if productivity_level not in (None, ''):
        level = match_productivity_level(productivity_level)
        if level is None:
            raise BillingError(f'Invalid productivity level "{productivity_level}"')

    status = None
    if billable_status not in (None, ''):
        status = match(billable_status, BillableStatus)
        if status is None:
            raise BillingError(f'Invalid billable status "{billable_status}"')

    values = {}
    if hours is not None:
        values['hours'] = to_decimal(hours, 'hours')
    if rate is not None:
        values['rate'] = to_decimal(rate, 'rate')
    elif level is not None:
        resolver = rate_resolver or RateResolver.load([subproject.id])
        values['rate'] = resolver.resolve_rate(subproject.id, level)
    if flatrate is not None:
        values['flatrate'] = to_decimal(flatrate, 'flatrate')
    if level is not None:
        values['productivity_level'] = level.value
    if status is not None:
        values['billable_status'] = status.value
    if description is not None:
        values['description'] = description

    defaults = {'flatrate': subproject.flatrate, **_hierarchy_fields(subproject), **values}

    with transaction.atomic():
        billing, created = Billing.objects.select_for_update().get_or_create(
            resource=resource,
            subproject=subproject,
            request_type=canonical_type.value,
            month=month,
            year=year,
            defaults=defaults,
        )
        if not created and overwrite:
            for field, value in {**_hierarchy_fields(subproject), **values}.items():
                setattr(billing, field, value)
            billing.save()

    return billing, created


def _load_key_entities(item):
    try:
        resource = Resource.objects.get(pk=item['resource_id'])
        subproject = Subproject.objects.get(pk=item['subproject_id'])
    except (Resource.DoesNotExist, Subproject.DoesNotExist, ValueError, TypeError):
        raise BillingError('resource_id/subproject_id not found')
    return resource, subproject


def bulk_update_billing(items):
    """
    Apply a list of edits, each addressed by `id` or by the full business key

    Returns:
        dict: {'updated': [ids], 'failed_records': [{'index', 'item', 'error'}]}
    """
    updated = []
    failed_records = []

    for index, item in enumerate(items):
        try:
            if not isinstance(item, dict):
                raise BillingError('each item must be an object')

            if item.get('id') is not None:
                try:
                    existing = Billing.objects.select_related('resource', 'subproject').get(pk=item['id'])
                except (Billing.DoesNotExist, ValueError, TypeError):
                    raise BillingError(f'Billing record {item["id"]} not found')
                resource, subproject = existing.resource, existing.subproject
                key = {
                    'request_type': existing.request_type,
                    'month': existing.month,
                    'year': existing.year,
                }
            else:
                missing = [field for field in KEY_FIELDS if item.get(field) in (None, '')]
                if missing:
                    raise BillingError(f'missing {", ".join(missing)}')
                resource, subproject = _load_key_entities(item)
                key = {field: item[field] for field in ('request_type', 'month', 'year')}

            billing, _ = upsert_billing(
                resource, subproject,
                hours=item.get('hours'),
                rate=item.get('rate'),
                flatrate=item.get('flatrate'),
                productivity_level=item.get('productivity_level'),
                billable_status=item.get('billable_status'),
                description=item.get('description'),
                **key,
            )
            updated.append(billing.id)
        except (BillingError, DatabaseError) as e:
            logger.warning(f"Billing bulk update item {index} failed: {e}")
            failed_records.append({'index': index, 'item': item, 'error': str(e)})

    logger.info(f"Billing bulk update: {len(updated)} updated, {len(failed_records)} failed")
    return {'updated': updated, 'failed_records': failed_records}


def billing_totals(month, year, project_id=None, subproject_id=None):
    """
    Revenue, cost and profit for one period

    revenue = sum of billable total_amount, cost = sum of costing, profit = revenue - cost
    """
    month, year = validate_period(month, year)
    queryset = Billing.objects.filter(month=month, year=year)
    if project_id:
        queryset = queryset.filter(project_id=project_id)
    if subproject_id:
        queryset = queryset.filter(subproject_id=subproject_id)

    billable = Q(billable_status=BillableStatus.BILLABLE)
    result = queryset.aggregate(
        revenue=Sum('total_amount', filter=billable),
        cost=Sum('costing'),
        total_hours=Sum('hours'),
        billable_hours=Sum('hours', filter=billable),
        records=Count('id'),
        billable_records=Count('id', filter=billable),
    )

    revenue = result['revenue'] or ZERO
    cost = result['cost'] or ZERO
    return {
        'month': month,
        'year': year,
        'revenue': revenue,
        'cost': cost,
        'profit': revenue - cost,
        'total_hours': result['total_hours'] or ZERO,
        'billable_hours': result['billable_hours'] or ZERO,
        'record_count': result['records'],
        'billable_count': result['billable_records'],
        'non_billable_count': result['records'] - result['billable_records'],
    }


def seed_resource_billing(resource, subproject, request_types, month, year, rate_resolver=None):
    """
    Make sure a zero-hour billing record exists for each request type

    New records take the subproject's medium productivity rate and its flat rate; existing
    records are left exactly as they are.

    Returns:
        number of records created
    """
    resolver = rate_resolver or RateResolver.load([subproject.id])
    rate = resolver.resolve_rate(subproject.id, ProductivityLevel.MEDIUM)
    created_count = 0
    for request_type in request_types:
        _, created = upsert_billing(
            resource, subproject, request_type, month, year,
            hours=0,
            rate=rate,
            flatrate=subproject.flatrate,
            productivity_level=ProductivityLevel.MEDIUM,
            overwrite=False,
        )
        if created:
            created_count += 1
    return created_count
