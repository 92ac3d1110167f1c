"""
Invoice generation
An invoice embeds a snapshot of the period's billing records and is never changed afterwards
"""
import logging
import secrets
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from billing.billing_service import validate_period
from billing.exceptions import BillingError
from billing.models import Billing, Invoice
from billing.vocabulary import BillableStatus

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


def next_invoice_number(now=None):
    """INV-YYYYMMDD-NNN-XXXXXX: sequence within the calendar month plus 6 random hex chars"""
    now = now or timezone.now()
    issued_this_month = Invoice.objects.filter(
        created_at__year=now.year, created_at__month=now.month
    ).count()
    suffix = secrets.token_hex(3).upper()
    return f"INV-{now:%Y%m%d}-{issued_this_month + 1:03d}-{suffix}"


def snapshot_record(billing):
    return {
        'billing_id': billing.id,
        'resource_id': billing.resource_id,
        'resource_name': billing.resource.name,
        'resource_email': billing.resource.email,
        'geography_id': billing.geography_id,
        'geography_name': billing.geography_name,
        'client_id': billing.client_id,
        'client_name': billing.client_name,
        'project_id': billing.project_id,
        'project_name': billing.project_name,
        'subproject_id': billing.subproject_id,
        'subproject_name': billing.subproject_name,
        'request_type': billing.request_type,
        'productivity_level': billing.productivity_level,
        'month': billing.month,
        'year': billing.year,
        'hours': str(billing.hours),
        'rate': str(billing.rate),
        'flatrate': str(billing.flatrate),
        'costing': str(billing.costing),
        'total_amount': str(billing.total_amount),
        'billable_status': billing.billable_status,
        'description': billing.description,
    }


@transaction.atomic
def generate_invoice(month, year, generated_by=''):
    """
    Snapshot every billing record of the period with hours > 0 into a new invoice

    Raises:
        BillingError: when the period has no billing hours
    """
    month, year = validate_period(month, year)
    records = list(
        Billing.objects.filter(month=month, year=year, hours__gt=0)
        .select_related('resource')
        .order_by('subproject_name', 'resource__name', 'request_type')
    )
    if not records:
        raise BillingError(f'No billing records with hours for {month}/{year}')

    totals = {
        'billable_hours': ZERO,
        'non_billable_hours': ZERO,
        'billable_amount': ZERO,
        'non_billable_amount': ZERO,
        'total_costing': ZERO,
    }
    for billing in records:
        if billing.billable_status == BillableStatus.BILLABLE:
            totals['billable_hours'] += billing.hours
            totals['billable_amount'] += billing.total_amount
        else:
            totals['non_billable_hours'] += billing.hours
            totals['non_billable_amount'] += billing.total_amount
        totals['total_costing'] += billing.costing

    invoice = Invoice.objects.create(
        invoice_number=next_invoice_number(),
        month=month,
        year=year,
        records=[snapshot_record(billing) for billing in records],
        record_count=len(records),
        total_billing=totals['billable_amount'],
        generated_by=generated_by or '',
        **totals,
    )
    logger.info(f"Generated {invoice.invoice_number}: {len(records)} records, billing {invoice.total_billing}")
    return invoice
