"""
Billing record, totals, rate lookup and invoice endpoints
"""
import logging

from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from billing.billing_service import billing_totals as compute_billing_totals
from billing.billing_service import bulk_update_billing, upsert_billing
from billing.exceptions import BillingError
from billing.invoice_service import generate_invoice
from billing.models import Resource, Subproject
from billing.rates import resolve_rate
from billing.views.allocation_views import int_param

logger = logging.getLogger(__name__)


def serialize_billing(billing):
    return {
        'id': billing.id,
        'resource_id': billing.resource_id,
        'geography_id': billing.geography_id,
        'client_id': billing.client_id,
        'project_id': billing.project_id,
        'subproject_id': billing.subproject_id,
        'geography_name': billing.geography_name,
        'client_name': billing.client_name,
        'project_name': billing.project_name,
        'subproject_name': billing.subproject_name,
        'request_type': billing.request_type,
        'productivity_level': billing.productivity_level,
        'month': billing.month,
        'year': billing.year,
        'hours': billing.hours,
        'rate': billing.rate,
        'flatrate': billing.flatrate,
        'costing': billing.costing,
        'total_amount': billing.total_amount,
        'billable_status': billing.billable_status,
        'description': billing.description,
    }


def serialize_invoice(invoice):
    return {
        'id': invoice.id,
        'invoice_number': invoice.invoice_number,
        'month': invoice.month,
        'year': invoice.year,
        'record_count': invoice.record_count,
        'billable_hours': invoice.billable_hours,
        'non_billable_hours': invoice.non_billable_hours,
        'billable_amount': invoice.billable_amount,
        'non_billable_amount': invoice.non_billable_amount,
        'total_billing': invoice.total_billing,
        'total_costing': invoice.total_costing,
        'generated_by': invoice.generated_by,
        'created_at': invoice.created_at.isoformat(),
        'records': invoice.records,
    }


def _error(message, code=status.HTTP_400_BAD_REQUEST):
    return Response({'status': 'error', 'message': message}, status=code)


@api_view(['POST'])
def billing_upsert(request):
    """
    Create or update one billing record

    POST /api/billing/

    Body:
        resource_id, subproject_id, request_type, month, year (the record key)
        hours, rate, flatrate, productivity_level, billable_status, description (optional)
    """
    data = request.data
    try:
        resource = Resource.objects.get(pk=data.get('resource_id'))
        subproject = Subproject.objects.get(pk=data.get('subproject_id'))
    except (Resource.DoesNotExist, Subproject.DoesNotExist, ValueError, TypeError):
        return _error('resource_id and subproject_id must reference existing records', status.HTTP_404_NOT_FOUND)

    try:
        billing, created = upsert_billing(
            resource,
            subproject,
            data.get('request_type'),
            data.get('month'),
            data.get('year'),
            hours=data.get('hours'),
            rate=data.get('rate'),
            flatrate=data.get('flatrate'),
            productivity_level=data.get('productivity_level'),
            billable_status=data.get('billable_status'),
            description=data.get('description'),
        )
    except BillingError as e:
        return _error(str(e))

    return Response({
        'status': 'success',
        'created': created,
        'billing': serialize_billing(billing),
    }, status=status.HTTP_201_CREATED if created else status.HTTP_200_OK)


@api_view(['PATCH'])
def billing_bulk_update(request):
    """
    Apply many billing edits; failures are reported per item

    PATCH /api/billing/bulk-update/

    Body: {"items": [{"id": 1, "hours": 8}, {"resource_id": ..., "subproject_id": ..., ...}]}
    """
    items = request.data.get('items') if isinstance(request.data, dict) else request.data
    if not isinstance(items, list):
        return _error('items must be a list')

    result = bulk_update_billing(items)
    if result['failed_records']:
        return Response({
            'status': 'partial',
            'updated': result['updated'],
            'failedRecords': result['failed_records'],
        }, status=status.HTTP_207_MULTI_STATUS)

    return Response({'status': 'success', 'updated': result['updated']})


@api_view(['GET'])
def billing_totals(request):
    """
    GET /api/billing/totals/?month=3&year=2025[&project_id=..][&subproject_id=..]
    """
    params = request.query_params
    try:
        project_id = int_param(params, 'project_id')
        subproject_id = int_param(params, 'subproject_id')
        totals = compute_billing_totals(
            params.get('month'),
            params.get('year'),
            project_id=project_id,
            subproject_id=subproject_id,
        )
    except (BillingError, ValueError) as e:
        return _error(str(e))

    return Response({'status': 'success', 'totals': totals})


@api_view(['POST'])
def rate_lookup(request):
    """
    Resolve the rate for a subproject by request type or productivity level

    POST /api/billing/rate/

    Body: {"subproject_id": 1, "request_type": "Key"} or {"subproject_id": 1, "productivity_level": "high"}
    """
    subproject_id = request.data.get('subproject_id')
    selector = request.data.get('request_type') or request.data.get('productivity_level')
    if not subproject_id or not selector:
        return _error('subproject_id and request_type or productivity_level are required')

    try:
        subproject_id = int(subproject_id)
    except (TypeError, ValueError):
        return _error('subproject_id must be an integer')

    return Response({
        'status': 'success',
        'subproject_id': subproject_id,
        'selector': selector,
        'rate': resolve_rate(subproject_id, selector),
    })


@api_view(['POST'])
def invoice_create(request):
    """
    Generate an invoice snapshot for a billing period

    POST /api/invoices/

    Body: {"month": 3, "year": 2025, "generated_by": "..."}
    """
    try:
        invoice = generate_invoice(
            request.data.get('month'),
            request.data.get('year'),
            generated_by=request.data.get('generated_by', ''),
        )
    except BillingError as e:
        return _error(str(e))

    return Response({
        'status': 'success',
        'invoice': serialize_invoice(invoice),
    }, status=status.HTTP_201_CREATED)
