"""
Allocation summary report, upload history and deletion
"""
import logging
from datetime import date

from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from billing.aggregation import AllocationSummaryQuery, delete_allocations
from billing.models import UploadRun
from billing.views.upload_views import serialize_run
from billing.vocabulary import match_feed

logger = logging.getLogger(__name__)


def int_param(params, name):
    value = params.get(name)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f'{name} must be an integer')


def _date_param(params, name):
    value = params.get(name)
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValueError(f'{name} must be a date (YYYY-MM-DD)')


def parse_summary_filters(params):
    month = params.get('month')
    filters = {
        'year': int_param(params, 'year'),
        'month': None if month in (None, '', 'all') else int_param(params, 'month'),
        'start_date': _date_param(params, 'start_date'),
        'end_date': _date_param(params, 'end_date'),
        'geography_type': params.get('geography_type') or None,
        'search': (params.get('search') or '').strip() or None,
    }
    for field in ('geography_id', 'client_id', 'project_id', 'subproject_id'):
        filters[field] = int_param(params, field)
    return filters


def feed_param(params):
    feed = match_feed(params.get('feed'))
    if feed is None:
        raise ValueError(f'Unknown feed "{params.get("feed")}"')
    return feed


def _summary_query(request):
    feed = feed_param(request.query_params)
    return AllocationSummaryQuery(parse_summary_filters(request.query_params), feed=feed)


@api_view(['GET'])
def allocation_summary(request):
    """
    Allocation counts and billing per location

    GET /api/allocations/summary/

    Query params:
        year, month ('all' for every month), start_date, end_date,
        geography_id, geography_type, client_id, project_id, subproject_id,
        search (location or process type), page, limit, feed (verisma or mro)
    """
    try:
        query = _summary_query(request)
        page = int_param(request.query_params, 'page') or 1
        limit = int_param(request.query_params, 'limit')
    except ValueError as e:
        return Response({'status': 'error', 'message': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    result = query.page(page=page, limit=limit)
    return Response({'status': 'success', **result})


@api_view(['GET'])
def allocation_summary_export(request):
    """
    Same report as allocation_summary without pagination

    GET /api/allocations/summary/export/
    """
    try:
        query = _summary_query(request)
    except ValueError as e:
        return Response({'status': 'error', 'message': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    result = query.export()
    return Response({'status': 'success', 'count': len(result['data']), **result})


def _completed_allocation_runs(params):
    runs = UploadRun.objects.filter(kind='allocations', status='completed')
    if params.get('feed'):
        runs = runs.filter(feed=feed_param(params))
    return runs.order_by('-created_at')


@api_view(['GET'])
def upload_history(request):
    """
    GET /api/allocations/upload-history/[?feed=mro]
    """
    try:
        runs = [serialize_run(run) for run in _completed_allocation_runs(request.query_params)]
    except ValueError as e:
        return Response({'status': 'error', 'message': str(e)}, status=status.HTTP_400_BAD_REQUEST)
    return Response({'status': 'success', 'count': len(runs), 'uploads': runs})


@api_view(['GET'])
def latest_upload(request):
    """
    GET /api/allocations/latest-upload/[?feed=mro]
    """
    try:
        run = _completed_allocation_runs(request.query_params).first()
    except ValueError as e:
        return Response({'status': 'error', 'message': str(e)}, status=status.HTTP_400_BAD_REQUEST)
    if run is None:
        return Response({
            'status': 'error',
            'message': 'No allocation uploads yet'
        }, status=status.HTTP_404_NOT_FOUND)
    return Response({'status': 'success', 'upload': serialize_run(run)})


@api_view(['DELETE'])
def delete_allocation_data(request):
    """
    Delete one feed's allocation summaries for a year and/or month

    DELETE /api/allocations/?year=2025&month=3[&feed=mro]
    """
    try:
        year = int_param(request.query_params, 'year')
        month = int_param(request.query_params, 'month')
        feed = feed_param(request.query_params)
        deleted = delete_allocations(year=year, month=month, feed=feed)
    except ValueError as e:
        return Response({'status': 'error', 'message': str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return Response({
        'status': 'success',
        'message': f'Deleted {deleted} allocation records',
        'deleted': deleted,
    })
