"""
Upload API views for hierarchy, allocation and resource files
"""
import logging

from rest_framework import status
from rest_framework.decorators import api_view, parser_classes
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response

from billing.error_report import error_report_response
from billing.exceptions import (
    EmptyUploadError, ResolutionError, ShapeValidationError, UnsupportedFileError,
)
from billing.models import UploadRun
from billing.pipeline import AllocationUpload, HierarchyUpload, ResourceUpload
from billing.vocabulary import match_feed

logger = logging.getLogger(__name__)

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def flag(request, name):
    value = request.query_params.get(name, request.data.get(name, ''))
    return str(value).strip().lower() in TRUE_VALUES


def option(request, name, default=''):
    return request.query_params.get(name) or request.data.get(name) or default


def serialize_run(run):
    return {
        'upload_id': str(run.id),
        'kind': run.kind,
        'mode': run.mode,
        'feed': run.feed,
        'file_name': run.file_name,
        'uploaded_by': run.uploaded_by,
        'dry_run': run.dry_run,
        'status': run.status,
        'rows_read': run.rows_read,
        'rows_valid': run.rows_valid,
        'rows_written': run.rows_written,
        'error_message': run.error_message,
        'start_date': run.start_date.isoformat() if run.start_date else None,
        'end_date': run.end_date.isoformat() if run.end_date else None,
        'months': run.months,
        'years': run.years,
        'summary': run.summary,
        'created_at': run.created_at.isoformat(),
        'finished_at': run.finished_at.isoformat() if run.finished_at else None,
    }


def run_upload(request, pipeline_class, **options):
    """
    Run one upload pipeline and translate its outcome into a response

    Returns:
        - 200: everything written (or dry-run plan)
        - 207: written with some failed records
        - 400: CSV error report for rejected rows, JSON for a missing/unreadable/empty file
        - 500: unexpected error
    """
    if 'file' not in request.FILES:
        return Response({
            'status': 'error',
            'message': 'No file provided. Please upload a file.'
        }, status=status.HTTP_400_BAD_REQUEST)

    feed = match_feed(option(request, 'feed'))
    if feed is None:
        return Response({
            'status': 'error',
            'message': f'Unknown feed "{option(request, "feed")}"'
        }, status=status.HTTP_400_BAD_REQUEST)

    uploaded_file = request.FILES['file']
    pipeline = pipeline_class(
        uploaded_file,
        uploaded_file.name,
        feed=feed,
        uploaded_by=option(request, 'uploaded_by'),
        **options
    )

    try:
        result = pipeline.run()
    except (ShapeValidationError, ResolutionError) as e:
        return error_report_response(pipeline.kind, e.fields, e.rows)
    except (EmptyUploadError, UnsupportedFileError) as e:
        return Response({
            'status': 'error',
            'message': e.message,
        }, status=status.HTTP_400_BAD_REQUEST)
    except Exception as e:
        logger.exception(f"{pipeline.kind} upload of {uploaded_file.name} failed")
        return Response({
            'status': 'error',
            'message': f'Error processing file: {str(e)}',
            'upload_id': str(pipeline.run_record.id) if pipeline.run_record else None,
        }, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

    failed_records = result['failed_records']
    if failed_records:
        return Response({
            'status': 'partial',
            'message': f'{len(failed_records)} record(s) could not be written',
            'upload_id': result['upload_id'],
            'summary': result['summary'],
            'failedRecords': failed_records,
        }, status=status.HTTP_207_MULTI_STATUS)

    return Response({
        'status': 'success',
        'message': f'{pipeline.kind.capitalize()} upload completed',
        'upload_id': result['upload_id'],
        'summary': result['summary'],
    }, status=status.HTTP_200_OK)


@api_view(['POST'])
@parser_classes([MultiPartParser, FormParser])
def hierarchy_upload(request):
    """
    Upload geography/client/process type/location rows with request type rates

    POST /api/uploads/hierarchy/

    Form data or query params:
        file: CSV or Excel file
        mode: 'replace' (default) rebuilds the whole hierarchy, 'incremental' upserts into it
        feed: 'verisma' (default) or 'mro'
        dry_run: return the plan without writing
    """
    mode = option(request, 'mode', 'replace').lower()
    if mode not in ('replace', 'incremental'):
        return Response({
            'status': 'error',
            'message': 'mode must be "replace" or "incremental"'
        }, status=status.HTTP_400_BAD_REQUEST)

    return run_upload(request, HierarchyUpload, mode=mode, dry_run=flag(request, 'dry_run'))


@api_view(['POST'])
@parser_classes([MultiPartParser, FormParser])
def allocation_upload(request):
    """
    Upload raw allocation rows; summaries inside the file's date window are replaced

    POST /api/uploads/allocations/
    """
    return run_upload(request, AllocationUpload)


@api_view(['POST'])
@parser_classes([MultiPartParser, FormParser])
def resource_upload(request):
    """
    Upload resources with their process types

    POST /api/uploads/resources/
    """
    return run_upload(request, ResourceUpload)


@api_view(['GET'])
def list_uploads(request):
    """
    List upload runs

    GET /api/uploads/

    Query params:
        kind: hierarchy | allocations | resources (optional)
        status: run status (optional)
    """
    runs = UploadRun.objects.all().order_by('-created_at')

    kind = request.query_params.get('kind')
    if kind:
        runs = runs.filter(kind=kind)

    run_status = request.query_params.get('status')
    if run_status:
        runs = runs.filter(status=run_status)

    data = [serialize_run(run) for run in runs]
    return Response({
        'status': 'success',
        'count': len(data),
        'uploads': data,
    })


@api_view(['GET'])
def upload_detail(request, upload_id):
    """
    GET /api/uploads/<upload_id>/
    """
    try:
        run = UploadRun.objects.get(pk=upload_id)
    except UploadRun.DoesNotExist:
        return Response({
            'status': 'error',
            'message': 'Upload not found'
        }, status=status.HTTP_404_NOT_FOUND)

    return Response({
        'status': 'success',
        'upload': serialize_run(run),
    })
