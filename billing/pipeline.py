"""
Upload pipelines
file -> parse -> validate -> resolve -> write/aggregate, tracked on an UploadRun
"""
import logging
import time

from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.aggregation import AllocationAggregator, replace_summaries
from billing.billing_service import seed_resource_billing
from billing.conf import import_setting
from billing.data_validator import REPORT_FIELDS, DataValidator
from billing.exceptions import (
    BillingError, EmptyUploadError, ImportErrorBase, ResolutionError, ShapeValidationError,
)
from billing.hierarchy_cache import HierarchyCache
from billing.models import Resource, ResourceAssignment, UploadRun
from billing.parsers import FEED_HEADERS, ROW_KEY, RowParser
from billing.rates import RateResolver
from billing.resolver import EntityResolver
from billing.upsert_writer import FullReplaceWriter, HierarchyPlanner, IncrementalWriter
from billing.vocabulary import Feed, request_types_for

logger = logging.getLogger(__name__)


class UploadPipeline:
    """
    Base pipeline; subclasses implement `process(run, valid_rows)`

    Usage:
        result = HierarchyUpload(uploaded_file, uploaded_file.name, mode='replace').run()

    Raises ShapeValidationError / ResolutionError (rejected, error report), EmptyUploadError /
    UnsupportedFileError (bad file). Anything unexpected marks the run failed and propagates.
    """
    kind = None

    def __init__(self, source, file_name=None, feed=Feed.VERISMA, uploaded_by='', mode='', dry_run=False):
        self.source = source
        self.file_name = file_name or getattr(source, 'name', '') or str(source)
        self.feed = Feed(feed or Feed.VERISMA)
        self.uploaded_by = uploaded_by or ''
        self.mode = mode or ''
        self.dry_run = dry_run
        self.run_record = None
        self.timings = {}

    @property
    def report_fields(self):
        return REPORT_FIELDS[self.kind]

    def run(self):
        started = time.monotonic()
        run = UploadRun.objects.create(
            kind=self.kind,
            mode=self.mode,
            feed=self.feed,
            file_name=self.file_name,
            uploaded_by=self.uploaded_by,
            dry_run=self.dry_run,
        )
        self.run_record = run
        logger.info(f"Upload {run.id}: {self.kind} file {self.file_name} received")

        try:
            run.transition_to('parsing')
            parser = RowParser(FEED_HEADERS[self.kind])
            rows = parser.iter_rows(self.source, self.file_name)

            run.transition_to('validating')
            stage_started = time.monotonic()
            result = DataValidator(self.kind, self.feed).validate(rows)
            self.timings['validate'] = round(time.monotonic() - stage_started, 2)
            run.rows_read = parser.rows_read
            run.rows_valid = len(result['valid_rows'])

            if result['rows_checked'] == 0:
                raise EmptyUploadError('File contains no data rows')
            if not result['passed']:
                raise ShapeValidationError(result['errors'], self.report_fields)

            summary = self.process(run, result['valid_rows'])
        except ImportErrorBase as e:
            self._reject(run, e)
            raise
        except Exception as e:
            logger.exception(f"Upload {run.id} failed")
            if not run.is_terminal:
                run.transition_to('failed', error_message=str(e))
            raise

        summary['processing_time'] = f"{time.monotonic() - started:.2f}s"
        run.summary = summary
        run.transition_to('completed')
        logger.info(f"Upload {run.id} completed in {summary['processing_time']}")
        return {
            'upload_id': str(run.id),
            'status': run.status,
            'summary': summary,
            'failed_records': summary.get('failed_records', []),
        }

    def process(self, run, valid_rows):
        raise NotImplementedError

    def _reject(self, run, error):
        if run.is_terminal:
            return
        fields = {'error_message': error.message}
        if error.rows:
            fields['summary'] = {'error_count': len(error.rows)}
        target = 'rejected' if run.can_transition('rejected') else 'failed'
        run.transition_to(target, **fields)
        logger.warning(f"Upload {run.id} {target}: {error.message}")

    def _resolve_or_reject(self, run, resolver, valid_rows):
        run.transition_to('resolving')
        stage_started = time.monotonic()
        result = resolver.resolve_all(valid_rows)
        self.timings['resolve'] = round(time.monotonic() - stage_started, 2)
        if result['skipped']:
            raise ResolutionError(result['skipped'], self.report_fields)
        return result['resolved']


class HierarchyUpload(UploadPipeline):
    """Geography/client/process/location rows with request type rates"""
    kind = 'hierarchy'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.mode = self.mode or 'replace'
        if self.mode not in ('replace', 'incremental'):
            raise ValueError(f'Unknown upload mode: {self.mode}')

    def process(self, run, valid_rows):
        if self.dry_run:
            run.transition_to('resolving')
            planned = HierarchyPlanner(HierarchyCache.build(), self.feed).plan(valid_rows)
            return {
                'dry_run': True,
                'mode': self.mode,
                **planned,
                'note': 'No changes were written. Upload again without dry_run to import.',
            }

        run.transition_to('writing')
        writer_class = FullReplaceWriter if self.mode == 'replace' else IncrementalWriter
        written = writer_class(self.feed, upload_run=run).write(valid_rows)
        run.rows_written = written['subprojects']
        written['rows_processed'] = len(valid_rows)
        return written


class AllocationUpload(UploadPipeline):
    """Raw allocation events aggregated into AllocationSummary rows"""
    kind = 'allocations'

    def process(self, run, valid_rows):
        resolver = EntityResolver(HierarchyCache.build(), self.report_fields)
        resolved = self._resolve_or_reject(run, resolver, valid_rows)

        aggregator = AllocationAggregator(feed=self.feed)
        for row, resolution in resolved:
            aggregator.add(row, resolution)

        run.transition_to('writing')
        summaries = aggregator.build_summaries(run)
        written = replace_summaries(summaries, aggregator.min_date, aggregator.max_date, feed=self.feed)

        run.transition_to(
            'aggregating',
            rows_written=written['inserted'],
            start_date=aggregator.min_date,
            end_date=aggregator.max_date,
            months=aggregator.months,
            years=aggregator.years,
        )
        priced = aggregator.price()

        return {
            'total_records': aggregator.rows_added,
            'unique_combinations': len(aggregator.groups),
            'inserted': written['inserted'],
            'deleted': written['deleted'],
            'date_range': {
                'start': aggregator.min_date.isoformat(),
                'end': aggregator.max_date.isoformat(),
            },
            'months': aggregator.months,
            'years': aggregator.years,
            'grand_totals': {
                'total_count': priced['total_count'],
                'total_billing': priced['total_billing'],
            },
            'failed_records': written['failed_records'],
        }


class ResourceUpload(UploadPipeline):
    """Resources with the processes they work on; seeds assignments and billing rows"""
    kind = 'resources'

    def process(self, run, valid_rows):
        run.transition_to('resolving')
        cache = HierarchyCache.build()
        resolved = []
        skipped = []
        for row in valid_rows:
            projects = []
            missing = []
            for name in row['project_names']:
                found = cache.projects_named(name)
                if found:
                    projects.extend(found)
                else:
                    missing.append(name)
            if missing:
                skipped.append({
                    ROW_KEY: row.get(ROW_KEY),
                    **{field: row.get(field, '') for field in self.report_fields},
                    'errors': '; '.join(f'Process Type "{name}" not found' for name in missing),
                })
            else:
                resolved.append((row, projects))
        if skipped:
            raise ResolutionError(skipped, self.report_fields)

        run.transition_to('writing')
        now = timezone.now()
        request_types = [request_type.value for request_type in request_types_for(self.feed)]
        subprojects = {
            subproject.id: subproject
            for _, projects in resolved
            for project in projects
            for subproject in cache.subprojects_of(project)
        }
        rate_resolver = RateResolver.load(list(subprojects))
        batch_size = import_setting('RESOURCE_BATCH_SIZE')

        counts = {'created': 0, 'updated': 0, 'assignments': 0, 'billing_created': 0}
        failed_records = []
        for start in range(0, len(resolved), batch_size):
            for row, projects in resolved[start:start + batch_size]:
                try:
                    with transaction.atomic():
                        self._write_resource(row, projects, cache, request_types, now, rate_resolver, counts)
                except (DatabaseError, BillingError) as e:
                    logger.warning(f"Row {row.get(ROW_KEY)}: resource {row['email']} failed: {e}")
                    failed_records.append({
                        ROW_KEY: row.get(ROW_KEY),
                        'resource_name': row['resource_name'],
                        'email': row['email'],
                        'error': str(e),
                    })
            logger.info(f"  Resources {min(start + batch_size, len(resolved))}/{len(resolved)} processed")

        run.rows_written = counts['created'] + counts['updated']
        return {
            'total_records': len(valid_rows),
            **counts,
            'month': now.month,
            'year': now.year,
            'failed_records': failed_records,
        }

    def _write_resource(self, row, projects, cache, request_types, now, rate_resolver, counts):
        resource, created = Resource.objects.update_or_create(
            email=row['email'],
            defaults={'name': row['resource_name'], 'role': row.get('role', '')},
        )
        counts['created' if created else 'updated'] += 1

        for project in projects:
            for subproject in cache.subprojects_of(project):
                _, assigned = ResourceAssignment.objects.get_or_create(resource=resource, subproject=subproject)
                if assigned:
                    counts['assignments'] += 1
                counts['billing_created'] += seed_resource_billing(
                    resource, subproject, request_types, now.month, now.year, rate_resolver=rate_resolver
                )


PIPELINES = {
    'hierarchy': HierarchyUpload,
    'allocations': AllocationUpload,
    'resources': ResourceUpload,
}
