"""
Django management command to run a bulk upload from a file on disk.

Usage:
    python manage.py bulk_upload <kind> <path> [--mode replace|incremental] [--feed verisma|mro] [--dry-run]

Example:
    python manage.py bulk_upload hierarchy data/hierarchy.csv --mode incremental
    python manage.py bulk_upload allocations data/allocations_march.xlsx
"""
import json
import os

from django.core.management.base import BaseCommand, CommandError
from django.core.serializers.json import DjangoJSONEncoder

from billing.error_report import error_report_columns
from billing.exceptions import ImportErrorBase, ResolutionError, ShapeValidationError
from billing.pipeline import PIPELINES
from billing.vocabulary import Feed


class Command(BaseCommand):
    help = 'Run a hierarchy, allocation or resource bulk upload from a CSV or Excel file'

    def add_arguments(self, parser):
        parser.add_argument(
            'kind',
            choices=sorted(PIPELINES),
            help='What the file contains'
        )
        parser.add_argument(
            'path',
            type=str,
            help='Path to the CSV or Excel file'
        )
        parser.add_argument(
            '--mode',
            choices=['replace', 'incremental'],
            default='replace',
            help='Hierarchy uploads only: rebuild everything or upsert (default: replace)'
        )
        parser.add_argument(
            '--feed',
            choices=[feed.value for feed in Feed],
            default=Feed.VERISMA.value,
            help='Request type vocabulary of the file (default: verisma)'
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Hierarchy uploads only: print the plan without writing'
        )

    def handle(self, *args, **options):
        kind = options['kind']
        path = options['path']

        if not os.path.isfile(path):
            raise CommandError(f'File does not exist: {path}')

        pipeline_options = {'feed': options['feed'], 'uploaded_by': 'manage.py'}
        if kind == 'hierarchy':
            pipeline_options.update(mode=options['mode'], dry_run=options['dry_run'])
        elif options['dry_run']:
            raise CommandError('--dry-run is only supported for hierarchy uploads')

        self.stdout.write(f'Uploading {kind} file {path}...')
        with open(path, 'rb') as source:
            pipeline = PIPELINES[kind](source, os.path.basename(path), **pipeline_options)
            try:
                result = pipeline.run()
            except (ShapeValidationError, ResolutionError) as e:
                self._write_error_rows(e)
                raise CommandError(e.message)
            except ImportErrorBase as e:
                raise CommandError(e.message)

        self.stdout.write(json.dumps(result['summary'], indent=2, cls=DjangoJSONEncoder))

        failed = result['failed_records']
        if failed:
            self.stdout.write(self.style.WARNING(f'{len(failed)} record(s) failed to write'))
        else:
            self.stdout.write(self.style.SUCCESS(f'Upload {result["upload_id"]} completed'))

    def _write_error_rows(self, error):
        columns = error_report_columns(error.fields)
        self.stdout.write(self.style.ERROR(' | '.join(columns)))
        for row in error.rows:
            self.stdout.write(' | '.join(str(row.get(column, '')) for column in columns))
