"""
Tests for the bulk_upload management command
"""
import io

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from billing.models import Subproject, UploadRun

pytestmark = pytest.mark.django_db

HEADER = 'Geography,Client,Process Type,Location,Request Type,Rate,Flat Rate\n'


def test_hierarchy_file(tmp_path):
    path = tmp_path / 'hierarchy.csv'
    path.write_text(HEADER + 'US,Acme,Intake,SiteA,Key,2.5,0\nUS,Acme,Intake,SiteB,Key,3,0\n')
    out = io.StringIO()

    call_command('bulk_upload', 'hierarchy', str(path), '--mode', 'incremental', stdout=out)

    assert 'completed' in out.getvalue()
    assert Subproject.objects.count() == 2
    assert UploadRun.objects.get().uploaded_by == 'manage.py'


def test_rejected_file_prints_error_rows(tmp_path):
    path = tmp_path / 'hierarchy.csv'
    path.write_text(HEADER + 'US,Acme,Intake,SiteA,Key,abc,0\n')
    out = io.StringIO()

    with pytest.raises(CommandError):
        call_command('bulk_upload', 'hierarchy', str(path), stdout=out)

    assert 'Rate must be a number' in out.getvalue()
    assert Subproject.objects.count() == 0


def test_missing_file_and_dry_run_on_allocations(tmp_path):
    with pytest.raises(CommandError):
        call_command('bulk_upload', 'hierarchy', str(tmp_path / 'missing.csv'))

    path = tmp_path / 'allocations.csv'
    path.write_text('Date,Resource Name\n03/03/2025,Jane\n')
    with pytest.raises(CommandError):
        call_command('bulk_upload', 'allocations', str(path), '--dry-run')
