"""
Shared pytest fixtures: hierarchy builders and CSV upload helpers
"""
import csv
import io
from decimal import Decimal

import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from rest_framework.test import APIClient

from billing.models import (
    Client, Geography, HierarchyGeneration, Project, Subproject, SubprojectRequestType,
)


def csv_bytes(header, rows):
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue().encode('utf-8')


@pytest.fixture
def csv_upload():
    """Build an uploaded CSV file: csv_upload('file.csv', header, rows)"""
    def build(name, header, rows):
        return SimpleUploadedFile(name, csv_bytes(header, rows), content_type='text/csv')
    return build


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def make_subproject(db):
    """
    Create (or reuse) a Geography -> Client -> Project -> Subproject chain in the active
    generation, with optional request type rates
    """
    def build(geography='US', client='Acme', project='Intake', subproject='SiteA', rates=None,
              flatrate='0'):
        generation = HierarchyGeneration.ensure_active()
        geo, _ = Geography.objects.get_or_create(generation=generation, name=geography)
        cli, _ = Client.objects.get_or_create(
            geography=geo, name=client, defaults={'geography_name': geo.name}
        )
        proj, _ = Project.objects.get_or_create(
            client=cli, name=project,
            defaults={'geography': geo, 'client_name': cli.name, 'geography_name': geo.name},
        )
        sub, _ = Subproject.objects.get_or_create(
            project=proj, name=subproject,
            defaults={
                'client': cli,
                'geography': geo,
                'project_name': proj.name,
                'client_name': cli.name,
                'geography_name': geo.name,
                'flatrate': Decimal(flatrate),
            },
        )
        for name, rate in (rates or {}).items():
            SubprojectRequestType.objects.update_or_create(
                subproject=sub, name=name, defaults={'rate': Decimal(str(rate))}
            )
        return sub
    return build
