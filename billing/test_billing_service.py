"""
Tests for billing upserts, bulk edits, period totals, invoices and rename propagation
"""
import re
from decimal import Decimal

import pytest

from billing.billing_service import (
    billing_totals, bulk_update_billing, seed_resource_billing, upsert_billing,
)
from billing.exceptions import BillingError, ImmutableInvoiceError
from billing.invoice_service import generate_invoice
from billing.models import AllocationSummary, Billing, Project, Resource, Subproject, SubprojectProductivity
from billing.signals import rename_entity

pytestmark = pytest.mark.django_db

INVOICE_NUMBER = re.compile(r'^INV-\d{8}-\d{3}-[0-9A-F]{6}$')


@pytest.fixture
def subproject(make_subproject):
    return make_subproject(flatrate='12', rates={'Key': '2.5'})


@pytest.fixture
def resource():
    return Resource.objects.create(name='Jane Doe', email='jane@example.com', role='Analyst')


class TestUpsert:

    def test_same_key_updates_one_record(self, resource, subproject):
        first, created = upsert_billing(resource, subproject, 'key', 3, 2025, hours='7.5', rate='10')
        second, created_again = upsert_billing(resource, subproject, 'Key', '3', '2025', hours='8')

        assert created
        assert not created_again
        assert first.pk == second.pk
        assert Billing.objects.count() == 1
        second.refresh_from_db()
        assert second.hours == Decimal('8')
        assert second.rate == Decimal('10')
        assert second.costing == Decimal('80.00')
        assert second.total_amount == Decimal('96.00')

    def test_hierarchy_fields_come_from_the_subproject(self, resource, subproject):
        billing, _ = upsert_billing(resource, subproject, 'Key', 3, 2025, hours=1)

        assert billing.project_id == subproject.project_id
        assert billing.geography_id == subproject.geography_id
        assert billing.subproject_name == 'SiteA'
        assert billing.client_name == 'Acme'
        assert billing.flatrate == Decimal('12')

    def test_productivity_level_sets_the_rate(self, resource, subproject):
        SubprojectProductivity.objects.create(subproject=subproject, level='high', base_rate=Decimal('40'))

        billing, _ = upsert_billing(resource, subproject, 'Key', 3, 2025, hours=2, productivity_level='High')
        assert billing.productivity_level == 'high'
        assert billing.rate == Decimal('40')
        assert billing.costing == Decimal('80.00')

        billing, _ = upsert_billing(resource, subproject, 'Key', 3, 2025, productivity_level='high', rate='15')
        assert billing.rate == Decimal('15')

    @pytest.mark.parametrize('kwargs', [
        {'request_type': 'Overtime'},
        {'month': 13},
        {'year': 'next'},
        {'hours': '-1'},
        {'hours': 'lots'},
        {'productivity_level': 'heroic'},
        {'billable_status': 'maybe'},
    ])
    def test_invalid_input(self, resource, subproject, kwargs):
        arguments = {'request_type': 'Key', 'month': 3, 'year': 2025, 'hours': 1, **kwargs}

        with pytest.raises(BillingError):
            upsert_billing(resource, subproject, **arguments)
        assert Billing.objects.count() == 0

    def test_seeding_never_overwrites(self, resource, subproject):
        SubprojectProductivity.objects.create(project=subproject.project, level='medium', base_rate=Decimal('30'))
        upsert_billing(resource, subproject, 'Key', 3, 2025, hours=6, rate='50')

        created = seed_resource_billing(resource, subproject, ['New Request', 'Key', 'Duplicate'], 3, 2025)

        assert created == 2
        key = Billing.objects.get(request_type='Key')
        assert key.hours == Decimal('6')
        assert key.rate == Decimal('50')
        duplicate = Billing.objects.get(request_type='Duplicate')
        assert duplicate.rate == Decimal('30')
        assert duplicate.hours == Decimal('0')
        assert seed_resource_billing(resource, subproject, ['Key', 'Duplicate'], 3, 2025) == 0


def test_bulk_update_reports_each_failure(resource, subproject):
    billing, _ = upsert_billing(resource, subproject, 'Key', 3, 2025, hours=1)

    result = bulk_update_billing([
        {'id': billing.id, 'hours': '8'},
        {'id': 999999, 'hours': 1},
        {'resource_id': resource.id, 'subproject_id': subproject.id, 'request_type': 'Duplicate',
         'month': 3, 'year': 2025, 'hours': 2},
        {'resource_id': resource.id, 'request_type': 'Key'},
    ])

    assert len(result['updated']) == 2
    assert [failure['index'] for failure in result['failed_records']] == [1, 3]
    assert 'not found' in result['failed_records'][0]['error']
    assert 'missing' in result['failed_records'][1]['error']
    billing.refresh_from_db()
    assert billing.hours == Decimal('8')


def test_period_totals(resource, subproject):
    upsert_billing(resource, subproject, 'Key', 3, 2025, hours=10, rate='5')
    upsert_billing(resource, subproject, 'Duplicate', 3, 2025, hours=2, rate='5', billable_status='Non-Billable')
    upsert_billing(resource, subproject, 'Key', 4, 2025, hours=100, rate='5')

    totals = billing_totals(3, 2025)

    assert totals['revenue'] == Decimal('120')
    assert totals['cost'] == Decimal('60')
    assert totals['profit'] == Decimal('60')
    assert totals['total_hours'] == Decimal('12')
    assert totals['billable_hours'] == Decimal('10')
    assert totals['record_count'] == 2
    assert totals['billable_count'] == 1
    assert totals['non_billable_count'] == 1


class TestInvoices:

    def test_invoice_snapshots_records_with_hours(self, resource, subproject):
        upsert_billing(resource, subproject, 'Key', 3, 2025, hours=10, rate='5')
        upsert_billing(resource, subproject, 'Duplicate', 3, 2025, hours=2, billable_status='Non-Billable')
        upsert_billing(resource, subproject, 'New Request', 3, 2025, hours=0)

        invoice = generate_invoice(3, 2025, generated_by='finance')

        assert INVOICE_NUMBER.match(invoice.invoice_number)
        assert invoice.record_count == 2
        assert invoice.billable_hours == Decimal('10')
        assert invoice.non_billable_hours == Decimal('2')
        assert invoice.billable_amount == Decimal('120')
        assert invoice.non_billable_amount == Decimal('24')
        assert invoice.total_billing == Decimal('120')
        assert invoice.total_costing == Decimal('50')
        assert {record['request_type'] for record in invoice.records} == {'Key', 'Duplicate'}
        assert invoice.records[0]['resource_email'] == 'jane@example.com'

    def test_invoice_numbers_count_up_within_the_month(self, resource, subproject):
        upsert_billing(resource, subproject, 'Key', 3, 2025, hours=1)

        first = generate_invoice(3, 2025)
        second = generate_invoice(3, 2025)

        assert first.invoice_number.split('-')[2] == '001'
        assert second.invoice_number.split('-')[2] == '002'

    def test_period_without_hours_is_refused(self, resource, subproject):
        upsert_billing(resource, subproject, 'Key', 3, 2025, hours=0)

        with pytest.raises(BillingError):
            generate_invoice(3, 2025)

    def test_invoice_is_frozen(self, resource, subproject):
        upsert_billing(resource, subproject, 'Key', 3, 2025, hours=1, rate='5')
        invoice = generate_invoice(3, 2025)

        upsert_billing(resource, subproject, 'Key', 3, 2025, hours=50)
        invoice.refresh_from_db()
        assert Decimal(invoice.records[0]['hours']) == Decimal('1')

        invoice.generated_by = 'someone else'
        with pytest.raises(ImmutableInvoiceError):
            invoice.save()


class TestRename:

    def test_client_rename_reaches_every_copy(self, resource, subproject):
        upsert_billing(resource, subproject, 'Key', 3, 2025, hours=1)
        AllocationSummary.objects.create(
            geography=subproject.geography, client=subproject.client, project=subproject.project,
            subproject=subproject, geography_name='US', client_name='Acme', project_name='Intake',
            subproject_name='SiteA', request_type='Key', allocation_date='2025-03-03', day=3, month=3,
            year=2025, count=1,
        )

        updated = rename_entity(subproject.client, 'Acme Corp')

        assert updated == {'Project': 1, 'Subproject': 1, 'AllocationSummary': 1, 'Billing': 1}
        assert Project.objects.get().client_name == 'Acme Corp'
        assert Subproject.objects.get().client_name == 'Acme Corp'
        assert AllocationSummary.objects.get().client_name == 'Acme Corp'
        assert Billing.objects.get().client_name == 'Acme Corp'

    def test_unchanged_name_is_a_no_op(self, subproject):
        assert rename_entity(subproject, 'SiteA') == {}

    def test_rename_rejects_other_models_and_blank_names(self, resource, subproject):
        with pytest.raises(TypeError):
            rename_entity(resource, 'New name')
        with pytest.raises(ValueError):
            rename_entity(subproject, '  ')
