"""
Model tests: upload run states, generations, derived billing amounts and invoice immutability
"""
from decimal import Decimal

import pytest

from billing.exceptions import ImmutableInvoiceError, InvalidStateTransition
from billing.models import (
    Billing, Client, Geography, HierarchyGeneration, Invoice, Project, Resource, Subproject,
    SubprojectRequestType, UploadRun,
)

pytestmark = pytest.mark.django_db


def new_run(**fields):
    return UploadRun.objects.create(kind='hierarchy', file_name='hierarchy.csv', **fields)


class TestUploadRunStates:

    def test_forward_progression_and_rejection(self):
        run = new_run()
        run.transition_to('parsing')
        run.transition_to('validating', rows_read=10)

        assert run.can_transition('rejected')
        run.transition_to('rejected', error_message='2 row(s) failed validation')

        run.refresh_from_db()
        assert run.status == 'rejected'
        assert run.rows_read == 10
        assert run.is_terminal
        assert run.finished_at is not None

    def test_stages_may_be_skipped_but_not_reversed(self):
        run = new_run()
        run.transition_to('writing')

        with pytest.raises(InvalidStateTransition):
            run.transition_to('parsing')
        with pytest.raises(InvalidStateTransition):
            run.transition_to('writing')

    def test_rejection_only_from_validating_or_resolving(self):
        run = new_run()

        assert not run.can_transition('rejected')
        run.transition_to('writing')
        with pytest.raises(InvalidStateTransition):
            run.transition_to('rejected')

    def test_failed_from_any_open_state_and_nothing_after_terminal(self):
        run = new_run()
        run.transition_to('failed', error_message='boom')

        assert run.finished_at is not None
        with pytest.raises(InvalidStateTransition):
            run.transition_to('completed')
        with pytest.raises(InvalidStateTransition):
            run.transition_to('failed')


class TestHierarchy:

    def test_ensure_active_creates_first_generation_once(self):
        first = HierarchyGeneration.ensure_active()
        second = HierarchyGeneration.ensure_active()

        assert first.pk == second.pk
        assert first.version == 1
        assert first.status == 'active'
        assert HierarchyGeneration.next_version() == 2

    def test_active_queryset_hides_other_generations(self, make_subproject):
        make_subproject(subproject='Live')
        staging = HierarchyGeneration.objects.create(version=2, status='staging')
        geography = Geography.objects.create(generation=staging, name='US')
        client = Client.objects.create(geography=geography, name='Acme')
        project = Project.objects.create(client=client, geography=geography, name='Intake')
        Subproject.objects.create(project=project, client=client, geography=geography, name='Staged')

        assert list(Subproject.objects.active().values_list('name', flat=True)) == ['Live']
        assert Subproject.objects.count() == 2

    def test_deleting_a_geography_cascades(self, make_subproject):
        subproject = make_subproject(rates={'Key': '2.5'})

        Geography.objects.filter(pk=subproject.geography_id).delete()

        assert Client.objects.count() == 0
        assert Project.objects.count() == 0
        assert Subproject.objects.count() == 0
        assert SubprojectRequestType.objects.count() == 0


def test_billing_amounts_are_derived_from_hours(make_subproject):
    subproject = make_subproject()
    resource = Resource.objects.create(name='Jane Doe', email='jane@example.com')

    billing = Billing.objects.create(
        resource=resource,
        subproject=subproject,
        project=subproject.project,
        client=subproject.client,
        geography=subproject.geography,
        request_type='Key',
        month=3,
        year=2025,
        hours=Decimal('7.5'),
        rate=Decimal('10'),
        flatrate=Decimal('12'),
        costing=Decimal('999'),
    )

    assert billing.costing == Decimal('75.00')
    assert billing.total_amount == Decimal('90.00')


def test_saved_invoice_cannot_change():
    invoice = Invoice.objects.create(invoice_number='INV-20250301-001-ABCDEF', month=3, year=2025)

    invoice.record_count = 5
    with pytest.raises(ImmutableInvoiceError):
        invoice.save()

    invoice.refresh_from_db()
    assert invoice.record_count == 0
