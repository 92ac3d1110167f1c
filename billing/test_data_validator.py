"""
Tests for row-level upload validation
"""
from datetime import date
from decimal import Decimal

import pytest

from billing.data_validator import DataValidator, parse_date, parse_decimal, placeholder_email
from billing.parsers import ROW_KEY
from billing.vocabulary import Feed


def hierarchy_row(line, geography='US', client='Acme', project='Intake', subproject='SiteA',
                  request_type='Key', rate='2.50', flatrate=''):
    return {
        ROW_KEY: line,
        'geography': geography,
        'client_name': client,
        'project_name': project,
        'subproject_name': subproject,
        'request_type': request_type,
        'rate': rate,
        'flatrate': flatrate,
    }


def allocation_row(line, allocation_date='03/15/2025', resource='Jane Doe', request_type='Key'):
    return {
        ROW_KEY: line,
        'allocation_date': allocation_date,
        'resource_name': resource,
        'request_type': request_type,
        'geography': 'US',
        'client_name': '',
        'project_name': 'Intake',
        'subproject_name': 'SiteA',
    }


def test_valid_hierarchy_row_is_cleaned():
    result = DataValidator('hierarchy').validate([hierarchy_row(2, request_type='key')])

    assert result['passed']
    assert result['rows_checked'] == 1
    row = result['valid_rows'][0]
    assert row['request_type'] == 'Key'
    assert row['rate'] == Decimal('2.50')
    assert row['flatrate'] == Decimal('0')
    assert row[ROW_KEY] == 2


def test_duplicate_hierarchy_key_is_reported_on_the_second_row():
    result = DataValidator('hierarchy').validate([
        hierarchy_row(2),
        hierarchy_row(3, client='acme', request_type='KEY', rate='3.0'),
    ])

    assert not result['passed']
    assert len(result['errors']) == 1
    error = result['errors'][0]
    assert error[ROW_KEY] == 3
    assert error['errors'] == 'Duplicate entry in file'
    assert error['client_name'] == 'acme'


def test_separator_spellings_are_duplicates():
    result = DataValidator('hierarchy').validate([
        hierarchy_row(2, subproject='SiteA', rate='2.5'),
        hierarchy_row(3, subproject='Site A', rate='3.0'),
    ])

    assert [row[ROW_KEY] for row in result['errors']] == [3]
    assert result['errors'][0]['errors'] == 'Duplicate entry in file'


def test_hierarchy_messages_are_collected_per_row():
    result = DataValidator('hierarchy').validate([
        hierarchy_row(2, geography='', request_type='Bogus', rate='abc', flatrate='-5'),
    ])

    messages = result['errors'][0]['errors'].split('; ')
    assert 'Geography required' in messages
    assert 'Rate must be a number' in messages
    assert 'Flat Rate cannot be negative' in messages
    assert 'Invalid Request Type. Allowed: New Request, Key, Duplicate' in messages
    assert result['valid_rows'] == []


def test_mro_vocabularies():
    validator = DataValidator('hierarchy', Feed.MRO)

    result = validator.validate([
        hierarchy_row(2, project='processing', request_type='batch'),
        hierarchy_row(3, project='Intake', request_type='Key'),
    ])

    assert result['valid_rows'][0]['project_name'] == 'Processing'
    assert result['valid_rows'][0]['request_type'] == 'Batch'
    messages = result['errors'][0]['errors']
    assert 'Invalid Process Type "Intake"' in messages
    assert 'Invalid Request Type' in messages


def test_batch_is_not_a_verisma_request_type():
    result = DataValidator('hierarchy', Feed.VERISMA).validate([hierarchy_row(2, request_type='Batch')])

    assert not result['passed']


def test_allocation_dates():
    result = DataValidator('allocations').validate([
        allocation_row(2, '03/15/2025'),
        allocation_row(3, '2025-03-16'),
        allocation_row(4, '15.03.2025'),
        allocation_row(5, '2025-03-17', resource=''),
    ])

    assert [row['allocation_date'] for row in result['valid_rows']] == [date(2025, 3, 15), date(2025, 3, 16)]
    errors = {row[ROW_KEY]: row['errors'] for row in result['errors']}
    assert errors[4] == 'Invalid date format. Use MM/DD/YYYY or YYYY-MM-DD'
    assert errors[5] == 'Resource Name required'


def test_resource_rows_get_placeholder_emails():
    result = DataValidator('resources').validate([
        {ROW_KEY: 2, 'resource_name': 'Jane Q. Doe', 'email': '', 'role': 'Analyst',
         'project_names': 'Intake, Review'},
    ])

    row = result['valid_rows'][0]
    assert row['email'] == 'jane.q.doe@placeholder.com'
    assert row['project_names'] == ['Intake', 'Review']
    assert row['role'] == 'Analyst'


def test_resource_email_checks():
    result = DataValidator('resources').validate([
        {ROW_KEY: 2, 'resource_name': 'Jane', 'email': 'Jane@Example.com', 'role': '', 'project_names': 'Intake'},
        {ROW_KEY: 3, 'resource_name': 'Jane', 'email': 'jane@example.com', 'role': '', 'project_names': 'Intake'},
        {ROW_KEY: 4, 'resource_name': 'Bob', 'email': 'not-an-email', 'role': '', 'project_names': 'Intake'},
    ])

    errors = {row[ROW_KEY]: row['errors'] for row in result['errors']}
    assert errors[3] == 'Duplicate email in file'
    assert errors[4] == 'Invalid email "not-an-email"'
    assert result['valid_rows'][0]['email'] == 'jane@example.com'


def test_unknown_kind():
    with pytest.raises(ValueError):
        DataValidator('timesheets')


@pytest.mark.parametrize('text, expected', [
    ('', Decimal('0')),
    ('2.5', Decimal('2.5')),
    ('$1,234.50', Decimal('1234.50')),
    ('abc', None),
    ('NaN', None),
    ('inf', None),
])
def test_parse_decimal(text, expected):
    assert parse_decimal(text) == expected


def test_parse_date_formats():
    assert parse_date('2025-03-01 00:00:00') == date(2025, 3, 1)
    assert parse_date('3/1/25') == date(2025, 3, 1)
    assert parse_date('') is None


def test_placeholder_email_strips_punctuation():
    assert placeholder_email("Mary-Ann O'Neil") == 'maryann.oneil@placeholder.com'
