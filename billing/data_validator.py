"""
Row validation for bulk uploads
Checks required fields, numbers, vocabularies, dates and in-file duplicates before anything is written
"""
import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from billing.conf import import_setting
from billing.hierarchy_cache import compact_key
from billing.parsers import ROW_KEY
from billing.vocabulary import (
    Feed, match_process_type, match_request_type, request_types_for,
)

logger = logging.getLogger(__name__)

DATE_FORMATS = [
    '%m/%d/%Y',
    '%Y-%m-%d',
    '%m-%d-%Y',
    '%Y/%m/%d',
    '%Y-%m-%d %H:%M:%S',
    '%m/%d/%y',
]

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Field label used in "<label> required" messages, in check order
REQUIRED_FIELDS = {
    'hierarchy': [
        ('geography', 'Geography'),
        ('client_name', 'Client'),
        ('project_name', 'Process Type'),
        ('subproject_name', 'Location'),
        ('request_type', 'Request Type'),
    ],
    'allocations': [
        ('allocation_date', 'Allocation Date'),
        ('resource_name', 'Resource Name'),
        ('request_type', 'Request Type'),
        ('subproject_name', 'Location'),
        ('project_name', 'Process Type'),
        ('geography', 'Geography'),
    ],
    'resources': [
        ('resource_name', 'Resource Name'),
        ('project_names', 'Process Type'),
    ],
}

# Canonical columns written to the error report for each upload kind
REPORT_FIELDS = {
    'hierarchy': ['geography', 'client_name', 'project_name', 'subproject_name', 'request_type', 'rate', 'flatrate'],
    'allocations': ['allocation_date', 'resource_name', 'request_type', 'geography', 'client_name',
                    'project_name', 'subproject_name'],
    'resources': ['resource_name', 'email', 'role', 'project_names'],
}


def parse_decimal(value):
    """
    Parse a money/number cell

    Returns:
        Decimal, Decimal('0') for a blank cell, or None when the text is not a finite number
    """
    text = str(value if value is not None else '').strip().replace(',', '').lstrip('$')
    if not text:
        return Decimal('0')
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return number


def parse_date(value):
    text = str(value or '').strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def placeholder_email(name):
    """first.last@<placeholder domain> built from a resource name"""
    tokens = [re.sub(r'[^a-z0-9]', '', part) for part in name.lower().split()]
    local = '.'.join(token for token in tokens if token) or 'resource'
    return f"{local}@{import_setting('PLACEHOLDER_EMAIL_DOMAIN')}"


def split_names(value):
    return [part.strip() for part in str(value or '').split(',') if part.strip()]


class DataValidator:
    """
    Validate parsed upload rows for one upload kind and feed

    Usage:
        result = DataValidator('hierarchy', Feed.VERISMA).validate(rows)
        if not result['passed']:
            ...result['errors']...
    """

    def __init__(self, kind, feed=Feed.VERISMA):
        if kind not in REQUIRED_FIELDS:
            raise ValueError(f'Unknown upload kind: {kind}')
        self.kind = kind
        self.feed = Feed(feed)
        self._seen_keys = set()

    @property
    def report_fields(self):
        return REPORT_FIELDS[self.kind]

    def validate(self, rows):
        """
        Validate every row

        Returns:
            dict:
            {
                'passed': bool,
                'valid_rows': list of cleaned row dicts,
                'errors': list of row dicts with an 'errors' message string,
                'rows_checked': int
            }
        """
        valid_rows = []
        errors = []
        checked = 0

        for row in rows:
            checked += 1
            cleaned, messages = self.validate_row(row)
            if messages:
                error_row = {ROW_KEY: row.get(ROW_KEY)}
                for field in self.report_fields:
                    error_row[field] = row.get(field, '')
                error_row['errors'] = '; '.join(messages)
                errors.append(error_row)
            else:
                valid_rows.append(cleaned)

        if errors:
            logger.warning(f"{self.kind} upload: {len(errors)} of {checked} rows failed validation")
        else:
            logger.info(f"{self.kind} upload: {checked} rows validated")

        return {
            'passed': not errors,
            'valid_rows': valid_rows,
            'errors': errors,
            'rows_checked': checked,
        }

    def validate_row(self, row):
        """Return (cleaned row, list of messages) for one parsed row"""
        messages = []
        cleaned = {ROW_KEY: row.get(ROW_KEY)}

        # 1. Required fields
        for field, label in REQUIRED_FIELDS[self.kind]:
            value = row.get(field, '')
            cleaned[field] = value
            if not value:
                messages.append(f'{label} required')

        handler = getattr(self, f'_validate_{self.kind}')
        handler(row, cleaned, messages)
        return cleaned, messages

    def _check_request_type(self, row, cleaned, messages):
        raw = row.get('request_type', '')
        matched = match_request_type(raw, self.feed)
        if matched is not None:
            cleaned['request_type'] = matched
        elif raw:
            allowed = ', '.join(choice.value for choice in request_types_for(self.feed))
            messages.append(f'Invalid Request Type. Allowed: {allowed}')

    def _check_process_type(self, row, cleaned, messages):
        # Only feeds with a closed process type vocabulary are checked
        raw = row.get('project_name', '')
        if self.feed != Feed.MRO or not raw:
            return
        matched = match_process_type(raw, self.feed)
        if matched is None:
            messages.append(f'Invalid Process Type "{raw}"')
        else:
            cleaned['project_name'] = matched.value

    def _validate_hierarchy(self, row, cleaned, messages):
        # 2. Numbers
        for field, label in (('rate', 'Rate'), ('flatrate', 'Flat Rate')):
            number = parse_decimal(row.get(field, ''))
            if number is None:
                messages.append(f'{label} must be a number')
            elif number < 0:
                messages.append(f'{label} cannot be negative')
            cleaned[field] = number

        # 3. Vocabularies
        self._check_request_type(row, cleaned, messages)
        self._check_process_type(row, cleaned, messages)

        # 4. Duplicate key within the file
        key = '|'.join(
            compact_key(str(cleaned.get(field) or ''))
            for field in ('geography', 'client_name', 'project_name', 'subproject_name', 'request_type')
        )
        if key in self._seen_keys:
            messages.append('Duplicate entry in file')
        else:
            self._seen_keys.add(key)

    def _validate_allocations(self, row, cleaned, messages):
        cleaned['client_name'] = row.get('client_name', '')

        self._check_request_type(row, cleaned, messages)
        self._check_process_type(row, cleaned, messages)

        raw_date = row.get('allocation_date', '')
        if raw_date:
            parsed = parse_date(raw_date)
            if parsed is None:
                messages.append('Invalid date format. Use MM/DD/YYYY or YYYY-MM-DD')
            cleaned['allocation_date'] = parsed

    def _validate_resources(self, row, cleaned, messages):
        cleaned['role'] = row.get('role', '')
        cleaned['project_names'] = split_names(row.get('project_names', ''))
        if row.get('project_names') and not cleaned['project_names']:
            messages.append('Process Type required')

        email = row.get('email', '').lower()
        if email and not EMAIL_PATTERN.match(email):
            messages.append(f'Invalid email "{email}"')
        if not email and cleaned.get('resource_name'):
            email = placeholder_email(cleaned['resource_name'])
        cleaned['email'] = email

        if email:
            if email in self._seen_keys:
                messages.append('Duplicate email in file')
            else:
                self._seen_keys.add(email)
