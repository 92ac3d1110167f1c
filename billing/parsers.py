"""
Tabular file parsers for hierarchy, allocation and resource uploads
Maps loosely named spreadsheet headers onto canonical field names and streams rows
"""
import logging
import os
from collections import namedtuple

import pandas as pd

from billing.conf import import_setting
from billing.exceptions import UnsupportedFileError

logger = logging.getLogger(__name__)

ROW_KEY = '__row'

# A header maps to `canonical` when it equals one of `equals` or contains one of `contains`
HeaderRule = namedtuple('HeaderRule', ['canonical', 'contains', 'equals'])


def rule(canonical, contains=(), equals=()):
    return HeaderRule(canonical, tuple(contains), tuple(equals))


# Rules are tried in order, so more specific headers come first
HIERARCHY_HEADERS = [
    rule('geography', contains=['geography', 'region']),
    rule('client_name', contains=['client']),
    rule('subproject_name', contains=['location', 'subproject']),
    rule('project_name', contains=['process type', 'project']),
    rule('request_type', contains=['request type']),
    rule('flatrate', contains=['flat rate', 'flatrate']),
    rule('rate', contains=['costing rate'], equals=['rate']),
]

ALLOCATION_HEADERS = [
    rule('allocation_date', contains=['date']),
    rule('request_type', contains=['request type']),
    rule('geography', contains=['geography', 'region']),
    rule('client_name', contains=['client']),
    rule('subproject_name', contains=['location', 'subproject']),
    rule('project_name', contains=['process type', 'project']),
    rule('resource_name', contains=['name', 'resource']),
]

RESOURCE_HEADERS = [
    rule('email', contains=['email', 'e-mail']),
    rule('role', contains=['role']),
    rule('project_names', contains=['process type', 'project']),
    rule('resource_name', contains=['resource name', 'resource'], equals=['name']),
]

FEED_HEADERS = {
    'hierarchy': HIERARCHY_HEADERS,
    'allocations': ALLOCATION_HEADERS,
    'resources': RESOURCE_HEADERS,
}


def map_headers(headers, rules):
    """
    Map source headers to canonical field names

    Matching is case-insensitive on the trimmed header. Each canonical field is claimed by
    the first header that matches it; unmatched headers keep their original name.

    Returns:
        dict: {original header: canonical or original name}
    """
    mapping = {}
    claimed = set()

    for header in headers:
        clean = str(header).strip().lower()
        target = str(header).strip()
        for header_rule in rules:
            if header_rule.canonical in claimed:
                continue
            if clean in header_rule.equals or any(token in clean for token in header_rule.contains):
                target = header_rule.canonical
                claimed.add(header_rule.canonical)
                break
        mapping[header] = target

    return mapping


def clean_value(value):
    """Trim a cell to text; missing cells become ''"""
    if value is None:
        return ''
    if isinstance(value, float) and pd.isna(value):
        return ''
    return str(value).strip()


class RowParser:
    """
    Stream rows out of a CSV or Excel upload

    Usage:
        parser = RowParser(ALLOCATION_HEADERS)
        for row in parser.iter_rows(uploaded_file, uploaded_file.name):
            ...

    Each row is a dict of canonical field -> trimmed text plus `__row`, the line number in the
    source file (header is line 1). Rows where every cell is blank are dropped.
    """

    CSV_EXTENSIONS = ('.csv', '.txt')
    EXCEL_EXTENSIONS = ('.xlsx', '.xls')

    def __init__(self, rules, chunk_size=None):
        self.rules = rules
        self.chunk_size = chunk_size or import_setting('CSV_CHUNK_SIZE')
        self.header_map = {}
        self.rows_read = 0
        self.blank_rows = 0

    @property
    def fields(self):
        """Canonical fields present in the file, in rule order"""
        present = set(self.header_map.values())
        return [header_rule.canonical for header_rule in self.rules if header_rule.canonical in present]

    def iter_rows(self, source, file_name=None):
        file_name = file_name or getattr(source, 'name', '') or str(source)
        extension = os.path.splitext(str(file_name).lower())[1]

        if extension in self.CSV_EXTENSIONS:
            frames = self._read_csv(source)
        elif extension in self.EXCEL_EXTENSIONS:
            frames = self._read_excel(source)
        else:
            raise UnsupportedFileError(
                f'Unsupported file type "{extension or file_name}". Upload a CSV or Excel file.'
            )

        line = 1
        for frame in frames:
            if not self.header_map:
                self.header_map = map_headers(list(frame.columns), self.rules)
                logger.debug('Header mapping: %s', self.header_map)

            for values in frame.itertuples(index=False, name=None):
                line += 1
                row = {
                    self.header_map[column]: clean_value(value)
                    for column, value in zip(frame.columns, values)
                }
                if not any(row.values()):
                    self.blank_rows += 1
                    continue

                self.rows_read += 1
                row[ROW_KEY] = line
                yield row

        logger.info(f"Read {self.rows_read} rows from {file_name} ({self.blank_rows} blank rows skipped)")

    def _read_csv(self, source):
        try:
            reader = pd.read_csv(
                source,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=False,
                encoding='utf-8-sig',
                chunksize=self.chunk_size,
            )
            for chunk in reader:
                yield chunk
        except pd.errors.EmptyDataError:
            return
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise UnsupportedFileError(f'Could not read CSV file: {e}')

    def _read_excel(self, source):
        try:
            frame = pd.read_excel(source, dtype=str, keep_default_na=False)
        except (ValueError, OSError) as e:
            raise UnsupportedFileError(f'Could not read Excel file: {e}')
        yield frame
