"""
Downloadable CSV error reports for rejected uploads
"""
import csv

from django.http import HttpResponse

from billing.parsers import ROW_KEY


def error_report_columns(fields):
    return [ROW_KEY] + list(fields) + ['errors']


def write_error_rows(stream, fields, rows):
    writer = csv.DictWriter(stream, fieldnames=error_report_columns(fields), extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow({column: _cell(row.get(column, '')) for column in writer.fieldnames})


def error_report_response(kind, fields, rows):
    """400 text/csv attachment named <kind>-upload-errors.csv"""
    response = HttpResponse(content_type='text/csv', status=400)
    response['Content-Disposition'] = f'attachment; filename={kind}-upload-errors.csv'
    write_error_rows(response, fields, rows)
    return response


def _cell(value):
    if value is None:
        return ''
    if isinstance(value, (list, tuple)):
        return ', '.join(str(item) for item in value)
    return value
