"""
Exceptions raised by the import pipelines and billing services
"""


class ImportErrorBase(Exception):
    """Base class for upload pipeline failures"""

    def __init__(self, message, rows=None):
        super().__init__(message)
        self.message = message
        self.rows = rows or []


class ShapeValidationError(ImportErrorBase):
    """One or more rows failed field-level validation; nothing was written"""

    def __init__(self, rows, fields=None):
        super().__init__(f'{len(rows)} row(s) failed validation', rows)
        self.fields = fields or []


class ResolutionError(ImportErrorBase):
    """One or more rows reference hierarchy entities that could not be found"""

    def __init__(self, rows, fields=None):
        super().__init__(f'{len(rows)} row(s) could not be resolved', rows)
        self.fields = fields or []


class EmptyUploadError(ImportErrorBase):
    """The uploaded file contained no data rows"""


class UnsupportedFileError(ImportErrorBase):
    """The uploaded file could not be read as CSV or Excel"""


class InvalidStateTransition(Exception):
    """An upload run was moved to a status it cannot reach from its current one"""

    def __init__(self, current, target):
        super().__init__(f'Cannot move upload from {current} to {target}')
        self.current = current
        self.target = target


class ImmutableInvoiceError(Exception):
    """Saved invoices are never modified in place"""


class BillingError(Exception):
    """A billing write or invoice request could not be completed"""
