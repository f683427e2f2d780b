"""
CSV import jobs for customer and student records.
"""

from .records import Customer, Student
from .csv_import import (
    CsvImport,
    CUSTOMER_IMPORT,
    STUDENT_IMPORT,
    IMPORTS,
    INPUT_FILE_PARAMETER,
    build_csv_import_job,
    build_registry
)

__all__ = [
    "Customer",
    "Student",
    "CsvImport",
    "CUSTOMER_IMPORT",
    "STUDENT_IMPORT",
    "IMPORTS",
    "INPUT_FILE_PARAMETER",
    "build_csv_import_job",
    "build_registry"
]
