"""
Record types imported by the CSV jobs.

Each record knows how to build itself from a CSV row keyed by the file's
header names and which table columns it maps to.
"""

from dataclasses import dataclass, fields
from datetime import date
from typing import Dict, Optional, Tuple


def _optional_date(value: str) -> Optional[date]:
    value = value.strip()
    return date.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Customer:
    id: int
    first_name: str
    last_name: str
    email: str
    gender: str
    contact_no: str
    country: str
    dob: Optional[date]

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "Customer":
        return cls(
            id=int(row["id"]),
            first_name=row["firstName"].strip(),
            last_name=row["lastName"].strip(),
            email=row["email"].strip(),
            gender=row["gender"].strip(),
            contact_no=row["contactNo"].strip(),
            country=row["country"].strip(),
            dob=_optional_date(row["dob"])
        )

    @classmethod
    def columns(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))


@dataclass(frozen=True)
class Student:
    id: int
    first_name: str
    last_name: str
    email: str
    age: Optional[int]

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "Student":
        age = row["age"].strip()
        return cls(
            id=int(row["id"]),
            first_name=row["firstName"].strip(),
            last_name=row["lastName"].strip(),
            email=row["email"].strip(),
            age=int(age) if age else None
        )

    @classmethod
    def columns(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))


CUSTOMERS_DDL = """
CREATE TABLE IF NOT EXISTS customers (
    id BIGINT PRIMARY KEY,
    first_name VARCHAR(255),
    last_name VARCHAR(255),
    email VARCHAR(255),
    gender VARCHAR(50),
    contact_no VARCHAR(50),
    country VARCHAR(100),
    dob DATE
)
"""

STUDENTS_DDL = """
CREATE TABLE IF NOT EXISTS students (
    id BIGINT PRIMARY KEY,
    first_name VARCHAR(255),
    last_name VARCHAR(255),
    email VARCHAR(255),
    age INTEGER
)
"""
