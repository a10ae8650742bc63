"""
Shared fixtures. Paths and env are set up before any project import so
config.py picks up offline-friendly defaults.
"""

import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TICKET_SEND_DELAY_SECONDS", "0")
os.environ.setdefault("EMAIL_DRY_RUN", "false")
os.environ.pop("TICKET_API_KEY", None)
os.environ.pop("EMAIL_ALLOWLIST_REGEX", None)

import asyncio
from typing import Dict, List, Optional, Set

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from domain.errors import DeliveryError, PersistenceError
from domain.models import AlumniRegistration, StudentRegistration


class StubChannel:
    """Records every send; fails for emails in `fail_for`."""

    def __init__(self, fail_for: Optional[Set[str]] = None, status_class: str = "server",
                 gate: Optional[asyncio.Event] = None, entered: Optional[asyncio.Event] = None):
        self.fail_for = set(fail_for or ())
        self.status_class = status_class
        self.gate = gate
        self.entered = entered
        self.calls: List[tuple] = []

    async def send(self, recipient, display_name, artifact):
        self.calls.append((recipient, display_name, artifact))
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if recipient in self.fail_for:
            raise DeliveryError(f"Failed to send email to {recipient}", self.status_class, 550)
        return f"<msg-{len(self.calls)}@test>"


class StubStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.marked: List[tuple] = []

    def mark_ticket_generated(self, record_id, category):
        if self.fail:
            raise PersistenceError("database unavailable")
        self.marked.append((record_id, category))


def student(rid: str, name: Optional[str] = None, email: Optional[str] = "", **kw) -> StudentRegistration:
    if email == "":
        email = f"{rid}@example.com"
    return StudentRegistration(id=rid, name=name or f"Student {rid}", email=email, **kw)


def alumnus(rid: str, name: Optional[str] = None, email: Optional[str] = "", **kw) -> AlumniRegistration:
    if email == "":
        email = f"{rid}@alumni.example.com"
    return AlumniRegistration(id=rid, name=name or f"Alumnus {rid}", email=email, **kw)


@pytest.fixture
def channel():
    return StubChannel()


@pytest.fixture
def store():
    return StubStore()


@pytest.fixture
def registration_engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        conn.execute(text("""
            CREATE TABLE registrations (
                id INTEGER PRIMARY KEY,
                student_name VARCHAR(100),
                email VARCHAR(100),
                jis_id VARCHAR(50),
                mobile VARCHAR(20),
                department VARCHAR(50),
                gender VARCHAR(10),
                payment_status VARCHAR(20),
                ticket_generated VARCHAR(5) DEFAULT 'No'
            )
        """))
        conn.execute(text("""
            CREATE TABLE alumni_registrations (
                id INTEGER PRIMARY KEY,
                alumni_name VARCHAR(100),
                email VARCHAR(100),
                jis_id VARCHAR(50),
                mobile VARCHAR(20),
                department VARCHAR(50),
                passout_year VARCHAR(4),
                current_organization VARCHAR(100),
                payment_status VARCHAR(20),
                ticket_generated VARCHAR(5) DEFAULT 'No'
            )
        """))
        conn.execute(text("""
            INSERT INTO registrations (id, student_name, email, jis_id, department, gender, payment_status, ticket_generated)
            VALUES
              (1, 'Asha Roy', 'asha@example.com', 'JIS/2022/0001', 'CSE', 'F', 'Paid', 'No'),
              (2, 'Bikram Das', 'bikram@example.com', NULL, 'ECE', 'M', 'Not Paid', 'No'),
              (3, 'Chitra Sen', 'chitra@example.com', 'JIS/2022/0003', 'IT', 'F', 'Paid', 'Yes')
        """))
        conn.execute(text("""
            INSERT INTO alumni_registrations (id, alumni_name, email, jis_id, passout_year, current_organization, payment_status, ticket_generated)
            VALUES (1, 'Dev Mitra', 'dev@alumni.example.com', 'JIS/2015/0042', '2019', 'Acme Corp', 'Paid', 'No')
        """))
    yield engine
    engine.dispose()


def run(coro):
    return asyncio.run(coro)
