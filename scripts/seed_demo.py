#!/usr/bin/env python3
"""Seed demo data: one institute with a batch, students, a teacher, a parent and invoices.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    DATABASE_URL=... python scripts/seed_demo.py
"""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from app.core.security import SessionClaims, create_session_token
from app.core.settings import get_settings
from app.db.base import Base
from app.db.models import Batch, FeeInvoice, Institute, Parent, Student, Teacher


def seed(session: Session) -> None:
    """Insert a demo institute and print a teacher session token for manual calls."""
    now = datetime.now(timezone.utc)

    institute = Institute(name="Sunrise Tuitions")
    session.add(institute)
    session.flush()

    batch = Batch(institute_id=institute.id, name="Class 10 Maths")
    session.add(batch)
    session.flush()

    demo_students = [
        # (name, parent phone, invoice amount, paid, days past due)
        ("Aarav Mehta", "9876543210", 2500.0, 0.0, 12),
        ("Diya Nair", "+91 98765 43211", 2500.0, 1000.0, 1),
        ("Kabir Singh", "98765-43212", 3000.0, 3000.0, 5),
        ("Ishita Rao", "12345", 1800.0, 0.0, 3),
    ]
    students: list[Student] = []
    for name, phone, amount, paid, days_late in demo_students:
        student = Student(institute_id=institute.id, batch_id=batch.id, name=name, parent_phone=phone)
        session.add(student)
        session.flush()
        students.append(student)
        session.add(
            FeeInvoice(
                institute_id=institute.id,
                student_id=student.id,
                batch_id=batch.id,
                final_amount=amount,
                paid_amount=paid,
                due_date=now - timedelta(days=days_late),
                status="paid" if paid >= amount else ("partial" if paid else "pending"),
            )
        )

    teacher = Teacher(institute_id=institute.id, name="Demo Teacher", phone="+919876500000", role="admin")
    session.add(teacher)
    session.add(
        Parent(
            institute_id=institute.id,
            name="Aarav's Parent",
            phone="+919876543210",
            status="pending",
            student_ids=[str(students[0].id)],
        )
    )
    session.commit()

    token = create_session_token(
        SessionClaims(subject=str(teacher.id), institute_id=str(institute.id)), get_settings()
    )
    print(f"Seeded institute {institute.id} with {len(students)} students and {len(students)} invoices.")
    print(f"Teacher session token: {token}")


def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed(session)


if __name__ == "__main__":
    main()
