"""Shared fixtures."""

import pytest

from student_dashboard.models import Role, Session, StudentRecord
from student_dashboard.scoring import classify_risk


@pytest.fixture
def make_record():
    """Factory for roster records with sensible defaults."""
    def _make(record_id, name, attendance=80.0, study_hours=4.0, past_score=70.0,
              predicted_score=68.5, **extra):
        return StudentRecord(
            id=record_id,
            name=name,
            attendance=attendance,
            study_hours=study_hours,
            past_score=past_score,
            predicted_score=predicted_score,
            risk_level=extra.pop('risk_level', classify_risk(predicted_score)),
            **extra
        )
    return _make


@pytest.fixture
def roster(make_record):
    return [
        make_record('000001', 'John Doe', attendance=95, study_hours=6, predicted_score=88.0),
        make_record('000002', 'Jane Smith', attendance=65, study_hours=1.5, predicted_score=35.0),
        make_record('000003', 'Bob Johnson', attendance=70, study_hours=3, predicted_score=52.0,
                    email='bob@school.edu'),
        make_record('000004', 'Ann Lee', attendance=90, study_hours=2, predicted_score=61.0),
    ]


@pytest.fixture
def admin_session():
    return Session(id='u-admin', email='admin@school.edu', name='Admin User',
                   role=Role.ADMIN, institution='Demo University')


@pytest.fixture
def teacher_session():
    return Session(id='u-teacher', email='teacher@school.edu', name='Teacher User',
                   role=Role.TEACHER, institution='Demo University')


@pytest.fixture
def student_session():
    return Session(id='u-student', email='jane@school.edu', name='Jane Smith',
                   role=Role.STUDENT, institution='Demo University')
