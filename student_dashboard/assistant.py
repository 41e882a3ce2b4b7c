"""Rules-based chat assistant answering questions about a student's own record."""

import os
from typing import Callable, List, Optional, Sequence, Tuple

from student_dashboard.models import Role, Session, StudentRecord
from student_dashboard.parsers import format_number
from student_dashboard.projection import find_student_record

SUGGESTIONS = [
    "My Attendance",
    "Am I at risk?",
    "How to improve?",
    "My Grades",
    "Contact Teacher",
]

STAFF_REPLY = "As a teacher/admin, you can view student details in the dashboard lists directly."
NO_RECORD_REPLY = "I couldn't access your student records. Please ensure you are logged in correctly."
DEFAULT_REPLY = "I'm not sure about that. Try asking about your 'attendance', 'risk level', or 'predicted score'."


def get_contact_info() -> str:
    """Coordinator contact line, overridable from the environment."""
    return os.getenv('COORDINATOR_EMAIL', 'teacher@school.edu')


def _attendance_reply(me: StudentRecord) -> str:
    attendance = format_number(me.attendance)
    if me.attendance < 75:
        return (f"Your attendance is {attendance}%, which is below the recommended 75%. "
                "Try to attend more classes to improve your risk score.")
    return f"Your attendance is currently {attendance}%. Great job keeping it high!"


def _grade_reply(me: StudentRecord) -> str:
    return (f"Your predicted score based on current performance is {format_number(me.predicted_score)}%. "
            f"(Past Score: {format_number(me.past_score)}%)")


def _risk_reply(me: StudentRecord) -> str:
    if me.risk_level == 'high':
        return "You are currently flagged as High Risk. We recommend scheduling a meeting with your mentor immediately."
    if me.risk_level == 'medium':
        return "You are at Medium Risk. Increasing your study hours slightly could push you to the safe zone."
    return "You are Low Risk (Safe Zone). Keep up the excellent work!"


def _improvement_reply(me: StudentRecord) -> str:
    if me.study_hours < 3:
        return "Analysis suggests increasing your study hours to at least 3-4 hours/day would have the biggest impact."
    if me.attendance < 80:
        return "Focus on attending every single class for the next 2 weeks. Attendance is a key factor in your score."
    return ("Keep participating in class and maintaining your assignment streaks. "
            "Consider peer tutoring if you want to push for 90%+.")


def _greeting_reply(me: StudentRecord) -> str:
    return f"Hi {me.name.split(' ')[0]}! How can I help you succeed today?"


def _contact_reply(me: StudentRecord) -> str:
    return (f"You can email your class coordinator at {get_contact_info()} "
            "or visit the Staff Room during break hours.")


# Checked in order; the first intent with a keyword in the message wins.
INTENTS: List[Tuple[str, Tuple[str, ...], Callable[[StudentRecord], str]]] = [
    ('attendance', ('attendance', 'present'), _attendance_reply),
    ('grade', ('grade', 'score', 'mark'), _grade_reply),
    ('risk', ('risk', 'safe', 'danger'), _risk_reply),
    ('improvement', ('improve', 'better', 'help'), _improvement_reply),
    ('greeting', ('hello', 'hi', 'hey'), _greeting_reply),
    ('contact', ('contact', 'teacher'), _contact_reply),
]

INTENT_HANDLERS = {name: respond for name, _, respond in INTENTS}


def match_intent(message: str) -> Optional[str]:
    """Name of the first intent whose keyword occurs in ``message``."""
    lowered = message.lower()
    for name, keywords, _ in INTENTS:
        if any(keyword in lowered for keyword in keywords):
            return name
    return None


def generate_reply(message: str, session: Session, records: Sequence[StudentRecord]) -> str:
    """
    Answer a chat message for the signed-in user.

    Args:
        message: Free-text question
        session: Current session; only students get record-based answers
        records: Current roster snapshot

    Returns:
        Reply text
    """
    if session.role != Role.STUDENT:
        return STAFF_REPLY

    me = find_student_record(records, session)
    if me is None:
        return NO_RECORD_REPLY

    intent = match_intent(message)
    if intent is None:
        return DEFAULT_REPLY
    return INTENT_HANDLERS[intent](me)
