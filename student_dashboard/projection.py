"""Role-specific dashboard projections of a roster snapshot."""

import logging
from typing import Callable, Dict, List, Optional, Sequence

from student_dashboard.models import (
    AdminView,
    ChartData,
    ChartDataset,
    Controls,
    DashboardStats,
    DashboardView,
    InterventionPanel,
    Role,
    Session,
    StatCard,
    StudentRecord,
    StudentView,
    TeacherView,
)
from student_dashboard.parsers import format_number
from student_dashboard.scoring import generate_interventions

logger = logging.getLogger(__name__)

RISK_LEVELS = ('high', 'medium', 'low')
RISK_LABELS = ['High Risk', 'Medium Risk', 'Low Risk']

SCORE_GOAL = 90.0
RECOMMENDED_STUDY_HOURS = 4.0
SUCCESS_SCORE = 60.0
LOW_RISK_PANEL_LIMIT = 5

STAFF_SECTIONS = ['dashboard', 'students', 'predict', 'analytics', 'interventions']
STUDENT_SECTIONS = ['dashboard', 'predict', 'interventions']

MANAGEMENT_CONTROLS = Controls(add=True, delete=True, import_csv=True, export_csv=True)
NO_CONTROLS = Controls(add=False, delete=False, import_csv=False, export_csv=False)


def average(records: Sequence[StudentRecord], field: str) -> float:
    """Mean of ``field`` over ``records``; 0 for an empty subset."""
    if not records:
        return 0.0
    return sum(getattr(record, field) for record in records) / len(records)


def by_risk(records: Sequence[StudentRecord], risk_level: str) -> List[StudentRecord]:
    return [record for record in records if record.risk_level == risk_level]


def dashboard_stats(records: Sequence[StudentRecord]) -> DashboardStats:
    total = len(records)
    successes = sum(1 for record in records if record.predicted_score >= SUCCESS_SCORE)
    return DashboardStats(
        total_students=total,
        avg_score=round(average(records, 'predicted_score'), 1),
        high_risk=len(by_risk(records, 'high')),
        success_rate=round(successes / total * 100.0, 1) if total else 0.0,
    )


def score_buckets(records: Sequence[StudentRecord]) -> List[int]:
    """Counts for 0-40, 40-60, 60-80 and 80-100."""
    buckets = [0, 0, 0, 0]
    for record in records:
        if record.predicted_score < 40:
            buckets[0] += 1
        elif record.predicted_score < 60:
            buckets[1] += 1
        elif record.predicted_score < 80:
            buckets[2] += 1
        else:
            buckets[3] += 1
    return buckets


def build_charts(records: Sequence[StudentRecord]) -> Dict[str, ChartData]:
    """The five aggregate charts shown to staff."""
    return {
        'riskChart': ChartData(
            kind='doughnut',
            title='Risk Distribution',
            labels=RISK_LABELS,
            datasets=[ChartDataset(
                label='Students',
                data=[len(by_risk(records, level)) for level in RISK_LEVELS],
            )],
        ),
        'trendChart': ChartData(
            kind='bar',
            title='Average Score by Risk Level',
            labels=RISK_LABELS,
            datasets=[ChartDataset(
                label='Average Score',
                data=[average(by_risk(records, level), 'predicted_score') for level in RISK_LEVELS],
            )],
        ),
        'scoreDistChart': ChartData(
            kind='bar',
            title='Score Distribution',
            labels=['0-40%', '40-60%', '60-80%', '80-100%'],
            datasets=[ChartDataset(label='Number of Students', data=score_buckets(records))],
        ),
        'studyHoursChart': ChartData(
            kind='scatter',
            title='Study Hours vs Score',
            datasets=[ChartDataset(
                label='Study Hours vs Score',
                data=[{'x': record.study_hours, 'y': record.predicted_score} for record in records],
            )],
        ),
        'attendanceChart': ChartData(
            kind='bar',
            title='Average Attendance by Risk Level',
            labels=RISK_LABELS,
            datasets=[ChartDataset(
                label='Average Attendance %',
                data=[average(by_risk(records, level), 'attendance') for level in RISK_LEVELS],
            )],
        ),
    }


def intervention_panels(records: Sequence[StudentRecord]) -> List[InterventionPanel]:
    panels = []
    for level in RISK_LEVELS:
        students = by_risk(records, level)
        shown = students[:LOW_RISK_PANEL_LIMIT] if level == 'low' else students
        panels.append(InterventionPanel(
            risk_level=level,
            count=len(students),
            students=shown,
            more=len(students) - len(shown),
        ))
    return panels


def filter_roster(
    records: Sequence[StudentRecord],
    risk: str = 'all',
    search: str = ''
) -> List[StudentRecord]:
    """Roster table filter: risk tier plus case-insensitive name search."""
    filtered = list(records)
    if risk != 'all':
        filtered = [record for record in filtered if record.risk_level == risk]
    if search:
        term = search.lower()
        filtered = [record for record in filtered if term in record.name.lower()]
    return filtered


def find_student_record(
    records: Sequence[StudentRecord],
    session: Session
) -> Optional[StudentRecord]:
    """Match by email when the record has one, else by case-insensitive name."""
    name = session.name.lower()
    for record in records:
        if record.email and record.email == session.email:
            return record
        if record.name and record.name.lower() == name:
            return record
    return None


def compare(mine: float, other: float) -> str:
    if mine > other:
        return 'positive'
    if mine < other:
        return 'negative'
    return 'neutral'


def student_cards(me: StudentRecord, records: Sequence[StudentRecord]) -> List[StatCard]:
    class_attendance = round(average(records, 'attendance'), 1)
    risk_status = {'high': 'negative', 'medium': 'warning'}.get(me.risk_level, 'positive')

    return [
        StatCard(
            label='My Attendance',
            value=f"{format_number(me.attendance)}%",
            subtext='vs Class Avg',
            status=compare(me.attendance, class_attendance),
        ),
        StatCard(
            label='Predicted Score',
            value=f"{format_number(me.predicted_score)}%",
            subtext=f"Your Goal: {format_number(SCORE_GOAL)}%",
            status='positive' if me.predicted_score > SCORE_GOAL else 'warning',
        ),
        StatCard(label='My Risk Level', value=me.risk_level.upper(), subtext='Status', status=risk_status),
        StatCard(
            label='Study Hours',
            value=f"{format_number(me.study_hours)}h/day",
            subtext=f"Recommended: {format_number(RECOMMENDED_STUDY_HOURS)}h",
            status='positive' if me.study_hours >= RECOMMENDED_STUDY_HOURS else 'warning',
        ),
    ]


def empty_student_cards() -> List[StatCard]:
    return [
        StatCard(label='My Attendance', value='-', subtext='No Data', status='neutral'),
        StatCard(label='Predicted Score', value='-', subtext='No Data', status='neutral'),
        StatCard(label='Risk Level', value='-', subtext='Unknown', status='neutral'),
        StatCard(label='Study Hours', value='-', subtext='No Data', status='neutral'),
    ]


def comparison_chart(me: StudentRecord, records: Sequence[StudentRecord]) -> ChartData:
    """Me vs class average. Study hours are scaled x10 to share the 0-100 axis."""
    return ChartData(
        kind='bar',
        title='Me vs Class Average',
        labels=['Attendance (%)', 'Predicted Score (%)', 'Study Hours (x10)'],
        datasets=[
            ChartDataset(label='Me', data=[me.attendance, me.predicted_score, me.study_hours * 10]),
            ChartDataset(label='Class Average', data=[
                round(average(records, 'attendance'), 1),
                round(average(records, 'predicted_score'), 1),
                round(average(records, 'study_hours') * 10, 1),
            ]),
        ],
    )


def project_admin(session: Session, records: Sequence[StudentRecord]) -> AdminView:
    return AdminView(
        title='Admin Dashboard',
        sections=STAFF_SECTIONS,
        controls=MANAGEMENT_CONTROLS,
        stats=dashboard_stats(records),
        charts=build_charts(records),
        roster=list(records),
        panels=intervention_panels(records),
    )


def project_teacher(session: Session, records: Sequence[StudentRecord]) -> TeacherView:
    return TeacherView(
        title='Teacher Dashboard',
        subtitle='Monitor class performance and interventions',
        sections=STAFF_SECTIONS,
        controls=MANAGEMENT_CONTROLS,
        stats=dashboard_stats(records),
        charts=build_charts(records),
        roster=list(records),
        panels=intervention_panels(records),
    )


def project_student(session: Session, records: Sequence[StudentRecord]) -> StudentView:
    first_name = session.name.split(' ')[0] if session.name else 'Student'
    me = find_student_record(records, session)

    if me is None:
        return StudentView(
            title=f"Welcome, {first_name}!",
            sections=STUDENT_SECTIONS,
            controls=NO_CONTROLS,
            has_data=False,
            cards=empty_student_cards(),
        )

    return StudentView(
        title=f"Welcome, {first_name}!",
        sections=STUDENT_SECTIONS,
        controls=NO_CONTROLS,
        has_data=True,
        cards=student_cards(me, records),
        comparison_chart=comparison_chart(me, records),
        interventions=generate_interventions(me),
    )


PROJECTIONS: Dict[Role, Callable[[Session, Sequence[StudentRecord]], DashboardView]] = {
    Role.ADMIN: project_admin,
    Role.TEACHER: project_teacher,
    Role.STUDENT: project_student,
}

_missing_roles = set(Role) - set(PROJECTIONS)
if _missing_roles:
    raise RuntimeError(f"No projection for roles: {sorted(r.value for r in _missing_roles)}")


class HighRiskNotifier:
    """
    Emits the teacher alert when a snapshot holds high-risk students.

    Repeats of the same count are suppressed; the alert fires again as soon
    as the count changes, and is re-armed once the count drops to zero.
    """

    def __init__(self, sink: Optional[Callable[[str], None]] = None):
        self._sink = sink
        self._last_count = 0

    def check(self, records: Sequence[StudentRecord]) -> Optional[str]:
        count = len(by_risk(records, 'high'))
        if count == 0:
            self._last_count = 0
            return None
        if count == self._last_count:
            return None

        self._last_count = count
        message = f"Attention: {count} students are at high risk!"
        logger.info("Teacher alert: %s", message)
        if self._sink is not None:
            self._sink(message)
        return message


class ViewProjector:
    """
    Keeps the current view of one session in step with roster snapshots.

    Register ``on_snapshot`` with a ``SyncChannel``; every snapshot rebuilds
    the whole view.
    """

    def __init__(self, session: Session, notify: Optional[Callable[[str], None]] = None):
        self.session = session
        self.notifier = HighRiskNotifier(notify)
        self.view: Optional[DashboardView] = None

    def project(self, records: Sequence[StudentRecord]) -> DashboardView:
        view = PROJECTIONS[self.session.role](self.session, records)
        if isinstance(view, TeacherView):
            view.notification = self.notifier.check(records)
        return view

    def on_snapshot(self, records: List[StudentRecord]) -> None:
        self.view = self.project(records)
