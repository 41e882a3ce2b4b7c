"""Score prediction, risk classification and intervention rules."""

from typing import List, Optional, Protocol

import numpy as np
import pandas as pd

from student_dashboard.models import Intervention, PredictionResult, StudentBase


# Feature weights (sum to 1.0)
WEIGHTS = {
    'pastScore': 0.35,
    'attendance': 0.25,
    'studyHours': 0.20,
    'assignments': 0.10,
    'participation': 0.05,
    'extraActivities': 0.05,
}

PARTICIPATION_SCORES = {'low': 0.3, 'medium': 0.6, 'high': 1.0}
ACTIVITY_SCORES = {'none': 0.3, 'some': 0.6, 'many': 1.0}
DEFAULT_LEVEL_SCORE = 0.6

# Study hours at or above this count as fully normalized
FULL_STUDY_HOURS = 8.0
# Width of the uniform perturbation band centred on zero
VARIANCE_SPAN = 5.0

HIGH_RISK_BELOW = 40.0
MEDIUM_RISK_BELOW = 60.0


class RandomSource(Protocol):
    """Anything that yields floats in [0, 1)."""

    def next_float(self) -> float:
        ...


class SystemRandomSource:
    """Random source backed by a numpy Generator."""

    def __init__(self, seed: Optional[int] = None):
        self._rng = np.random.default_rng(seed)

    def next_float(self) -> float:
        return float(self._rng.random())


class FixedRandomSource:
    """Always returns the same value. 0.5 disables the perturbation."""

    def __init__(self, value: float = 0.5):
        self.value = value

    def next_float(self) -> float:
        return self.value


_default_source: RandomSource = SystemRandomSource()


def weighted_score(
    attendance: float,
    study_hours: float,
    past_score: float,
    participation: str = 'medium',
    assignments: float = 80.0,
    extra_activities: str = 'some'
) -> float:
    """
    Weighted combination of normalized inputs, as a percentage.

    Args:
        attendance: Attendance percentage (0-100)
        study_hours: Study hours per day
        past_score: Past score percentage (0-100)
        participation: 'low', 'medium' or 'high'
        assignments: Assignment completion percentage (0-100)
        extra_activities: 'none', 'some' or 'many'

    Returns:
        Score before perturbation and adjustments (0-100 for in-range inputs)
    """
    participation_score = PARTICIPATION_SCORES.get(participation, DEFAULT_LEVEL_SCORE)
    activities_score = ACTIVITY_SCORES.get(extra_activities, DEFAULT_LEVEL_SCORE)

    return (
        (past_score / 100.0) * WEIGHTS['pastScore'] +
        (attendance / 100.0) * WEIGHTS['attendance'] +
        np.minimum(study_hours / FULL_STUDY_HOURS, 1.0) * WEIGHTS['studyHours'] +
        (assignments / 100.0) * WEIGHTS['assignments'] +
        participation_score * WEIGHTS['participation'] +
        activities_score * WEIGHTS['extraActivities']
    ) * 100.0


def apply_adjustments(score, attendance, study_hours, past_score):
    """
    Apply the conditional multipliers in order.

    Each rule is gated independently, so several can fire and compound.
    Works on scalars and on numpy/pandas arrays alike.
    """
    score = np.where((attendance < 60) & (study_hours < 2), score * 0.85, score)
    score = np.where((attendance > 90) & (study_hours > 5), score * 1.10, score)
    score = np.where((past_score < 40) & (attendance < 70), score * 0.90, score)
    return score


def round_score(score):
    """Clamp to [0, 100] and round half away from zero to one decimal."""
    clipped = np.clip(score, 0.0, 100.0)
    return np.floor(clipped * 10.0 + 0.5) / 10.0


def predict_score(
    attendance: float,
    study_hours: float,
    past_score: float,
    participation: str = 'medium',
    assignments: float = 80.0,
    extra_activities: str = 'some',
    rng: Optional[RandomSource] = None
) -> float:
    """
    Predict a student's score.

    The weighted score is perturbed by a uniform term in (-2.5, 2.5) drawn
    from ``rng``, adjusted, clamped and rounded. Inputs are not validated;
    NaN propagates into the result.

    Returns:
        Predicted score (0-100, one decimal)
    """
    rng = rng or _default_source

    score = weighted_score(
        attendance, study_hours, past_score, participation, assignments, extra_activities
    )
    score += (rng.next_float() - 0.5) * VARIANCE_SPAN
    score = apply_adjustments(score, attendance, study_hours, past_score)

    return float(round_score(score))


def classify_risk(predicted_score: float) -> str:
    """
    Bucket a predicted score into a risk tier.

    Thresholds belong to the higher tier: 40 is medium, 60 is low.
    """
    if predicted_score < HIGH_RISK_BELOW:
        return 'high'
    if predicted_score < MEDIUM_RISK_BELOW:
        return 'medium'
    return 'low'


def generate_interventions(record) -> List[Intervention]:
    """
    Build the ordered list of recommended interventions for a record.

    ``record`` is anything with ``attendance``, ``study_hours``,
    ``risk_level`` and ``predicted_score`` attributes. Rules are independent
    and accumulate.
    """
    interventions = []

    if record.risk_level == 'high':
        interventions.append(Intervention(
            priority='critical', action='Immediate Counseling',
            description='Schedule one-on-one session'
        ))
        interventions.append(Intervention(
            priority='high', action='Peer Tutoring', description='Assign peer tutor'
        ))
    if record.attendance < 70:
        interventions.append(Intervention(
            priority='high', action='Attendance Monitoring',
            description='Daily attendance tracking'
        ))
    if record.study_hours < 2:
        interventions.append(Intervention(
            priority='medium', action='Study Skills', description='Time management workshop'
        ))
    if record.risk_level == 'medium':
        interventions.append(Intervention(
            priority='medium', action='Extra Classes', description='Support classes'
        ))
    if record.risk_level == 'low' and record.predicted_score > 80:
        interventions.append(Intervention(
            priority='low', action='Advanced Challenges', description='Advanced materials'
        ))

    return interventions


def predict_student(student: StudentBase, rng: Optional[RandomSource] = None) -> PredictionResult:
    """Score one student and attach risk level and interventions."""
    predicted = predict_score(
        student.attendance,
        student.study_hours,
        student.past_score,
        student.participation,
        student.assignments,
        student.extra_activities,
        rng=rng,
    )
    result = PredictionResult(
        **{field: getattr(student, field) for field in StudentBase.model_fields},
        predicted_score=predicted,
        risk_level=classify_risk(predicted),
    )
    result.interventions = generate_interventions(result)
    return result


def score_frame(df: pd.DataFrame, rng: Optional[RandomSource] = None) -> pd.DataFrame:
    """
    Score every row of a roster frame.

    Expects camelCase input columns (``attendance``, ``studyHours``,
    ``pastScore`` and optionally ``participation``, ``assignments``,
    ``extraActivities``). One perturbation is drawn per row, in row order,
    so results match calling ``predict_score`` row by row with the same
    source.

    Returns:
        Copy of ``df`` with ``predictedScore`` and ``riskLevel`` columns
    """
    rng = rng or _default_source
    df = df.copy()

    if 'participation' not in df.columns:
        df['participation'] = 'medium'
    if 'assignments' not in df.columns:
        df['assignments'] = 80.0
    if 'extraActivities' not in df.columns:
        df['extraActivities'] = 'some'

    attendance = df['attendance'].astype(float).to_numpy()
    study_hours = df['studyHours'].astype(float).to_numpy()
    past_score = df['pastScore'].astype(float).to_numpy()
    assignments = df['assignments'].astype(float).to_numpy()
    participation = df['participation'].map(PARTICIPATION_SCORES).fillna(DEFAULT_LEVEL_SCORE).to_numpy()
    activities = df['extraActivities'].map(ACTIVITY_SCORES).fillna(DEFAULT_LEVEL_SCORE).to_numpy()

    base = (
        (past_score / 100.0) * WEIGHTS['pastScore'] +
        (attendance / 100.0) * WEIGHTS['attendance'] +
        np.minimum(study_hours / FULL_STUDY_HOURS, 1.0) * WEIGHTS['studyHours'] +
        (assignments / 100.0) * WEIGHTS['assignments'] +
        participation * WEIGHTS['participation'] +
        activities * WEIGHTS['extraActivities']
    ) * 100.0

    variance = (np.array([rng.next_float() for _ in range(len(df))], dtype=float) - 0.5) * VARIANCE_SPAN
    scores = round_score(apply_adjustments(base + variance, attendance, study_hours, past_score))

    df['predictedScore'] = scores
    df['riskLevel'] = [classify_risk(score) for score in scores]
    return df
