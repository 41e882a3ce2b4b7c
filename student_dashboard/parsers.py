"""Roster import/export: CSV text and Excel workbooks."""

import logging
import re
from io import BytesIO
from typing import Dict, List, Optional, Sequence
from zipfile import BadZipFile

import numpy as np
import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import ValidationError

from student_dashboard.models import StudentInput, StudentRecord
from student_dashboard.scoring import RandomSource, score_frame
from student_dashboard.store import RosterStore

logger = logging.getLogger(__name__)

EXPORT_HEADERS = [
    'Roll No', 'Name', 'Attendance', 'Study Hours', 'Past Score', 'Predicted Score', 'Risk Level'
]

# Column order expected by the CSV importer
IMPORT_COLUMNS = ['rollNo', 'name', 'attendance', 'studyHours', 'pastScore']
NUMERIC_COLUMNS = ['attendance', 'studyHours', 'pastScore']

# Spreadsheet header variations, normalized (see normalize_col_name)
COLUMN_VARIATIONS = {
    'rollNo': ['roll no', 'rollno', 'roll number', 'roll', 'student#', 'student id'],
    'name': ['name', 'student name', 'studentname', 'student'],
    'attendance': ['attendance', 'attendance %', 'attendance pct'],
    'studyHours': ['study hours', 'studyhours', 'hours', 'study hours/day'],
    'pastScore': ['past score', 'pastscore', 'previous score', 'last score'],
    'participation': ['participation'],
    'assignments': ['assignments', 'assignment completion'],
    'extraActivities': ['extra activities', 'extraactivities', 'activities'],
}


def format_number(value: float) -> str:
    """Render 85.0 as '85' and 85.5 as '85.5'."""
    if value is None or pd.isna(value):
        return ''
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def export_csv(records: Sequence[StudentRecord]) -> str:
    """
    Serialize the roster to CSV.

    Fields are joined with commas and never quoted. A name that contains a
    comma cannot be represented and will shift the columns on re-import;
    such rows are logged.

    Args:
        records: Roster in display order

    Returns:
        CSV text with a header row, lines separated by '\\n'
    """
    lines = [','.join(EXPORT_HEADERS)]
    for record in records:
        if ',' in record.name or ',' in record.roll_no:
            logger.warning("Student %s has a comma in a text field; CSV row will not round-trip", record.id)
        lines.append(','.join([
            record.roll_no or '',
            record.name,
            format_number(record.attendance),
            format_number(record.study_hours),
            format_number(record.past_score),
            format_number(record.predicted_score),
            record.risk_level,
        ]))
    return '\n'.join(lines)


def row_error(row: Dict[str, object]) -> Optional[str]:
    """Check an import row against the same bounds as manual input."""
    try:
        StudentInput.model_validate(row)
    except ValidationError as e:
        first = e.errors()[0]
        field = '.'.join(str(part) for part in first['loc'])
        return f"{field}: {first['msg']}"
    return None


def parse_roster_csv(text: str) -> pd.DataFrame:
    """
    Parse CSV text into an import frame.

    The first line is the header and is skipped. Blank lines are ignored.
    Only the first five columns are read (Roll No, Name, Attendance, Study
    Hours, Past Score); derived columns are ignored and recomputed. Rows
    without a name or attendance are dropped, as are rows whose numbers do
    not parse or fall outside the manual-input bounds; all are logged.

    Returns:
        DataFrame with IMPORT_COLUMNS
    """
    rows: List[Dict[str, object]] = []
    for line_no, line in enumerate(text.splitlines()[1:], start=2):
        if not line.strip():
            continue

        fields = line.split(',')
        fields += [''] * (len(IMPORT_COLUMNS) - len(fields))
        row = dict(zip(IMPORT_COLUMNS, (field.strip() for field in fields[:len(IMPORT_COLUMNS)])))

        if not row['name'] or not row['attendance']:
            logger.info("Skipping line %d: missing name or attendance", line_no)
            continue

        try:
            for column in NUMERIC_COLUMNS:
                row[column] = float(row[column])
        except ValueError:
            logger.error("Error importing line %d: %r", line_no, line)
            continue
        if not np.isfinite([row[column] for column in NUMERIC_COLUMNS]).all():
            logger.error("Error importing line %d: non-finite value in %r", line_no, line)
            continue
        error = row_error(row)
        if error:
            logger.error("Error importing line %d: %s", line_no, error)
            continue

        rows.append(row)

    return pd.DataFrame(rows, columns=IMPORT_COLUMNS)


def normalize_col_name(col_name) -> str:
    """Lowercase, trim, drop dots/commas/%/# and collapse whitespace."""
    if pd.isna(col_name):
        return ''
    normalized = str(col_name).strip().lower()
    normalized = re.sub(r'[.,%#]', '', normalized)
    normalized = re.sub(r'\s+', ' ', normalized)
    return normalized.strip()


def normalize_and_rename_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Map spreadsheet headers onto roster field names.

    Handles minor naming variations ("Study Hours", "study_hours",
    "Roll No.") and leaves unknown columns untouched.
    """
    df = df.copy()
    lookup = {}
    for target, variations in COLUMN_VARIATIONS.items():
        for variation in variations:
            lookup[normalize_col_name(variation)] = target

    rename_map = {}
    for col in df.columns:
        key = normalize_col_name(str(col).replace('_', ' '))
        target = lookup.get(key)
        if target and target not in rename_map.values():
            rename_map[col] = target

    return df.rename(columns=rename_map)


def load_roster_excel(file_bytes: bytes) -> pd.DataFrame:
    """
    Read the first worksheet of an .xlsx workbook into an import frame.

    Same semantics as ``parse_roster_csv``: rows without a name or a numeric
    attendance are dropped; non-numeric or out-of-range values drop the row.
    A file that is not an .xlsx workbook raises ValueError.
    """
    try:
        raw = pd.read_excel(BytesIO(file_bytes), sheet_name=0, engine='openpyxl')
    except (BadZipFile, InvalidFileException) as e:
        raise ValueError(f"Not a readable .xlsx workbook ({e})") from e
    df = normalize_and_rename_columns(raw)

    missing = [col for col in ['name', 'attendance', 'studyHours', 'pastScore'] if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")

    if 'rollNo' not in df.columns:
        df['rollNo'] = ''
    df['rollNo'] = df['rollNo'].fillna('').astype(str).str.strip()
    df['name'] = df['name'].fillna('').astype(str).str.strip()

    for column in NUMERIC_COLUMNS:
        df[column] = pd.to_numeric(df[column], errors='coerce')
    if 'assignments' in df.columns:
        df['assignments'] = pd.to_numeric(df['assignments'], errors='coerce').fillna(80.0)
    if 'participation' in df.columns:
        df['participation'] = df['participation'].fillna('medium').astype(str).str.strip().str.lower()
    if 'extraActivities' in df.columns:
        df['extraActivities'] = df['extraActivities'].fillna('some').astype(str).str.strip().str.lower()

    df = df.replace([np.inf, -np.inf], np.nan)
    valid = df['name'].ne('') & df[NUMERIC_COLUMNS].notna().all(axis=1)
    dropped = int((~valid).sum())
    if dropped:
        logger.warning("Dropped %d spreadsheet rows with missing or non-numeric values", dropped)

    keep = IMPORT_COLUMNS + [col for col in ['participation', 'assignments', 'extraActivities'] if col in df.columns]
    df = df.loc[valid, keep]

    in_range = []
    for index, row in df.iterrows():
        error = row_error(row.to_dict())
        if error:
            logger.error("Skipping spreadsheet row %d: %s", index + 2, error)
        in_range.append(error is None)
    return df.loc[in_range].reset_index(drop=True)


def import_roster(store: RosterStore, df: pd.DataFrame, rng: Optional[RandomSource] = None) -> int:
    """
    Score every row and add it to the store.

    Scores and risk levels are always recomputed. A row the store rejects is
    logged and skipped.

    Returns:
        Number of records added
    """
    if df.empty:
        return 0

    scored = score_frame(df, rng)
    count = 0
    for _, row in scored.iterrows():
        record = {
            'name': row['name'],
            'rollNo': row['rollNo'] or '',
            'attendance': float(row['attendance']),
            'studyHours': float(row['studyHours']),
            'pastScore': float(row['pastScore']),
            'predictedScore': float(row['predictedScore']),
            'riskLevel': row['riskLevel'],
        }
        for optional in ('participation', 'assignments', 'extraActivities'):
            if optional in scored.columns and not pd.isna(row[optional]):
                record[optional] = row[optional]
        try:
            store.add(record)
            count += 1
        except Exception as e:
            logger.error("Error importing student %r: %s", row['name'], e)

    logger.info("Imported %d of %d students", count, len(scored))
    return count
