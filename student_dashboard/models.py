"""Data models for the Student Performance Dashboard."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


RiskLevel = Literal['high', 'medium', 'low']
Priority = Literal['critical', 'high', 'medium', 'low']
CardStatus = Literal['positive', 'negative', 'warning', 'neutral']


class Role(str, Enum):
    """Session role, resolved once per session."""
    ADMIN = 'admin'
    TEACHER = 'teacher'
    STUDENT = 'student'


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StudentBase(CamelModel):
    """Input attributes shared by every student record."""
    name: str
    roll_no: str = ''
    email: Optional[str] = None
    attendance: float
    study_hours: float
    past_score: float
    participation: str = 'medium'
    assignments: float = 80.0
    extra_activities: str = 'some'


class StudentInput(StudentBase):
    """Validated input for a new record or a prediction preview."""
    name: str = Field(min_length=1)
    attendance: float = Field(ge=0, le=100)
    study_hours: float = Field(ge=0)
    past_score: float = Field(ge=0, le=100)
    participation: Literal['low', 'medium', 'high'] = 'medium'
    assignments: float = Field(80.0, ge=0, le=100)
    extra_activities: Literal['none', 'some', 'many'] = 'some'


class StudentRecord(StudentBase):
    """A roster entry as mirrored from the store."""
    id: str
    predicted_score: float
    risk_level: RiskLevel
    created_at: Optional[datetime] = None
    face_descriptor: Optional[List[float]] = None


class Intervention(BaseModel):
    """A recommended action for a student."""
    priority: Priority
    action: str
    description: str


class PredictionResult(StudentBase):
    """Unsaved prediction preview."""
    predicted_score: float
    risk_level: RiskLevel
    interventions: List[Intervention] = []


class SavePredictionRequest(CamelModel):
    roll_no: str


class Session(CamelModel):
    """The signed-in user. Built once at sign-in and never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    role: Role
    institution: str


class LoginRequest(CamelModel):
    email: str
    password: str
    remember_me: bool = False


class RegisterRequest(CamelModel):
    full_name: str
    email: str
    password: str
    confirm_password: str
    role: Role = Role.STUDENT
    institution: str = ''


class LoginResponse(CamelModel):
    token: str
    session: Session
    message: str


# Projection models

class StatCard(BaseModel):
    label: str
    value: str
    subtext: str
    status: CardStatus


class ChartDataset(BaseModel):
    label: str
    data: List[Any]


class ChartData(BaseModel):
    """Chart-ready series; rendering is left to the client."""
    kind: Literal['doughnut', 'bar', 'scatter']
    title: str
    labels: List[str] = []
    datasets: List[ChartDataset]


class DashboardStats(CamelModel):
    total_students: int
    avg_score: float
    high_risk: int
    success_rate: float


class InterventionPanel(BaseModel):
    """Students grouped under one risk tier."""
    risk_level: RiskLevel
    count: int
    students: List[StudentRecord]
    more: int = 0


class Controls(BaseModel):
    add: bool
    delete: bool
    import_csv: bool
    export_csv: bool


class AdminView(CamelModel):
    role: Literal['admin'] = 'admin'
    title: str
    sections: List[str]
    controls: Controls
    stats: DashboardStats
    charts: Dict[str, ChartData]
    roster: List[StudentRecord]
    panels: List[InterventionPanel]


class TeacherView(CamelModel):
    role: Literal['teacher'] = 'teacher'
    title: str
    subtitle: str
    sections: List[str]
    controls: Controls
    stats: DashboardStats
    charts: Dict[str, ChartData]
    roster: List[StudentRecord]
    panels: List[InterventionPanel]
    notification: Optional[str] = None


class StudentView(CamelModel):
    role: Literal['student'] = 'student'
    title: str
    sections: List[str]
    controls: Controls
    has_data: bool
    cards: List[StatCard]
    comparison_chart: Optional[ChartData] = None
    interventions: List[Intervention] = []


DashboardView = Union[AdminView, TeacherView, StudentView]


class ChatRequest(BaseModel):
    message: str


class ChatResponse(BaseModel):
    reply: str


class ImportResult(BaseModel):
    success: bool
    imported: int
    message: str


class DescriptorRequest(BaseModel):
    descriptor: List[float]


class VerificationResult(CamelModel):
    """Outcome of a successful face match."""
    status: Literal['success'] = 'success'
    student_id: str
    record_id: str
    attendance: float
    message: str


class SyncStatus(CamelModel):
    status: str
    record_count: int
