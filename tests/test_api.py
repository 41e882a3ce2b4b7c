"""Integration tests for the HTTP API."""

import asyncio
import time
from io import BytesIO

import httpx
import pandas as pd
import pytest
from fastapi.testclient import TestClient

from student_dashboard.assistant import NO_RECORD_REPLY
from student_dashboard.attendance import FaceServiceClient
from student_dashboard.auth import InMemoryIdentityProvider
from student_dashboard.config import Settings
from student_dashboard.main import Services, create_app
from student_dashboard.scoring import FixedRandomSource
from student_dashboard.store import InMemoryProfileStore, InMemoryRosterStore


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self._payload


class FakeFaceService:
    """Recognizes every picture as ``student_id``."""

    def __init__(self, student_id='Student User'):
        self.student_id = student_id
        self.registered = []

    def post(self, url, **kwargs):
        if url.endswith('/register'):
            self.registered.append(kwargs['data']['student_id'])
            return FakeResponse({'status': 'success'})
        return FakeResponse({'status': 'success', 'student_id': self.student_id})


@pytest.fixture
def face_service():
    return FakeFaceService()


@pytest.fixture
def services(face_service):
    identity = InMemoryIdentityProvider()
    store = InMemoryRosterStore(auth_check=lambda: identity.current_user is not None)
    return Services(
        Settings(),
        store,
        InMemoryProfileStore(),
        identity,
        FixedRandomSource(0.5),
        face_client=FaceServiceClient('http://faces.test', http=face_service),
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def login(client, email, password):
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin(client):
    return login(client, 'admin@school.edu', 'admin123')


@pytest.fixture
def teacher(client):
    return login(client, 'teacher@school.edu', 'teacher123')


@pytest.fixture
def student(client):
    return login(client, 'student@school.edu', 'student123')


def add_student(client, headers, **fields):
    body = {"name": "John Doe", "attendance": 90, "studyHours": 5, "pastScore": 80}
    body.update(fields)
    response = client.post("/students", json=body, headers=headers)
    assert response.status_code == 200
    return response.json()['id']


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()['status'] == 'ok'


def test_login_returns_session(client):
    response = client.post("/auth/login", json={"email": "admin@school.edu", "password": "admin123"})
    assert response.status_code == 200
    data = response.json()
    assert data['session']['role'] == 'admin'
    assert data['session']['institution'] == 'Demo University'

    session = client.get("/session", headers={"Authorization": f"Bearer {data['token']}"})
    assert session.json()['name'] == 'Admin User'


def test_bad_login(client):
    response = client.post("/auth/login", json={"email": "nobody@school.edu", "password": "x"})
    assert response.status_code == 401
    assert response.json()['detail'] == 'No user found with this email.'


def test_register_password_mismatch(client):
    response = client.post("/auth/register", json={
        "fullName": "Jane Smith", "email": "jane@school.edu",
        "password": "a", "confirmPassword": "b", "role": "student",
    })
    assert response.status_code == 401
    assert response.json()['detail'] == 'Passwords do not match'


def test_requires_session(client):
    assert client.get("/dashboard").status_code == 401
    assert client.get("/dashboard", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_logout_ends_session(client, admin):
    assert client.post("/auth/logout", headers=admin).status_code == 200
    assert client.get("/session", headers=admin).status_code == 401


def test_add_and_list_students(client, admin):
    record_id = add_student(client, admin)

    response = client.get("/students", headers=admin)
    assert response.status_code == 200
    (record,) = response.json()
    assert record['id'] == record_id
    assert record['predictedScore'] == 77.0
    assert record['riskLevel'] == 'low'
    assert record['createdAt'] is not None


def test_list_filters(client, admin):
    add_student(client, admin, name="John Doe")
    add_student(client, admin, name="Jane Smith", attendance=50, studyHours=1, pastScore=30)

    high = client.get("/students", params={"risk": "high"}, headers=admin).json()
    assert [r['name'] for r in high] == ['Jane Smith']
    found = client.get("/students", params={"search": "john"}, headers=admin).json()
    assert [r['name'] for r in found] == ['John Doe']


def test_invalid_input_rejected(client, admin):
    response = client.post("/students", json={"name": "X", "attendance": 150, "studyHours": 1, "pastScore": 50},
                           headers=admin)
    assert response.status_code == 422


def test_students_cannot_manage_roster(client, admin, student):
    record_id = add_student(client, admin)

    assert client.post("/students", json={"name": "X", "attendance": 50, "studyHours": 1, "pastScore": 50},
                       headers=student).status_code == 403
    assert client.get("/students", headers=student).status_code == 403
    assert client.delete(f"/students/{record_id}", params={"confirm": "true"}, headers=student).status_code == 403
    assert client.get("/students/export.csv", headers=student).status_code == 403


def test_student_reads_only_own_record(client, admin, student):
    own = add_student(client, admin, name="Student User")
    other = add_student(client, admin, name="John Doe")

    assert client.get(f"/students/{own}", headers=student).status_code == 200
    assert client.get(f"/students/{other}", headers=student).status_code == 403
    assert client.get("/students/999999", headers=admin).status_code == 404


def test_delete_requires_confirmation(client, admin):
    record_id = add_student(client, admin)

    response = client.delete(f"/students/{record_id}", headers=admin)
    assert response.status_code == 409

    response = client.delete(f"/students/{record_id}", params={"confirm": "true"}, headers=admin)
    assert response.status_code == 200
    assert client.get("/students", headers=admin).json() == []

    assert client.delete(f"/students/{record_id}", params={"confirm": "true"}, headers=admin).status_code == 404


def test_update_recomputes_and_keeps_face(client, admin, student):
    record_id = add_student(client, admin, name="Student User")
    descriptor = [0.1] * 128
    assert client.post("/attendance/register-descriptor", json={"descriptor": descriptor},
                       headers=student).status_code == 200

    response = client.put(f"/students/{record_id}",
                          json={"name": "Student User", "attendance": 50, "studyHours": 1, "pastScore": 30},
                          headers=admin)
    assert response.status_code == 200

    record = client.get(f"/students/{record_id}", headers=admin).json()
    assert record['predictedScore'] == 30.2
    assert record['riskLevel'] == 'high'
    assert record['faceDescriptor'] == descriptor


def test_student_prediction_uses_own_name(client, student):
    response = client.post("/predict", json={"name": "Someone Else", "attendance": 95, "studyHours": 6,
                                             "pastScore": 88}, headers=student)
    assert response.status_code == 200
    data = response.json()
    assert data['name'] == 'Student User'
    assert data['predictedScore'] == 91.9
    assert data['interventions'][0]['action'] == 'Advanced Challenges'

    assert client.post("/predict/save", json={"rollNo": "R1"}, headers=student).status_code == 403


def test_save_prediction(client, teacher):
    assert client.post("/predict/save", json={"rollNo": "R1"}, headers=teacher).status_code == 400

    client.post("/predict", json={"name": "Jane Smith", "attendance": 90, "studyHours": 5, "pastScore": 80},
                headers=teacher)
    assert client.post("/predict/save", json={"rollNo": "  "}, headers=teacher).status_code == 400

    response = client.post("/predict/save", json={"rollNo": "R7"}, headers=teacher)
    assert response.status_code == 200

    (record,) = client.get("/students", headers=teacher).json()
    assert record['rollNo'] == 'R7'
    assert record['predictedScore'] == 77.0


def test_dashboard_per_role(client, admin, teacher, student):
    add_student(client, admin)

    admin_view = client.get("/dashboard", headers=admin).json()
    assert admin_view['role'] == 'admin'
    assert admin_view['stats']['totalStudents'] == 1
    assert admin_view['controls']['delete'] == True

    teacher_view = client.get("/dashboard", headers=teacher).json()
    assert teacher_view['role'] == 'teacher'
    assert teacher_view['stats']['avgScore'] == 77.0

    student_view = client.get("/dashboard", headers=student).json()
    assert student_view['role'] == 'student'
    assert student_view['hasData'] == False
    assert 'roster' not in student_view


def test_teacher_notified_of_high_risk(client, admin, teacher):
    add_student(client, admin, name="Jane Smith", attendance=50, studyHours=1, pastScore=30)

    response = client.get("/notifications", headers=teacher)
    assert response.json()['notifications'] == ['Attention: 1 students are at high risk!']
    assert client.get("/notifications", headers=teacher).json()['notifications'] == []
    assert client.get("/notifications", headers=admin).json()['notifications'] == []


def test_sync_status(client, admin):
    add_student(client, admin)
    status = client.get("/sync/status", headers=admin).json()
    assert status == {'status': 'live synced', 'recordCount': 1}


def test_chat(client, admin, student):
    response = client.post("/chat", json={"message": "my attendance"}, headers=student)
    assert response.json()['reply'] == NO_RECORD_REPLY

    add_student(client, admin, name="Student User", attendance=92)
    response = client.post("/chat", json={"message": "my attendance"}, headers=student)
    assert "92%" in response.json()['reply']

    assert client.post("/chat", json={"message": "   "}, headers=student).status_code == 400
    assert len(client.get("/chat/suggestions", headers=student).json()['suggestions']) > 0


def test_export_csv(client, admin):
    add_student(client, admin, rollNo="R1")

    response = client.get("/students/export.csv", headers=admin)
    assert response.status_code == 200
    assert 'students_data.csv' in response.headers['content-disposition']
    assert response.text.split('\n') == [
        'Roll No,Name,Attendance,Study Hours,Past Score,Predicted Score,Risk Level',
        'R1,John Doe,90,5,80,77,low',
    ]


def test_import_csv(client, admin):
    content = b"Roll No,Name,Attendance,Study Hours,Past Score\nR1,John Doe,90,5,80\n,,,,\nR2,Jane Smith,50,1,30\n"
    response = client.post("/students/import", files={"file": ("roster.csv", content, "text/csv")}, headers=admin)

    assert response.status_code == 200
    assert response.json()['imported'] == 2
    records = client.get("/students", headers=admin).json()
    assert [(r['name'], r['riskLevel']) for r in records] == [('John Doe', 'low'), ('Jane Smith', 'high')]


def test_import_excel(client, admin):
    buffer = BytesIO()
    pd.DataFrame({
        'Roll No': ['R1'], 'Name': ['John Doe'], 'Attendance': [90], 'Study Hours': [5], 'Past Score': [80],
    }).to_excel(buffer, index=False, engine='openpyxl')

    response = client.post(
        "/students/import",
        files={"file": ("roster.xlsx", buffer.getvalue(),
                        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        headers=admin,
    )
    assert response.status_code == 200
    assert response.json()['imported'] == 1


def test_import_rejects_unknown_type(client, admin):
    response = client.post("/students/import", files={"file": ("roster.txt", b"x", "text/plain")}, headers=admin)
    assert response.status_code == 400
    assert "Invalid file type" in response.json()['detail']

    legacy = client.post("/students/import", files={"file": ("roster.xls", b"x", "application/vnd.ms-excel")},
                         headers=admin)
    assert legacy.status_code == 400


def test_import_rejects_corrupt_workbook(client, admin):
    response = client.post(
        "/students/import",
        files={"file": ("roster.xlsx", b"not a workbook",
                        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        headers=admin,
    )
    assert response.status_code == 400
    assert response.json()['detail'].startswith("Error reading roster file")


def test_import_skips_out_of_range_rows(client, admin):
    content = b"Roll No,Name,Attendance,Study Hours,Past Score\nR1,Over,150,-3,250\nR2,John Doe,90,5,80\n"
    response = client.post("/students/import", files={"file": ("roster.csv", content, "text/csv")}, headers=admin)

    assert response.json()['imported'] == 1
    assert [r['name'] for r in client.get("/students", headers=admin).json()] == ['John Doe']


def test_face_verification_marks_attendance(client, admin, student, face_service):
    record_id = add_student(client, admin, name="Student User", attendance=80)

    response = client.post("/attendance/verify", files={"file": ("capture.jpg", b"jpeg", "image/jpeg")},
                           headers=student)
    assert response.status_code == 200
    assert response.json()['recordId'] == record_id
    assert response.json()['attendance'] == 81.0

    face_service.student_id = 'Nobody Known'
    response = client.post("/attendance/verify", files={"file": ("capture.jpg", b"jpeg", "image/jpeg")},
                           headers=student)
    assert response.status_code == 404


def test_face_registration_is_student_only(client, teacher, student, face_service):
    files = {"file": ("register.jpg", b"jpeg", "image/jpeg")}
    assert client.post("/attendance/register", files=files, headers=teacher).status_code == 403
    assert client.post("/attendance/register", files=files, headers=student).status_code == 200
    assert face_service.registered == ['Student User']


def test_bad_descriptor(client, student):
    response = client.post("/attendance/verify-descriptor", json={"descriptor": [0.1, 0.2]}, headers=student)
    assert response.status_code == 400


class SlowFaceService(FakeFaceService):
    """Face service that takes ``delay`` seconds to answer."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def post(self, url, **kwargs):
        time.sleep(self.delay)
        return super().post(url, **kwargs)


def test_face_call_does_not_block_other_requests(services):
    """Other requests are served while a face lookup is in flight."""
    delay = 0.8
    services.attendance.client = FaceServiceClient('http://faces.test', http=SlowFaceService(delay))
    app = create_app(services)

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url='http://testserver') as ac:
            headers = {}
            for email, password in (('admin@school.edu', 'admin123'), ('student@school.edu', 'student123')):
                response = await ac.post("/auth/login", json={"email": email, "password": password})
                headers[email] = {"Authorization": f"Bearer {response.json()['token']}"}
            await ac.post("/students", headers=headers['admin@school.edu'],
                          json={"name": "Student User", "attendance": 80, "studyHours": 5, "pastScore": 80})

            start = time.perf_counter()

            async def health_latency():
                await asyncio.sleep(0.05)
                response = await ac.get("/health")
                assert response.status_code == 200
                return time.perf_counter() - start

            verify, latency = await asyncio.gather(
                ac.post("/attendance/verify", files={"file": ("capture.jpg", b"jpeg", "image/jpeg")},
                        headers=headers['student@school.edu']),
                health_latency(),
            )
            return verify, latency

    verify, latency = asyncio.run(scenario())

    assert verify.status_code == 200
    assert verify.json()['attendance'] == 81.0
    assert latency < delay / 2
