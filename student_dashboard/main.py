"""FastAPI application for the Student Performance Dashboard."""

import logging
import os
import traceback
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from student_dashboard.assistant import SUGGESTIONS, generate_reply
from student_dashboard.attendance import AttendanceVerifier, FaceServiceClient, LocalFaceMatcher
from student_dashboard.auth import ActiveSession, IdentityProvider, InMemoryIdentityProvider, SessionManager
from student_dashboard.config import Settings, get_settings
from student_dashboard.errors import (
    ConfirmationRequiredError,
    DashboardError,
    PermissionDeniedError,
    RecordNotFoundError,
)
from student_dashboard.models import (
    ChatRequest,
    ChatResponse,
    DescriptorRequest,
    ImportResult,
    LoginRequest,
    LoginResponse,
    PredictionResult,
    RegisterRequest,
    Role,
    SavePredictionRequest,
    Session,
    StudentInput,
    SyncStatus,
    VerificationResult,
)
from student_dashboard.parsers import export_csv, import_roster, load_roster_excel, parse_roster_csv
from student_dashboard.projection import filter_roster, find_student_record
from student_dashboard.scoring import RandomSource, SystemRandomSource, predict_student
from student_dashboard.store import InMemoryProfileStore, InMemoryRosterStore, ProfileStore, RosterStore
from student_dashboard.sync import SyncChannel

logger = logging.getLogger(__name__)

STAFF_ROLES = (Role.ADMIN, Role.TEACHER)


class Services:
    """Long-lived collaborators shared by every request."""

    def __init__(
        self,
        settings: Settings,
        store: RosterStore,
        profiles: ProfileStore,
        identity: IdentityProvider,
        rng: RandomSource,
        face_client: Optional[FaceServiceClient] = None
    ):
        self.settings = settings
        self.store = store
        self.profiles = profiles
        self.identity = identity
        self.rng = rng
        self.channel = SyncChannel(store)
        self.sessions = SessionManager(identity, profiles, self.channel)
        self.attendance = AttendanceVerifier(
            store,
            self.channel.mirror.snapshot,
            client=face_client,
            matcher=LocalFaceMatcher(settings.face_match_threshold),
            attendance_step=settings.attendance_step,
        )


def build_services(settings: Settings) -> Services:
    """Wire the in-memory stores and identity provider."""
    identity = InMemoryIdentityProvider()
    store = InMemoryRosterStore(auth_check=lambda: identity.current_user is not None)
    return Services(
        settings,
        store,
        InMemoryProfileStore(),
        identity,
        SystemRandomSource(settings.score_seed),
        FaceServiceClient(settings.face_service_url, settings.face_service_timeout),
    )


def require_staff(active: ActiveSession) -> None:
    if active.session.role not in STAFF_ROLES:
        raise PermissionDeniedError("Only admins and teachers can manage students.")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI app around ``services`` (defaults from the environment)."""
    services = services or build_services(get_settings())
    settings = services.settings
    mirror = services.channel.mirror

    app = FastAPI(title="Student Performance Dashboard", version="1.0.0")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DashboardError)
    async def dashboard_error_handler(request: Request, exc: DashboardError):
        """Expected failures carry their own status and message."""
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler_json(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler_json(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions and return JSON."""
        logger.exception("Unhandled error on %s", request.url.path)
        error_detail = str(exc)
        if settings.debug:
            error_detail = f"{str(exc)}\n\n{traceback.format_exc()}"
        return JSONResponse(
            status_code=500,
            content={"detail": f"Internal server error: {error_detail}", "type": type(exc).__name__}
        )

    def get_active(authorization: Optional[str] = Header(None)) -> ActiveSession:
        token = authorization
        if authorization and authorization.lower().startswith('bearer '):
            token = authorization[7:].strip()
        return services.sessions.get(token)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "message": "Server is running"}

    # Authentication

    @app.post("/auth/login", response_model=LoginResponse)
    async def login(request: LoginRequest):
        active = services.sessions.sign_in(request.email, request.password, request.remember_me)
        return LoginResponse(token=active.token, session=active.session, message="Login successful!")

    @app.post("/auth/register", response_model=LoginResponse)
    async def register(request: RegisterRequest):
        active = services.sessions.register(
            request.full_name,
            request.email,
            request.password,
            request.confirm_password,
            request.role,
            request.institution,
        )
        return LoginResponse(token=active.token, session=active.session, message="Registration successful!")

    @app.post("/auth/logout")
    async def logout(active: ActiveSession = Depends(get_active)):
        services.sessions.sign_out(active.token)
        return {"success": True, "message": "Logged out successfully"}

    @app.get("/session", response_model=Session)
    async def current_session(active: ActiveSession = Depends(get_active)):
        return active.session

    # Dashboard

    @app.get("/sync/status", response_model=SyncStatus)
    async def sync_status(active: ActiveSession = Depends(get_active)):
        return SyncStatus(status=services.channel.status, record_count=len(mirror))

    @app.get("/dashboard")
    async def dashboard(active: ActiveSession = Depends(get_active)):
        view = active.projector.view
        if view is None:
            view = active.projector.project(mirror.snapshot())
        return view.model_dump(by_alias=True, mode='json')

    @app.get("/notifications")
    async def notifications(active: ActiveSession = Depends(get_active)):
        return {"notifications": active.drain_notifications()}

    # Roster

    @app.get("/students")
    async def list_students(
        risk: str = 'all',
        search: str = '',
        active: ActiveSession = Depends(get_active)
    ):
        require_staff(active)
        records = filter_roster(mirror.snapshot(), risk, search)
        return [record.model_dump(by_alias=True, mode='json') for record in records]

    @app.get("/students/export.csv")
    async def download_csv(active: ActiveSession = Depends(get_active)):
        require_staff(active)
        csv_text = export_csv(mirror.snapshot())
        return StreamingResponse(
            iter([csv_text]),
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=students_data.csv"}
        )

    @app.post("/students/import", response_model=ImportResult)
    async def upload_roster(file: UploadFile = File(...), active: ActiveSession = Depends(get_active)):
        require_staff(active)

        file_bytes = await file.read()
        if len(file_bytes) > settings.max_upload_size:
            raise HTTPException(
                status_code=413,
                detail=f"File too large. Maximum size: {settings.max_upload_size_mb}MB"
            )

        filename = (file.filename or '').lower()
        try:
            if filename.endswith('.csv'):
                df = parse_roster_csv(file_bytes.decode('utf-8-sig'))
            elif filename.endswith('.xlsx'):
                df = load_roster_excel(file_bytes)
            else:
                raise HTTPException(
                    status_code=400,
                    detail="Invalid file type. Please upload a CSV or Excel file (.csv, .xlsx)"
                )
        except (ValueError, UnicodeDecodeError) as e:
            raise HTTPException(status_code=400, detail=f"Error reading roster file: {str(e)}")

        count = import_roster(services.store, df, services.rng)
        return ImportResult(success=True, imported=count, message=f"Imported {count} students successfully")

    @app.get("/students/{record_id}")
    async def get_student(record_id: str, active: ActiveSession = Depends(get_active)):
        record = mirror.find(record_id)
        if record is None:
            raise RecordNotFoundError(f"No student with id {record_id}")
        if active.session.role not in STAFF_ROLES:
            own = find_student_record(mirror.snapshot(), active.session)
            if own is None or own.id != record_id:
                raise PermissionDeniedError("Students can only view their own record.")
        return record.model_dump(by_alias=True, mode='json')

    @app.post("/students")
    async def add_student(student: StudentInput, active: ActiveSession = Depends(get_active)):
        require_staff(active)
        prediction = predict_student(student, services.rng)
        record_id = services.store.add(prediction.model_dump(by_alias=True, exclude={'interventions'}, exclude_none=True))
        return {"success": True, "id": record_id, "message": "Student added to Cloud Database"}

    @app.put("/students/{record_id}")
    async def replace_student(record_id: str, student: StudentInput, active: ActiveSession = Depends(get_active)):
        require_staff(active)
        existing = mirror.find(record_id)
        if existing is None:
            raise RecordNotFoundError(f"No student with id {record_id}")

        prediction = predict_student(student, services.rng)
        record = prediction.model_dump(by_alias=True, exclude={'interventions'}, exclude_none=True)
        if existing.face_descriptor:
            record['faceDescriptor'] = existing.face_descriptor
        services.store.set(record_id, record)
        return {"success": True, "id": record_id, "message": "Student updated"}

    @app.delete("/students/{record_id}")
    async def delete_student(record_id: str, confirm: bool = False, active: ActiveSession = Depends(get_active)):
        require_staff(active)
        if not confirm:
            raise ConfirmationRequiredError(
                "Are you sure you want to delete this student? Repeat the request with confirm=true."
            )
        services.store.delete(record_id)
        return {"success": True, "message": "Student deleted"}

    # Prediction

    @app.post("/predict", response_model=PredictionResult)
    async def predict(student: StudentInput, active: ActiveSession = Depends(get_active)):
        if active.session.role == Role.STUDENT:
            student = student.model_copy(update={'name': active.session.name})
        prediction = predict_student(student, services.rng)
        active.current_prediction = prediction
        return prediction

    @app.post("/predict/save")
    async def save_prediction(request: SavePredictionRequest, active: ActiveSession = Depends(get_active)):
        require_staff(active)
        if active.current_prediction is None:
            raise DashboardError("No prediction to save. Run a prediction first.")
        roll_no = request.roll_no.strip()
        if not roll_no:
            raise DashboardError("Roll No is required to save a prediction.")

        record = active.current_prediction.model_dump(by_alias=True, exclude={'interventions'}, exclude_none=True)
        record['rollNo'] = roll_no
        record_id = services.store.add(record)
        active.current_prediction = None
        return {"success": True, "id": record_id, "message": "Prediction saved to database!"}

    # Assistant

    @app.get("/chat/suggestions")
    async def chat_suggestions(active: ActiveSession = Depends(get_active)):
        return {"suggestions": SUGGESTIONS}

    @app.post("/chat", response_model=ChatResponse)
    async def chat(request: ChatRequest, active: ActiveSession = Depends(get_active)):
        text = request.message.strip()
        if not text:
            raise DashboardError("Message is empty.")
        return ChatResponse(reply=generate_reply(text, active.session, mirror.snapshot()))

    # Face attendance

    @app.post("/attendance/verify", response_model=VerificationResult)
    async def verify_face(file: UploadFile = File(...), active: ActiveSession = Depends(get_active)):
        image = await file.read()
        # The face service call blocks; keep it off the event loop
        student_id = await run_in_threadpool(services.attendance.recognize, image)
        return services.attendance.confirm_match(student_id)

    @app.post("/attendance/register")
    async def register_face(file: UploadFile = File(...), active: ActiveSession = Depends(get_active)):
        image = await file.read()
        await run_in_threadpool(services.attendance.register_image, image, active.session)
        return {"success": True, "message": "Face Registered Successfully!"}

    @app.post("/attendance/verify-descriptor", response_model=VerificationResult)
    async def verify_descriptor(request: DescriptorRequest, active: ActiveSession = Depends(get_active)):
        try:
            return services.attendance.verify_descriptor(request.descriptor)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/attendance/register-descriptor")
    async def register_descriptor(request: DescriptorRequest, active: ActiveSession = Depends(get_active)):
        try:
            record_id = services.attendance.register_descriptor(request.descriptor, active.session)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "id": record_id, "message": "Face Registered Successfully!"}

    return app


logging.basicConfig(
    level=getattr(logging, get_settings().log_level, logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s'
)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv('PORT', '8000')))
