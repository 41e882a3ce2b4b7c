"""Face-recognition attendance.

Two matching back ends are supported: the external face service (image in,
student id out) and local comparison of 128-dimension face descriptors kept
on the roster records. Either way a successful match bumps the student's
recorded attendance.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Protocol, Sequence, Tuple

import numpy as np
import requests

from student_dashboard.errors import (
    CameraAccessError,
    FaceNotRecognizedError,
    FaceServiceError,
    PermissionDeniedError,
    RecordNotFoundError,
)
from student_dashboard.models import Role, Session, StudentRecord, VerificationResult
from student_dashboard.projection import find_student_record
from student_dashboard.store import RosterStore

logger = logging.getLogger(__name__)

DESCRIPTOR_SIZE = 128
CAMERA_DENIED = "Camera access denied. Please enable camera permissions."


class FrameSource(Protocol):
    """A camera: hands out JPEG frames and must be released after use."""

    def read(self) -> bytes:
        ...

    def release(self) -> None:
        ...


@contextmanager
def camera_session(open_camera: Callable[[], FrameSource]) -> Iterator[FrameSource]:
    """
    Hold a camera for the duration of a capture flow.

    The source is released on every exit path. Failing to open it raises
    ``CameraAccessError``.
    """
    try:
        source = open_camera()
    except CameraAccessError:
        raise
    except (OSError, RuntimeError) as e:
        logger.error("Camera error: %s", e)
        raise CameraAccessError(CAMERA_DENIED) from e

    try:
        yield source
    finally:
        source.release()


class FaceServiceClient:
    """HTTP client for the external recognition service."""

    def __init__(self, base_url: str, timeout: float = 10.0, http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.http = http or requests.Session()

    def recognize(self, image: bytes) -> Optional[str]:
        """
        Ask the service who is in the picture.

        Returns:
            The matched student id, or None when no face was recognized
        """
        try:
            response = self.http.post(
                f"{self.base_url}/api/face/recognize",
                files={'file': ('capture.jpg', image, 'image/jpeg')},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Face recognition request failed: %s", e)
            raise FaceServiceError("Server error. Is the face recognition service running?") from e

        if result.get('status') == 'success' and result.get('student_id'):
            return str(result['student_id'])
        return None

    def register(self, image: bytes, student_id: str) -> None:
        try:
            response = self.http.post(
                f"{self.base_url}/api/face/register",
                files={'file': ('register.jpg', image, 'image/jpeg')},
                data={'student_id': student_id},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Face registration request failed: %s", e)
            raise FaceServiceError("Registration failed.") from e


def face_distance(a: Sequence[float], b: Sequence[float]) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=float) - np.asarray(b, dtype=float)))


def validate_descriptor(descriptor: Sequence[float]) -> np.ndarray:
    vector = np.asarray(descriptor, dtype=float)
    if vector.shape != (DESCRIPTOR_SIZE,) or not np.all(np.isfinite(vector)):
        raise ValueError(f"Face descriptor must be {DESCRIPTOR_SIZE} finite numbers")
    return vector


class LocalFaceMatcher:
    """Nearest-descriptor matching over the roster."""

    def __init__(self, threshold: float = 0.6):
        self.threshold = threshold

    def best_match(
        self,
        descriptor: Sequence[float],
        records: Sequence[StudentRecord]
    ) -> Optional[Tuple[StudentRecord, float]]:
        """Closest enrolled record under the threshold, with its distance."""
        probe = validate_descriptor(descriptor)
        best: Optional[Tuple[StudentRecord, float]] = None
        for record in records:
            if not record.face_descriptor or len(record.face_descriptor) != DESCRIPTOR_SIZE:
                continue
            distance = face_distance(probe, record.face_descriptor)
            if distance < self.threshold and (best is None or distance < best[1]):
                best = (record, distance)
        return best


class AttendanceVerifier:
    """
    Capture, register and verify flows.

    ``roster`` returns the current roster snapshot (normally the sync
    mirror); writes go straight to the store.
    """

    def __init__(
        self,
        store: RosterStore,
        roster: Callable[[], Sequence[StudentRecord]],
        client: Optional[FaceServiceClient] = None,
        matcher: Optional[LocalFaceMatcher] = None,
        attendance_step: float = 1.0
    ):
        self.store = store
        self.roster = roster
        self.client = client
        self.matcher = matcher or LocalFaceMatcher()
        self.attendance_step = attendance_step

    def _require_client(self) -> FaceServiceClient:
        if self.client is None:
            raise FaceServiceError("Face recognition service is not configured.")
        return self.client

    def resolve_student(self, student_id: str) -> StudentRecord:
        """Find the record for an id from the face service: id, roll no, then name."""
        records = self.roster()
        lowered = student_id.lower()
        for match in (
            lambda r: r.id == student_id,
            lambda r: bool(r.roll_no) and r.roll_no == student_id,
            lambda r: r.name.lower() == lowered,
        ):
            for record in records:
                if match(record):
                    return record
        raise RecordNotFoundError(f"No student record found for {student_id}")

    def mark_attendance(self, record: StudentRecord, student_id: Optional[str] = None) -> VerificationResult:
        attendance = min(100.0, record.attendance + self.attendance_step)
        self.store.update(record.id, {'attendance': attendance})
        label = student_id or record.name
        logger.info("Attendance marked for %s (%s)", label, record.id)
        return VerificationResult(
            student_id=label,
            record_id=record.id,
            attendance=attendance,
            message=f"Attendance Marked for {label}",
        )

    def recognize(self, image: bytes) -> Optional[str]:
        """Remote lookup only; touches no store state."""
        return self._require_client().recognize(image)

    def confirm_match(self, student_id: Optional[str]) -> VerificationResult:
        if student_id is None:
            raise FaceNotRecognizedError("Face not recognized. Try again.")
        return self.mark_attendance(self.resolve_student(student_id), student_id)

    def verify_image(self, image: bytes) -> VerificationResult:
        return self.confirm_match(self.recognize(image))

    def register_image(self, image: bytes, session: Session) -> None:
        if session.role != Role.STUDENT:
            raise PermissionDeniedError("Only logged-in students can register a face.")
        # The service keys faces by student name
        self._require_client().register(image, session.name)
        logger.info("Registered face for %s", session.name)

    def capture_and_verify(self, open_camera: Callable[[], FrameSource]) -> VerificationResult:
        with camera_session(open_camera) as camera:
            return self.verify_image(camera.read())

    def capture_and_register(self, open_camera: Callable[[], FrameSource], session: Session) -> None:
        with camera_session(open_camera) as camera:
            self.register_image(camera.read(), session)

    def verify_descriptor(self, descriptor: Sequence[float]) -> VerificationResult:
        match = self.matcher.best_match(descriptor, self.roster())
        if match is None:
            raise FaceNotRecognizedError("Face not recognized. Try again.")
        record, distance = match
        logger.debug("Descriptor matched %s at distance %.3f", record.id, distance)
        return self.mark_attendance(record)

    def register_descriptor(self, descriptor: Sequence[float], session: Session) -> str:
        if session.role != Role.STUDENT:
            raise PermissionDeniedError("Only logged-in students can register a face.")
        vector = validate_descriptor(descriptor)
        record = find_student_record(self.roster(), session)
        if record is None:
            raise RecordNotFoundError("No student record found for your account.")
        self.store.update(record.id, {'faceDescriptor': vector.tolist()})
        logger.info("Stored face descriptor for %s", record.id)
        return record.id
