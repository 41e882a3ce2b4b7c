"""Application settings read from the environment (and a local .env file)."""

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables
load_dotenv()


class Settings(BaseModel):
    allow_origins: List[str] = ['*']
    debug: bool = False
    log_level: str = 'INFO'
    face_service_url: str = 'http://127.0.0.1:8000'
    face_service_timeout: float = 10.0
    # Euclidean distance below which two face descriptors match
    face_match_threshold: float = 0.6
    attendance_step: float = 1.0
    score_seed: Optional[int] = None
    max_upload_size_mb: int = 10

    @property
    def max_upload_size(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    return Settings(
        allow_origins=[o.strip() for o in os.getenv('ALLOW_ORIGINS', '*').split(',')],
        debug=os.getenv('DEBUG', 'False').lower() == 'true',
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        face_service_url=os.getenv('FACE_SERVICE_URL', 'http://127.0.0.1:8000').rstrip('/'),
        face_service_timeout=float(os.getenv('FACE_SERVICE_TIMEOUT', '10')),
        face_match_threshold=float(os.getenv('FACE_MATCH_THRESHOLD', '0.6')),
        attendance_step=float(os.getenv('ATTENDANCE_STEP', '1.0')),
        score_seed=_optional_int(os.getenv('SCORE_SEED')),
        max_upload_size_mb=int(os.getenv('MAX_UPLOAD_SIZE_MB', '10')),
    )
