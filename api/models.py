from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class AudioMetadata:
    format: Optional[str]  # 'MP3' | 'FLAC' | 'OGG' | 'M4A' | 'WAV' | other container
    duration: Optional[float]
    bitrate: Optional[int]
    sample_rate: Optional[int]
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    track_number: Optional[int] = None
    year: Optional[int] = None
    genre: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    duration: int
    actual_duration: float
    bitrate: Optional[int] = None
    sample_rate: Optional[int] = None
    format: Optional[str] = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "errors", tuple(self.errors))
        object.__setattr__(self, "warnings", tuple(self.warnings))


@dataclass
class UploadAttempt:
    id: str
    filename: str
    timestamp: datetime
    status: str  # 'success' | 'failed'
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[int] = None


@dataclass
class TrackRecord:
    id: str
    title: str
    slug: str
    artist_id: str
    album_id: Optional[str]
    uploaded_by: str
    file_key: str
    file_url: str
    file_name: str
    file_size: int
    duration: int
    bitrate: Optional[int]
    sample_rate: Optional[int]
    format: str
    track_number: Optional[int]
    year: Optional[int]
    is_published: bool = True
    play_count: int = 0
