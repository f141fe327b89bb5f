"""Acceptance heuristics for uploaded audio.

`validate` never raises: every failure is reported through the returned
ValidationResult so the caller can decide what to do with the file.
"""

import logging
import os

import audio
from models import ValidationResult

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = {"MP3", "FLAC", "OGG", "M4A", "WAV"}
MIN_BITRATE = 64_000
MIN_SAMPLE_RATE = 22_050
DEFAULT_BITRATE = 128_000
SIZE_MISMATCH_THRESHOLD = 0.3

# Rough per-extension bitrates used when the container cannot be parsed.
FALLBACK_BITRATES = {
    "flac": 1_000_000,
    "wav": 1_411_200,
    "mp3": 128_000,
    "m4a": 128_000,
    "aac": 128_000,
}

LONG_TRACK_SECONDS = 600
HIGH_BITRATE = 320_000


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


def estimate_file_size(duration: float, bitrate: int) -> float:
    return duration * bitrate / 8


def estimate_duration_from_size(file_size: int, filename: str) -> float:
    bitrate = FALLBACK_BITRATES.get(_extension(filename), DEFAULT_BITRATE)
    return file_size * 8 / bitrate


def _fallback(buffer: bytes, filename: str, reason: str) -> ValidationResult:
    estimate = estimate_duration_from_size(len(buffer), filename)
    duration = round(estimate)
    if duration > 0:
        logger.info(f"Metadata parsing failed for {filename!r}, estimated duration {duration}s from size")
        return ValidationResult(
            is_valid=True,
            duration=duration,
            actual_duration=estimate,
            format=_extension(filename).upper() or None,
            warnings=[
                f"Metadata parsing failed: {reason}",
                "Using estimated duration due to metadata parsing failure",
            ],
        )
    return ValidationResult(
        is_valid=False,
        duration=0,
        actual_duration=0.0,
        errors=[
            f"Metadata parsing failed: {reason}",
            "Could not estimate duration from file size",
        ],
    )


def validate(buffer: bytes, filename: str) -> ValidationResult:
    try:
        metadata = audio.extract_metadata(buffer, filename)
    except Exception as e:
        return _fallback(buffer, filename, str(e) or type(e).__name__)

    if metadata is None:
        return ValidationResult(
            is_valid=False,
            duration=0,
            actual_duration=0.0,
            errors=["No format information found in audio file"],
        )

    duration = metadata.duration
    if not duration or duration <= 0:
        return ValidationResult(
            is_valid=False,
            duration=0,
            actual_duration=0.0,
            errors=["Invalid or missing duration in audio metadata"],
        )
    if round(duration) == 0:
        # a valid result must carry a positive whole-second duration
        return ValidationResult(
            is_valid=False,
            duration=0,
            actual_duration=float(duration),
            errors=[f"Audio too short: {duration:.2f}s"],
        )

    warnings = []
    container = metadata.format
    if not container:
        warnings.append("Unknown audio container format")
    elif container.upper() not in SUPPORTED_FORMATS:
        warnings.append(f"Audio format {container} may have compatibility issues")

    bitrate = metadata.bitrate
    if bitrate and bitrate < MIN_BITRATE:
        warnings.append(f"Low bitrate detected: {round(bitrate / 1000)}kbps")

    sample_rate = metadata.sample_rate
    if sample_rate and sample_rate < MIN_SAMPLE_RATE:
        warnings.append(f"Low sample rate detected: {sample_rate}Hz")

    expected_size = estimate_file_size(duration, bitrate or DEFAULT_BITRATE)
    if expected_size > 0 and abs(len(buffer) - expected_size) / expected_size > SIZE_MISMATCH_THRESHOLD:
        warnings.append("File size mismatch detected - possible truncation or corruption")

    return ValidationResult(
        is_valid=True,
        duration=round(duration),
        actual_duration=float(duration),
        bitrate=round(bitrate) if bitrate else None,
        sample_rate=round(sample_rate) if sample_rate else None,
        format=container or "Unknown",
        warnings=warnings,
    )


def recommendations(result: ValidationResult) -> list[str]:
    """Human-readable advice shown next to a validation verdict."""
    advice = []
    if not result.is_valid:
        advice.append("File rejected due to validation errors")
        advice.append("Try re-encoding the audio file with a standard format (MP3, FLAC)")
        return advice

    if result.warnings:
        advice.append("File accepted with warnings - monitor playback quality")
    if result.duration > LONG_TRACK_SECONDS:
        advice.append("Long audio file detected - ensure adequate storage and bandwidth")
    if result.bitrate and result.bitrate > HIGH_BITRATE:
        advice.append("High bitrate detected - consider compression for better streaming")
    return advice
