import io
import logging
import re

import mutagen

from errors import MetadataError
from models import AudioMetadata

logger = logging.getLogger(__name__)

# mutagen class name -> container name reported to clients
CONTAINER_NAMES = {
    "MP3": "MP3",
    "EasyMP3": "MP3",
    "FLAC": "FLAC",
    "OggVorbis": "OGG",
    "OggOpus": "OGG",
    "OggFLAC": "OGG",
    "OggSpeex": "OGG",
    "OggTheora": "OGG",
    "MP4": "M4A",
    "EasyMP4": "M4A",
    "WAVE": "WAV",
    "AAC": "AAC",
    "AIFF": "AIFF",
    "ASF": "ASF",
}


def _first_tag(tags, key: str) -> str | None:
    if tags is None:
        return None
    try:
        value = tags.get(key)
    except (KeyError, ValueError, TypeError):
        return None
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _leading_int(text: str | None) -> int | None:
    """'3/12' -> 3, '1999-05-01' -> 1999."""
    if not text:
        return None
    match = re.match(r"\s*(\d+)", text)
    return int(match.group(1)) if match else None


def extract_metadata(buffer: bytes, filename: str | None = None) -> AudioMetadata | None:
    """Parse container, stream info and common tags from an in-memory audio file.

    Returns None when the container is recognised but has no stream info.
    Raises MetadataError when the buffer cannot be parsed at all.
    """
    fileobj = io.BytesIO(buffer)
    if filename:
        # mutagen uses the name only as a scoring hint for the container type
        fileobj.name = filename

    try:
        audio = mutagen.File(fileobj, easy=True)
    except mutagen.MutagenError as e:
        raise MetadataError(str(e) or type(e).__name__) from e
    except Exception as e:
        raise MetadataError(f"{type(e).__name__}: {e}") from e

    if audio is None:
        raise MetadataError("Unrecognized audio container")

    info = getattr(audio, "info", None)
    if info is None:
        return None

    kind = type(audio).__name__
    bitrate = getattr(info, "bitrate", None) or None
    sample_rate = getattr(info, "sample_rate", None) or None
    tags = audio.tags

    metadata = AudioMetadata(
        format=CONTAINER_NAMES.get(kind, kind.upper()),
        duration=getattr(info, "length", None),
        bitrate=int(bitrate) if bitrate else None,
        sample_rate=int(sample_rate) if sample_rate else None,
        title=_first_tag(tags, "title"),
        artist=_first_tag(tags, "artist"),
        album=_first_tag(tags, "album"),
        track_number=_leading_int(_first_tag(tags, "tracknumber")),
        year=_leading_int(_first_tag(tags, "date")),
        genre=_first_tag(tags, "genre"),
    )
    logger.debug(
        f"Extracted {metadata.format} duration={metadata.duration} "
        f"bitrate={metadata.bitrate} sample_rate={metadata.sample_rate}"
    )
    return metadata
