# voxnote/app/services/media.py
"""
Temporary audio files and the ffmpeg/ffprobe calls made on them.
Every method is blocking; async callers go through a thread pool.
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional
from uuid import uuid4

from voxnote.app.domain.errors import AudioConversionError, MediaProbeError
from voxnote.app.domain.models import MediaPayload

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1

_EXTENSIONS = {
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/wav": ".wav",
    "audio/webm": ".webm",
}


def extension_for(mimetype: str) -> str:
    base = mimetype.split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base, ".ogg")


class MediaTools:
    def __init__(
        self,
        temp_dir: str | Path,
        ffmpeg_timeout: float = 120,
        ffprobe_timeout: float = 10,
    ):
        self.temp_dir = Path(temp_dir)
        self.ffmpeg_timeout = ffmpeg_timeout
        self.ffprobe_timeout = ffprobe_timeout

    def write_temp(self, payload: MediaPayload) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        path = self.temp_dir / f"{uuid4().hex}{extension_for(payload.mimetype)}"
        path.write_bytes(payload.data)
        logger.debug("Wrote temp audio: %s (%d bytes)", path, payload.size)
        return path

    def probe_duration(self, path: Path) -> float:
        """
        Measure the decoded duration in seconds.

        Raises:
            MediaProbeError: If ffprobe fails or reports no usable duration
        """
        try:
            result = subprocess.run(
                [
                    "ffprobe",
                    "-v",
                    "error",
                    "-show_entries",
                    "format=duration",
                    "-of",
                    "default=noprint_wrappers=1:nokey=1",
                    str(path),
                ],
                capture_output=True,
                text=True,
                check=True,
                timeout=self.ffprobe_timeout,
            )
        except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as error:
            raise MediaProbeError(str(path), str(error)) from error

        try:
            duration = float(result.stdout.strip())
        except ValueError as error:
            raise MediaProbeError(str(path), f"unparseable duration {result.stdout!r}") from error

        if duration <= 0:
            raise MediaProbeError(str(path), f"non-positive duration {duration}")
        return duration

    def convert_to_wav(self, path: Path) -> Path:
        """
        Normalize to 16 kHz mono 16-bit PCM WAV next to the source file.

        Raises:
            AudioConversionError: If ffmpeg fails or times out
        """
        output = path.with_name(f"{path.stem}.converted.wav")
        try:
            subprocess.run(
                [
                    "ffmpeg",
                    "-y",
                    "-v",
                    "error",
                    "-i",
                    str(path),
                    "-ar",
                    str(TARGET_SAMPLE_RATE),
                    "-ac",
                    str(TARGET_CHANNELS),
                    "-c:a",
                    "pcm_s16le",
                    str(output),
                ],
                capture_output=True,
                text=True,
                check=True,
                timeout=self.ffmpeg_timeout,
            )
        except subprocess.CalledProcessError as error:
            self.cleanup(output)
            raise AudioConversionError(str(path), error.stderr.strip() or str(error)) from error
        except (FileNotFoundError, subprocess.TimeoutExpired) as error:
            self.cleanup(output)
            raise AudioConversionError(str(path), str(error)) from error

        return output

    def cleanup(self, *paths: Optional[Path]) -> None:
        for path in paths:
            if path is None or not path.exists():
                continue
            try:
                path.unlink()
                logger.debug("Cleaned up temp file: %s", path)
            except OSError as os_error:
                logger.warning("Failed to cleanup temp file %s: %s", path, os_error)
