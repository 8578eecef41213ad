# voxnote/app/services/transcription.py
"""
Speech-to-text on local audio files with faster-whisper.
This module has no infrastructure dependencies besides the model itself.
"""
from __future__ import annotations

import logging
import math
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from voxnote.app.domain.errors import TranscriptionProcessingError
from voxnote.app.domain.models import TranscriptionResult, TranscriptionSegment

if TYPE_CHECKING:
    from faster_whisper import WhisperModel

logger = logging.getLogger(__name__)


def detect_device(preference: str = "auto") -> tuple[str, str]:
    """
    Detect the best device and compute_type for the environment.

    Returns:
        Tuple of (device, compute_type)
    """
    if preference == "cuda":
        return "cuda", "float16"
    if preference == "cpu":
        return "cpu", "int8"

    try:
        import ctranslate2
        if ctranslate2.get_cuda_device_count() > 0:
            logger.info("CUDA detected via ctranslate2, using GPU with float16")
            return "cuda", "float16"
    except (ImportError, RuntimeError) as exc:
        logger.debug("Error detecting CUDA via ctranslate2: %s", exc)

    logger.info("GPU not available, using CPU with int8 (quantized)")
    return "cpu", "int8"


class WhisperTranscriber:
    """
    Transcribes normalized audio files.

    The model is loaded on first use and shared by every call; calls are
    blocking and meant to run in a worker thread.
    """

    def __init__(
        self,
        model_name: str = "small",
        device: str = "auto",
        beam_size: int = 5,
    ):
        self.model_name = model_name
        self.device_preference = device
        self.beam_size = beam_size
        self._model: Optional["WhisperModel"] = None
        self._model_lock = threading.Lock()

    def _get_model(self) -> "WhisperModel":
        if self._model is not None:
            return self._model

        with self._model_lock:
            if self._model is None:
                from faster_whisper import WhisperModel

                device, compute_type = detect_device(self.device_preference)
                logger.info(
                    "Initializing faster-whisper: model=%s, device=%s, compute_type=%s",
                    self.model_name,
                    device,
                    compute_type,
                )
                self._model = WhisperModel(
                    self.model_name,
                    device=device,
                    compute_type=compute_type,
                )
        return self._model

    def transcribe(self, audio_path: Path, language: Optional[str] = None) -> TranscriptionResult:
        """
        Transcribe an audio file.

        Args:
            audio_path: Path to the converted audio
            language: ISO code hint, or None to auto-detect

        Returns:
            TranscriptionResult with text, segments and confidence

        Raises:
            TranscriptionProcessingError: If transcription fails
        """
        if not audio_path.exists():
            raise TranscriptionProcessingError(f"Audio file not found: {audio_path}", retryable=False)

        try:
            model = self._get_model()
            logger.info("Starting transcription: path=%s, language=%s", audio_path, language or "auto")

            segments_iter, info = model.transcribe(
                str(audio_path),
                language=language,
                vad_filter=True,
                vad_parameters=dict(
                    min_silence_duration_ms=500,
                    speech_pad_ms=200,
                ),
                beam_size=self.beam_size,
                condition_on_previous_text=False,
            )

            segments: list[TranscriptionSegment] = []
            for seg in segments_iter:
                text = seg.text.strip()
                if text:
                    segments.append(TranscriptionSegment(
                        start=seg.start,
                        end=seg.end,
                        text=text,
                        confidence=round(math.exp(seg.avg_logprob), 4),
                    ))
        except Exception as e:
            logger.error("Transcription failed: %s", e)
            raise TranscriptionProcessingError(f"Transcription failed: {e}", retryable=True) from e

        full_text = " ".join(segment.text for segment in segments).strip()
        result = TranscriptionResult(
            text=full_text,
            segments=segments,
            language=info.language,
            duration_sec=info.duration,
            model_version=self.model_name,
            confidence=info.language_probability,
        )

        logger.info(
            "Transcription complete: duration=%.1fs, segments=%d, chars=%d, language=%s",
            result.duration_sec,
            len(segments),
            len(full_text),
            result.language,
        )
        return result
