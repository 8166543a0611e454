"""
Audio Transcription
═══════════════════

Providers (OpenAI-compatible transcription endpoint, verbose_json):
  openai  → whisper-1
  groq    → whisper-large-v3-turbo   (api.groq.com/openai/v1)

Oversized uploads:
  Providers reject files above ~20 MB. Larger files are cut into
  near-equal, time-contiguous pieces with ffmpeg and each piece is
  transcribed through the same transcribe() contract.

      duration   = ffprobe(format=duration)
      pieces     = ceil(size / max_size)
      piece_secs = duration / pieces

  Pieces are transcribed strictly in order: piece k's segments are shifted
  by the MEASURED duration of pieces 0..k-1 (the provider's reported
  duration), not by piece_secs, so stream-copy cut drift never makes the
  timeline jump backwards.

Retry policy:
  APIConnectionError / APITimeoutError → up to audio_max_attempts,
                                          back-off 2^attempt seconds
  413 / 400 / 429 / other status       → raised immediately (mapped)
"""

from __future__ import annotations

import asyncio
import logging
import math
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import openai
from openai import AsyncOpenAI

from docpipe.core.errors import AudioExtractionError, RateLimitError, classify_error
from docpipe.core.timeouts import TimeoutManager
from docpipe.processing.chunking import TimeSegment

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

TRANSCRIPTION_MODELS = {
    "openai": "whisper-1",
    "groq":   "whisper-large-v3-turbo",
}

_MIME_FORMATS = {
    "audio/mpeg":  "mp3",
    "audio/mp3":   "mp3",
    "audio/wav":   "wav",
    "audio/x-wav": "wav",
    "audio/wave":  "wav",
    "audio/x-m4a": "m4a",
    "audio/m4a":   "m4a",
    "audio/mp4":   "m4a",
    "audio/ogg":   "ogg",
    "audio/flac":  "flac",
    "audio/x-flac": "flac",
    "audio/aac":   "aac",
    "audio/x-aac": "aac",
    "audio/webm":  "webm",
}

_KNOWN_EXTENSIONS = frozenset(_MIME_FORMATS.values())

BASE_TIMEOUT_SECONDS      = 300.0   # 5 min
PER_5MB_TIMEOUT_SECONDS   = 120.0   # +2 min per 5 MB
MAX_TIMEOUT_SECONDS       = 1800.0  # 30 min
MAX_SPLIT_DEPTH           = 2

AUDIO_MIME_TYPES = frozenset(_MIME_FORMATS)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class Transcript:
    text:     str
    segments: list[TimeSegment] = field(default_factory=list)
    duration: float = 0.0       # seconds


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class AudioExtractor:
    """
    Usage:
        extractor = AudioExtractor(provider="openai")
        transcript = await extractor.transcribe(data, "audio/mpeg", "talk.mp3")
    """

    def __init__(
        self,
        provider:         str = "openai",
        client:           AsyncOpenAI | None = None,
        max_upload_bytes: int | None = None,
        max_attempts:     int | None = None,
        ffmpeg_path:      str | None = None,
        ffprobe_path:     str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        from docpipe.core.config import settings

        if provider not in TRANSCRIPTION_MODELS:
            raise ValueError(f"Unknown transcription provider: {provider}")

        self._provider         = provider
        self._model            = TRANSCRIPTION_MODELS[provider]
        self._client           = client or _build_client(provider)
        self._max_upload_bytes = max_upload_bytes or settings.audio_max_upload_bytes
        self._max_attempts     = max_attempts or settings.audio_max_attempts
        self._ffmpeg           = ffmpeg_path or settings.ffmpeg_path
        self._ffprobe          = ffprobe_path or settings.ffprobe_path
        self._sleep            = sleep
        self._timeouts         = TimeoutManager("transcription")

    async def transcribe(
        self,
        data:      bytes,
        mime_type: str | None = None,
        file_name: str | None = None,
        _depth:    int = 0,
    ) -> Transcript:
        if not data:
            raise AudioExtractionError("Audio payload is empty")

        audio_format = get_audio_format(mime_type, file_name)

        try:
            if len(data) > self._max_upload_bytes:
                if _depth >= MAX_SPLIT_DEPTH:
                    raise AudioExtractionError(
                        f"Audio piece still exceeds {self._max_upload_bytes} bytes after splitting"
                    )
                transcript = await self._transcribe_split(data, audio_format, _depth)
            else:
                transcript = await self._transcribe_single(data, audio_format)
        finally:
            if _depth == 0:
                self._timeouts.cleanup()

        # A silent piece inside a split file is fine; the whole file is not.
        if _depth == 0 and not transcript.text.strip():
            raise AudioExtractionError("Transcription produced no text")
        return transcript

    # ------------------------------------------------------------------
    # Single request with transport retry
    # ------------------------------------------------------------------

    async def _transcribe_single(self, data: bytes, audio_format: str) -> Transcript:
        timeout = transcription_timeout(len(data))

        for attempt in range(1, self._max_attempts + 1):
            t0 = time.monotonic()
            try:
                response = await self._timeouts.race(
                    self._client.audio.transcriptions.create(
                        model=self._model,
                        file=(f"audio.{audio_format}", data),
                        response_format="verbose_json",
                    ),
                    seconds=timeout,
                    description=f"transcribe[{self._provider}]",
                )
            except openai.APIConnectionError as exc:
                if attempt >= self._max_attempts:
                    raise AudioExtractionError(
                        f"Transcription failed after {attempt} attempts: {exc}",
                        retryable=True,
                    ) from exc
                delay = 2 ** attempt
                logger.warning(
                    "Transcription retry | provider=%s attempt=%d/%d delay=%ds error=%s",
                    self._provider, attempt, self._max_attempts, delay, exc,
                )
                await self._sleep(delay)
                continue
            except openai.APIStatusError as exc:
                raise _map_status_error(exc) from exc

            transcript = _parse_response(response)
            logger.info(
                "Transcription | provider=%s bytes=%d segments=%d duration=%.1fs api_ms=%.0f",
                self._provider, len(data), len(transcript.segments),
                transcript.duration, (time.monotonic() - t0) * 1000,
            )
            return transcript

        raise AudioExtractionError("Transcription attempts exhausted")

    # ------------------------------------------------------------------
    # Split → transcribe pieces in order → reassemble
    # ------------------------------------------------------------------

    async def _transcribe_split(self, data: bytes, audio_format: str, depth: int) -> Transcript:
        work_dir = Path(tempfile.mkdtemp(prefix="docpipe-audio-"))
        try:
            source = work_dir / f"input.{audio_format}"
            source.write_bytes(data)

            duration = await self.probe_duration(source)
            piece_count, piece_seconds = plan_split(duration, len(data), self._max_upload_bytes)
            logger.info(
                "Audio split | bytes=%d duration=%.1fs pieces=%d piece_secs=%.1f",
                len(data), duration, piece_count, piece_seconds,
            )

            pieces = await self.split_audio(source, piece_seconds, audio_format, work_dir)
            if not pieces:
                raise AudioExtractionError("ffmpeg produced no audio pieces")

            texts:    list[str] = []
            segments: list[TimeSegment] = []
            offset = 0.0

            for piece in pieces:
                part = await self.transcribe(
                    piece.read_bytes(),
                    file_name=piece.name,
                    _depth=depth + 1,
                )
                segments.extend(
                    TimeSegment(start=s.start + offset, end=s.end + offset, text=s.text)
                    for s in part.segments
                )
                if part.text:
                    texts.append(part.text)
                offset += part.duration

            return Transcript(text=" ".join(texts), segments=segments, duration=offset or duration)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def probe_duration(self, path: Path) -> float:
        stdout = await self._run_tool(
            self._ffprobe,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(path),
        )
        try:
            duration = float(stdout.strip())
        except ValueError as exc:
            raise AudioExtractionError(f"Could not parse audio duration: {stdout!r}") from exc
        if duration <= 0:
            raise AudioExtractionError(f"Invalid audio duration: {duration}")
        return duration

    async def split_audio(
        self,
        source:        Path,
        piece_seconds: float,
        audio_format:  str,
        work_dir:      Path,
    ) -> list[Path]:
        pattern = work_dir / f"chunk_%03d.{audio_format}"
        await self._run_tool(
            self._ffmpeg,
            "-i", str(source),
            "-f", "segment",
            "-segment_time", f"{piece_seconds:.3f}",
            "-c", "copy",
            "-reset_timestamps", "0",
            str(pattern),
            "-y",
        )
        return sorted(work_dir.glob(f"chunk_*.{audio_format}"))

    async def _run_tool(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AudioExtractionError(
                f"{args[0]} not found; install ffmpeg to process audio larger than "
                f"{self._max_upload_bytes // (1024 * 1024)} MB"
            ) from exc

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise AudioExtractionError(
                f"{Path(args[0]).name} exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace')[-500:]}"
            )
        return stdout.decode(errors="replace")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_client(provider: str) -> AsyncOpenAI:
    from docpipe.core.config import settings

    if provider == "groq":
        return AsyncOpenAI(api_key=settings.groq_api_key, base_url=settings.groq_base_url)
    return AsyncOpenAI(api_key=settings.openai_api_key)


def get_audio_format(mime_type: str | None, file_name: str | None = None) -> str:
    if mime_type:
        fmt = _MIME_FORMATS.get(mime_type.lower().split(";")[0].strip())
        if fmt:
            return fmt
    if file_name and "." in file_name:
        ext = file_name.rsplit(".", 1)[-1].lower()
        if ext in _KNOWN_EXTENSIONS:
            return ext
    return "mp3"


def transcription_timeout(size_bytes: int) -> float:
    size_mb = size_bytes / (1024 * 1024)
    return min(BASE_TIMEOUT_SECONDS + PER_5MB_TIMEOUT_SECONDS * (size_mb / 5), MAX_TIMEOUT_SECONDS)


def plan_split(duration: float, size_bytes: int, max_bytes: int) -> tuple[int, float]:
    """Return (piece_count, piece_seconds) so each piece fits under max_bytes."""
    piece_count = max(1, math.ceil(size_bytes / max_bytes))
    return piece_count, duration / piece_count


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _parse_response(response: Any) -> Transcript:
    segments = [
        TimeSegment(
            start=float(_field(seg, "start", 0.0)),
            end=float(_field(seg, "end", 0.0)),
            text=str(_field(seg, "text", "")).strip(),
        )
        for seg in (_field(response, "segments") or [])
        if str(_field(seg, "text", "")).strip()
    ]
    duration = _field(response, "duration")
    if duration is None:
        duration = segments[-1].end if segments else 0.0

    return Transcript(
        text=str(_field(response, "text", "") or "").strip(),
        segments=segments,
        duration=float(duration),
    )


def _map_status_error(exc: openai.APIStatusError) -> Exception:
    status = exc.status_code
    if status == 413:
        return AudioExtractionError("Audio file too large for the transcription provider")
    if status == 400:
        return AudioExtractionError(f"Unsupported or corrupt audio format: {exc}")
    if status == 429:
        error = classify_error(exc)
        return error if isinstance(error, RateLimitError) else RateLimitError(str(exc))
    return classify_error(exc)
