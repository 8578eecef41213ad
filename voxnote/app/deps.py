# voxnote/app/deps.py
"""
Process-wide singletons, built once at startup and exposed as FastAPI dependencies.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from supabase import Client, create_client

from voxnote.app.config import Settings, get_settings
from voxnote.app.infra.cache.two_tier import TwoTierCache, create_redis_client
from voxnote.app.infra.db.supabase_repo import (
    SupabaseSubscriptionRepository,
    SupabaseTranscriptRepository,
    SupabaseUsageRepository,
    SupabaseUserProfileRepository,
)
from voxnote.app.infra.messaging.base import load_client_factory
from voxnote.app.services.media import MediaTools
from voxnote.app.services.notifications import QuotaNotifier
from voxnote.app.services.profile_service import ProfileService
from voxnote.app.services.quota_service import QuotaLedger
from voxnote.app.services.session_manager import SessionManager
from voxnote.app.services.summary_service import SummaryService
from voxnote.app.services.transcription import WhisperTranscriber
from voxnote.app.services.voice_pipeline import PipelineTimeouts, VoiceNotePipeline
from voxnote.app.services.voice_queue import VoiceNoteQueue
from voxnote.services.gemini_client import GeminiClient

logger = logging.getLogger(__name__)

_client: Client | None = None
_services: "Services | None" = None


def get_supabase() -> Client:
    global _client
    if _client is None:
        settings = get_settings()
        _client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


@dataclass
class Services:
    cache: TwoTierCache
    sessions: SessionManager
    pipeline: VoiceNotePipeline
    queue: VoiceNoteQueue
    notifier: QuotaNotifier


def build_services(settings: Settings) -> Services:
    supa = get_supabase()
    cache = TwoTierCache(redis=create_redis_client(settings.REDIS_URL))

    subscriptions = SupabaseSubscriptionRepository(supa)
    profiles = ProfileService(SupabaseUserProfileRepository(supa), cache)
    transcripts = SupabaseTranscriptRepository(supa)
    ledger = QuotaLedger(SupabaseUsageRepository(supa))

    sessions = SessionManager(
        client_factory=load_client_factory(settings.MESSAGING_CLIENT_FACTORY),
        sessions_root=Path(settings.SESSION_PATH),
        cache=cache,
        pairing_poll_attempts=settings.PAIRING_POLL_ATTEMPTS,
        pairing_poll_interval=settings.PAIRING_POLL_INTERVAL_SECONDS,
        welcome_language=settings.DEFAULT_LANGUAGE,
    )

    notifier = QuotaNotifier(
        subscriptions=subscriptions,
        profiles=profiles,
        ledger=ledger,
        message_sender=sessions,
        dashboard_url=settings.DASHBOARD_URL,
    )

    if settings.GOOGLE_API_KEY:
        gemini = GeminiClient(api_key=settings.GOOGLE_API_KEY, model_name=settings.SUMMARY_MODEL)
    else:
        logger.info("GOOGLE_API_KEY not set, summaries disabled")
        gemini = None

    pipeline = VoiceNotePipeline(
        subscriptions=subscriptions,
        profiles=profiles,
        transcripts=transcripts,
        ledger=ledger,
        media=MediaTools(
            temp_dir=settings.TEMP_PATH,
            ffmpeg_timeout=settings.FFMPEG_TIMEOUT_SECONDS,
            ffprobe_timeout=settings.FFPROBE_TIMEOUT_SECONDS,
        ),
        transcriber=WhisperTranscriber(
            model_name=settings.WHISPER_MODEL,
            device=settings.WHISPER_DEVICE,
            beam_size=settings.WHISPER_BEAM_SIZE,
        ),
        summaries=SummaryService(gemini, timeout_seconds=settings.SUMMARY_TIMEOUT_SECONDS),
        messenger=sessions,
        notifier=notifier,
        timeouts=PipelineTimeouts(
            download=settings.DOWNLOAD_TIMEOUT_SECONDS,
            transcription=settings.TRANSCRIPTION_TIMEOUT_SECONDS,
        ),
        default_language=settings.DEFAULT_LANGUAGE,
        dashboard_url=settings.DASHBOARD_URL,
    )

    queue = VoiceNoteQueue(
        pipeline,
        concurrency=settings.PIPELINE_CONCURRENCY,
        max_attempts=settings.PIPELINE_MAX_ATTEMPTS,
        retry_base_delay=settings.PIPELINE_RETRY_BASE_DELAY_SECONDS,
    )
    sessions.set_voice_note_handler(queue.submit)

    return Services(cache=cache, sessions=sessions, pipeline=pipeline, queue=queue, notifier=notifier)


def set_services(services: Services | None) -> None:
    global _services
    _services = services


def current_services() -> Services | None:
    return _services


def get_services() -> Services:
    if _services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service starting")
    return _services


def get_session_manager(services: Services = Depends(get_services)) -> SessionManager:
    return services.sessions


auth_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    email: str | None = None


async def get_current_user(
    cred: HTTPAuthorizationCredentials | None = Depends(auth_scheme),
    supa: Client = Depends(get_supabase),
) -> CurrentUser:
    """
    Accepts Authorization: Bearer <access_token> issued by Supabase,
    validates it and returns the minimal user identity.
    """
    if cred is None or cred.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    try:
        res = supa.auth.get_user(cred.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid/expired token")

    user = res.user if res else None
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(id=str(user.id), email=user.email)
