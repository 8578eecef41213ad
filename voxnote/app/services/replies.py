# voxnote/app/services/replies.py
"""
User-facing message texts, French and English.
"""
from __future__ import annotations

from typing import Optional

DEFAULT_LANGUAGE = "fr"

TEXTS: dict[str, dict[str, str]] = {
    "fr": {
        "subscription_inactive": "❌ Votre abonnement a expiré. Renouvelez sur {dashboard_url}",
        "quota_exhausted": "❌ Quota dépassé. Il vous reste 0 minutes.",
        "download_failed": "❌ Impossible de télécharger le message vocal",
        "too_long": "❌ Audio trop long (max {max_minutes} min)",
        "not_enough_quota": "❌ Quota dépassé pour ce message. Il vous reste {remaining} min",
        "processing_error": "❌ Erreur lors de la transcription. Réessayez dans quelques instants.",
        "transcription_header": "📝 *TRANSCRIPTION*",
        "empty_transcription": "_(aucune parole détectée)_",
        "summary_header": "📌 *RÉSUMÉ*",
        "remaining": "📊 _{remaining} min restantes_",
        "welcome": (
            "🎉 *Voxnote connecté !*\n\n"
            "✅ Je suis prêt à transcrire vos messages vocaux\n"
            "🎤 Recevez ou envoyez un message vocal dans n'importe quelle conversation\n"
            "⚡ La transcription arrive juste après"
        ),
        "quota_warning": (
            "⚠️ *Attention !*\n\nVous avez utilisé {used_percent}% de votre quota mensuel.\n"
            "Il vous reste {remaining} minutes sur {total}.\n\n👉 Augmentez votre limite : {upgrade_url}"
        ),
        "quota_exhausted_notice": (
            "🔴 *Quota mensuel atteint*\n\nVous avez utilisé vos {total} minutes de ce mois.\n"
            "Renouvellement le {renewal_date}.\n\n👉 Passer à un plan supérieur : {upgrade_url}"
        ),
    },
    "en": {
        "subscription_inactive": "❌ Your subscription has expired. Renew at {dashboard_url}",
        "quota_exhausted": "❌ Quota exceeded. You have 0 minutes left.",
        "download_failed": "❌ Could not download the voice message",
        "too_long": "❌ Audio too long (max {max_minutes} min)",
        "not_enough_quota": "❌ Quota exceeded for this message. You have {remaining} min left",
        "processing_error": "❌ Transcription error. Please try again in a moment.",
        "transcription_header": "📝 *TRANSCRIPTION*",
        "empty_transcription": "_(no speech detected)_",
        "summary_header": "📌 *SUMMARY*",
        "remaining": "📊 _{remaining} min left_",
        "welcome": (
            "🎉 *Voxnote connected!*\n\n"
            "✅ Ready to transcribe your voice messages\n"
            "🎤 Receive or send a voice message in any chat\n"
            "⚡ The transcription follows right after"
        ),
        "quota_warning": (
            "⚠️ *Warning!*\n\nYou have used {used_percent}% of your monthly quota.\n"
            "You have {remaining} minutes left out of {total}.\n\n👉 Increase your limit: {upgrade_url}"
        ),
        "quota_exhausted_notice": (
            "🔴 *Monthly quota reached*\n\nYou have used your {total} minutes for this month.\n"
            "Renewal on {renewal_date}.\n\n👉 Upgrade your plan: {upgrade_url}"
        ),
    },
}


def text(key: str, language: Optional[str] = None, **values: object) -> str:
    table = TEXTS.get(language or DEFAULT_LANGUAGE, TEXTS[DEFAULT_LANGUAGE])
    return table[key].format(**values)


def format_minutes(minutes: float, decimals: int = 0) -> str:
    value = round(minutes, decimals)
    if decimals == 0 or float(value).is_integer():
        return str(int(value))
    return f"{value:.{decimals}f}"
