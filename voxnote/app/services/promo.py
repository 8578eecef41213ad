# voxnote/app/services/promo.py
"""
Promotional footers appended to trial-tier replies.
"""
from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Optional

from cachetools import LRUCache

HIGH_USAGE_PERCENT = 80
LONG_MESSAGE_SECONDS = 180
SEPARATOR = "━━━━━━━━━━━━━━━━━━━━━━"


@dataclass(frozen=True)
class Promo:
    text: str
    cta: str
    url: str

    def render(self) -> str:
        return f"{SEPARATOR}\n{self.text}\n\n👉 {self.cta}\n🔗 {self.url}"


PROMOS: dict[str, tuple[Promo, ...]] = {
    "fr": (
        Promo("💎 Passez à Voxnote Pro et recevez vos transcriptions dans une conversation privée !",
              "Découvrir Pro →", "voxnote.app/pro"),
        Promo("🚀 Débloquez les résumés intelligents et gagnez du temps sur vos messages vocaux",
              "Découvrir les résumés →", "voxnote.app/upgrade"),
        Promo("🎯 Les pros économisent 2h/semaine avec Voxnote Pro. Et vous ?",
              "Rejoindre les pros →", "voxnote.app/pro"),
        Promo("⚡ Transcription prioritaire et messages jusqu'à 30 min avec Voxnote Pro",
              "Upgrader maintenant →", "voxnote.app/upgrade"),
    ),
    "en": (
        Promo("💎 Upgrade to Voxnote Pro and get your transcriptions in a private chat!",
              "Discover Pro →", "voxnote.app/pro"),
        Promo("🚀 Unlock smart summaries and save time on voice messages",
              "Discover summaries →", "voxnote.app/upgrade"),
        Promo("🎯 Pros save 2h/week with Voxnote Pro. What about you?",
              "Join the pros →", "voxnote.app/pro"),
        Promo("⚡ Priority transcription and messages up to 30 min with Voxnote Pro",
              "Upgrade now →", "voxnote.app/upgrade"),
    ),
}

HIGH_USAGE_PROMO = {
    "fr": Promo("📈 Vous approchez de votre limite ! Passez à un plan supérieur",
                "Augmenter ma limite →", "voxnote.app/upgrade"),
    "en": Promo("📈 You're approaching your limit! Move to a bigger plan",
                "Increase my limit →", "voxnote.app/upgrade"),
}

LONG_MESSAGE_PROMO = {
    "fr": Promo("🎙️ Messages longs ? Pro permet jusqu'à 30 min par message !",
                "Débloquer 30 min →", "voxnote.app/pro"),
    "en": Promo("🎙️ Long messages? Pro allows up to 30 min per message!",
                "Unlock 30 min →", "voxnote.app/pro"),
}


class PromoPicker:
    """Random footer per reply, never the same one twice in a row for a user."""

    def __init__(self, rng: Optional[random.Random] = None, memory_size: int = 1000):
        self._rng = rng or random.Random()
        self._last_shown: LRUCache = LRUCache(maxsize=memory_size)
        self._lock = threading.Lock()

    def pick(
        self,
        user_id: str,
        language: str = "fr",
        used_percent: int = 0,
        duration_seconds: float = 0.0,
    ) -> Promo:
        lang = language if language in PROMOS else "fr"
        pool = list(PROMOS[lang])
        if used_percent > HIGH_USAGE_PERCENT:
            pool.append(HIGH_USAGE_PROMO[lang])
        if duration_seconds > LONG_MESSAGE_SECONDS:
            pool.append(LONG_MESSAGE_PROMO[lang])

        with self._lock:
            last = self._last_shown.get(user_id)
            candidates = [promo for promo in pool if promo != last] or pool
            chosen = self._rng.choice(candidates)
            self._last_shown[user_id] = chosen
        return chosen

    def footer(self, user_id: str, language: str = "fr", **context: float) -> str:
        return self.pick(user_id, language, **context).render()
