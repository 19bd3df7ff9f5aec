"""Prompt moderation.

:class:`ModerationFilter` screens every prompt before it is admitted to the
queue.  Checks are deterministic keyword rules grouped into three policy
categories; the first matching category decides the verdict and its reason
string, which is stable so clients can rely on it.

The filter never raises.  An unexpected internal failure is logged and turned
into a rejection, so a broken rule can only block prompts, never let them
through unchecked.
"""

from __future__ import annotations

import logging
import re

from .jobs import Mode, ModerationVerdict

logger = logging.getLogger(__name__)

EXPLICIT = "explicit"
VIOLENT = "violent"
IDENTITY_ABUSE = "identity-abuse"

REASONS: dict[str, str] = {
    EXPLICIT: "Prompt rejected: explicit content",
    VIOLENT: "Prompt rejected: violent content",
    IDENTITY_ABUSE: "Prompt rejected: identity abuse",
}

# Whole-word patterns, matched case-insensitively.
DEFAULT_TERMS: dict[str, list[str]] = {
    EXPLICIT: [r"nude", r"nudity", r"naked", r"porn\w*", r"nsfw", r"explicit sex\w*", r"hentai"],
    VIOLENT: [
        r"gore",
        r"gory",
        r"behead\w*",
        r"decapitat\w*",
        r"dismember\w*",
        r"massacre",
        r"torture[sd]?",
        r"mutilat\w*",
    ],
    IDENTITY_ABUSE: [
        r"deepfake\w*",
        r"impersonat\w*",
        r"phishing",
        r"voice clone of",
        r"fake (?:id|passport|login page)",
    ],
}


class ModerationFilter:
    """Keyword-based policy filter.

    Args:
        extra_terms: Additional regex fragments per category, appended to the
            defaults.  Unknown categories are ignored with a warning.
    """

    def __init__(self, extra_terms: dict[str, list[str]] | None = None) -> None:
        terms = {category: list(patterns) for category, patterns in DEFAULT_TERMS.items()}
        for category, patterns in (extra_terms or {}).items():
            if category not in terms:
                logger.warning("Ignoring moderation terms for unknown category '%s'", category)
                continue
            terms[category].extend(patterns)

        self._rules: list[tuple[str, re.Pattern[str]]] = [
            (category, re.compile(r"\b(?:" + "|".join(patterns) + r")\b", re.IGNORECASE))
            for category, patterns in terms.items()
        ]

    def check(self, prompt: str, mode: Mode) -> ModerationVerdict:
        """Return the verdict for *prompt* submitted in *mode*."""
        try:
            for category, pattern in self._rules:
                if pattern.search(prompt):
                    logger.info("Moderation rejected %s prompt (category=%s)", mode.value, category)
                    return ModerationVerdict.reject(REASONS[category])
        except Exception:
            logger.exception("Moderation check failed; rejecting prompt")
            return ModerationVerdict.reject("Prompt rejected: moderation unavailable")
        return ModerationVerdict.accept()
