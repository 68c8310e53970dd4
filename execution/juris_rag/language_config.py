"""
Language Configuration for Full-Text Search

The corpus is Spanish, but the PostgreSQL text-search configuration is kept
configurable (FTS_LANGUAGE) and checked against a whitelist because it is
interpolated into SQL.
"""

import os
from dataclasses import dataclass


# Supported languages with their PostgreSQL FTS config names and token ratios
SUPPORTED_LANGUAGES = {
    "es": {
        "name": "Spanish",
        "fts_config": "spanish",
        "chars_per_token": 4,
    },
    "en": {
        "name": "English",
        "fts_config": "english",
        "chars_per_token": 4,
    },
    "simple": {
        "name": "Language-agnostic",
        "fts_config": "simple",
        "chars_per_token": 4,
    },
}

# Whitelist of valid FTS language configs (for SQL injection prevention)
VALID_FTS_CONFIGS = frozenset(lang["fts_config"] for lang in SUPPORTED_LANGUAGES.values())


@dataclass
class LanguageConfig:
    """Text-search language settings shared by the store and the segmenter."""
    language: str = "es"
    fts_language: str = "spanish"
    chars_per_token: int = 4

    @classmethod
    def for_language(cls, language: str) -> "LanguageConfig":
        """
        Factory method returning defaults for a given language.

        Unknown codes fall back to Spanish.
        """
        if language not in SUPPORTED_LANGUAGES:
            language = "es"
        settings = SUPPORTED_LANGUAGES[language]
        return cls(
            language=language,
            fts_language=settings["fts_config"],
            chars_per_token=settings["chars_per_token"],
        )

    @classmethod
    def from_env(cls) -> "LanguageConfig":
        """Build from FTS_LANGUAGE (a PostgreSQL config name), default spanish."""
        fts = os.getenv("FTS_LANGUAGE", "spanish").strip().lower()
        for code, settings in SUPPORTED_LANGUAGES.items():
            if settings["fts_config"] == fts:
                return cls.for_language(code)
        return cls.for_language("es")

    def validate_fts_language(self) -> bool:
        """Check that fts_language is in the whitelist."""
        return self.fts_language in VALID_FTS_CONFIGS
