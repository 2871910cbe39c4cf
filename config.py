# -*- coding: utf-8 -*-
"""
Configuration module for Story Studio
Centralizes all settings with validation and defaults
"""

import os
from pathlib import Path
from typing import List, Optional, Dict
from dataclasses import dataclass, field
from enum import Enum
from dotenv import load_dotenv

# Load .env file
load_dotenv()


# Single-value variables; each may hold one key or a comma-separated list
SYSTEM_KEY_VARS = ["GEMINI_API_KEY", "GOOGLE_API_KEY", "API_KEY"]

# Numbered variables: GEMINI_API_KEY_1, GEMINI_API_KEY_2, ...
NUMBERED_KEY_PREFIX = "GEMINI_API_KEY_"

# Upper bound on the user-supplied key list
MAX_USER_KEYS = 10


def split_keys(value: Optional[str]) -> List[str]:
    """Split a comma-separated key string into trimmed, non-empty keys"""
    if not value:
        return []
    keys = []
    for part in value.split(","):
        part = part.strip()
        if part and not part.startswith("your-"):
            keys.append(part)
    return keys


def normalize_keys(keys: List[str]) -> List[str]:
    """Trim, drop empties and de-duplicate while keeping first-seen order"""
    result = []
    for key in keys:
        if not key:
            continue
        key = key.strip()
        if key and key not in result:
            result.append(key)
    return result


def get_gemini_keys_from_env(environ: Optional[Dict[str, str]] = None) -> List[str]:
    """Load all system-supplied Gemini API keys from environment variables"""
    if environ is None:
        environ = os.environ

    keys = []
    found_vars = []

    for var in SYSTEM_KEY_VARS:
        values = split_keys(environ.get(var))
        if values:
            keys.extend(values)
            found_vars.append(var)

    for var_name in sorted(environ):
        if var_name.startswith(NUMBERED_KEY_PREFIX):
            values = split_keys(environ.get(var_name))
            if values:
                keys.extend(values)
                found_vars.append(var_name)

    keys = normalize_keys(keys)
    print(f"[Config] Loaded {len(keys)} system Gemini API keys from environment", flush=True)
    if found_vars:
        # Variable names only, never the keys
        print(f"[Config] Found key variables: {found_vars}", flush=True)

    return keys


def get_patterns_from_env(var: str) -> List[str]:
    """Extra failure patterns (comma-separated regexes) from the environment"""
    value = os.environ.get(var, "")
    return [p.strip() for p in value.split(",") if p.strip()]


class AspectRatio(str, Enum):
    PORTRAIT = "9:16"
    LANDSCAPE = "16:9"


class Resolution(str, Enum):
    HD = "720p"
    FULL_HD = "1080p"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    UNSPECIFIED = "unspecified"


class Voice(str, Enum):
    KORE = "Kore"
    PUCK = "Puck"
    ZEPHYR = "Zephyr"


class VeoModel(str, Enum):
    VEO_31_FAST = "veo-3.1-fast-generate-preview"
    VEO_31 = "veo-3.1-generate-preview"
    VEO_20 = "veo-2.0-generate-preview"


class ErrorCode(str, Enum):
    # Per-attempt API errors
    API_KEY_INVALID = "API_KEY_INVALID"
    RATE_LIMIT = "RATE_LIMIT_429"
    API_SERVER_ERROR = "API_SERVER_ERROR"

    # Key pool
    NO_KEYS_CONFIGURED = "NO_KEYS_CONFIGURED"
    USER_KEYS_EXHAUSTED = "USER_KEYS_EXHAUSTED"
    SYSTEM_KEYS_EXHAUSTED = "SYSTEM_KEYS_EXHAUSTED"

    # Generation
    INVALID_RESPONSE = "INVALID_RESPONSE"
    CONTENT_BLOCKED = "CONTENT_BLOCKED"
    GENERATION_FAILED = "GENERATION_FAILED"
    GENERATION_TIMEOUT = "GENERATION_TIMEOUT"

    # User errors
    INVALID_REQUEST = "INVALID_REQUEST"

    # Unknown
    UNKNOWN = "UNKNOWN_ERROR"


@dataclass
class AppConfig:
    """Application-wide configuration"""

    base_dir: Path = field(default_factory=lambda: Path(__file__).parent)
    data_dir: Path = field(default=None)

    # Database (holds the persisted user key list)
    database_url: str = field(default=None)

    # Server
    host: str = "0.0.0.0"
    port: int = field(default_factory=lambda: int(os.environ.get("PORT", "8000")))
    debug: bool = field(default_factory=lambda: os.environ.get("DEBUG", "false").lower() == "true")

    # Image generation
    # Gap between sequential scene images; 30s keeps a single key under the per-minute limit
    image_request_interval: float = field(default_factory=lambda: float(os.environ.get("IMAGE_REQUEST_INTERVAL_SEC", "30")))
    image_max_attempts: int = field(default_factory=lambda: int(os.environ.get("IMAGE_MAX_ATTEMPTS", "5")))

    # Video generation
    video_poll_interval: float = field(default_factory=lambda: float(os.environ.get("VIDEO_POLL_INTERVAL_SEC", "5")))
    video_timeout: float = field(default_factory=lambda: float(os.environ.get("VIDEO_TIMEOUT_SEC", "600")))

    # Extra failure-classification patterns appended to the built-in lists
    extra_auth_patterns: List[str] = field(default_factory=lambda: get_patterns_from_env("AUTH_ERROR_PATTERNS"))
    extra_retryable_patterns: List[str] = field(default_factory=lambda: get_patterns_from_env("RETRYABLE_ERROR_PATTERNS"))

    def __post_init__(self):
        if self.data_dir is None:
            data_env = os.environ.get("DATA_DIR")
            self.data_dir = Path(data_env) if data_env else self.base_dir / "data"

        if self.database_url is None:
            db_env = os.environ.get("DATABASE_URL")
            if db_env:
                self.database_url = db_env
            else:
                self.database_url = f"sqlite:///{self.data_dir / 'studio.db'}"

    def ensure_dirs(self):
        """Create the data directory, falling back to a temp directory"""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            print(f"[Config] Warning: Cannot create {self.data_dir} - using temp directory", flush=True)
            import tempfile
            self.data_dir = Path(tempfile.gettempdir()) / "story-studio"
            self.data_dir.mkdir(parents=True, exist_ok=True)
            if self.database_url.startswith("sqlite:///") and "DATABASE_URL" not in os.environ:
                self.database_url = f"sqlite:///{self.data_dir / 'studio.db'}"

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []
        if self.image_request_interval < 0:
            errors.append("IMAGE_REQUEST_INTERVAL_SEC cannot be negative")
        if self.image_max_attempts < 1:
            errors.append("IMAGE_MAX_ATTEMPTS must be at least 1")
        if self.video_poll_interval <= 0:
            errors.append("VIDEO_POLL_INTERVAL_SEC must be positive")
        if self.video_timeout <= 0:
            errors.append("VIDEO_TIMEOUT_SEC must be positive")
        return errors


# Gemini model configuration
TEXT_MODEL = "gemini-2.5-flash"
IMAGE_MODEL = "gemini-2.5-flash-image"
SPEECH_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_VEO_MODEL = VeoModel.VEO_31_FAST

# Speech output format (raw PCM from the TTS model)
SPEECH_SAMPLE_RATE = 24000
SPEECH_CHANNELS = 1
SPEECH_BITS_PER_SAMPLE = 16

VIDEO_DOWNLOAD_MAX_ATTEMPTS = 3

STORY_IDEAS_COUNT = 8
STORY_SCENES_COUNT = 8
UGC_SCENES_COUNT = 7

# Option tables served to the UI
GENRES = [
    {"name": "Petualangan Fantasi", "value": "fantasy_adventure", "emoji": "🧙"},
    {"name": "Misteri Fiksi Ilmiah", "value": "sci_fi_mystery", "emoji": "👽"},
    {"name": "Komedi Mengharukan", "value": "heartwarming_comedy", "emoji": "😂"},
    {"name": "Pencarian Epik", "value": "epic_quest", "emoji": "🗺️"},
    {"name": "Asal-usul Pahlawan Super", "value": "superhero_origin", "emoji": "🦸"},
    {"name": "Thriller Menyeramkan", "value": "spooky_thriller", "emoji": "👻"},
]

VOICE_OPTIONS = [
    {"name": "Wanita (Narator)", "value": Voice.KORE.value},
    {"name": "Pria (Narator)", "value": Voice.PUCK.value},
    {"name": "Pria (Bersemangat)", "value": Voice.ZEPHYR.value},
]

UGC_LANGUAGES = [
    {"name": "Indonesia", "value": "Indonesian"},
    {"name": "Inggris", "value": "English"},
    {"name": "Jepang", "value": "Japanese"},
    {"name": "Korea", "value": "Korean"},
    {"name": "Spanyol", "value": "Spanish"},
    {"name": "Malaysia", "value": "Malay"},
    {"name": "India", "value": "Hindi"},
]


# Singleton app config
app_config = AppConfig()
