# -*- coding: utf-8 -*-
"""
Story Studio - Main FastAPI Application

Features:
- REST API for stories, scene images, narration, lyrics, UGC packages and Veo clips
- User API key management (persisted, rotated with the server's own keys as fallback)
- Distinct "keys exhausted" error so the UI can prompt for new keys
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from config import (
    app_config, AspectRatio, Resolution, Gender, Voice, VeoModel, ErrorCode,
    GENRES, VOICE_OPTIONS, UGC_LANGUAGES, DEFAULT_VEO_MODEL, MAX_USER_KEYS,
)
from error_handler import KeysExhaustedError, error_handler, format_error_for_log
from gemini_service import GeminiService
from key_pool import KeyPoolManager, mask_key
from key_store import UserKeyStore
from models import init_db

logger = logging.getLogger(__name__)


# ============ Pydantic Models ============

class UserKeysInput(BaseModel):
    keys: List[str] = Field(default_factory=list, max_length=MAX_USER_KEYS)


class GenreRequest(BaseModel):
    genre: str = Field(min_length=1)


class PolishRequest(BaseModel):
    text: str = Field(min_length=1)


class FullStoryRequest(BaseModel):
    story_text: str = Field(min_length=1)
    genre: str = Field(min_length=1)
    gender: Gender = Gender.UNSPECIFIED


class ScenesRequest(BaseModel):
    full_story: str = Field(min_length=1)
    character_description: str = ""


class ImageRequest(BaseModel):
    prompt: str = Field(min_length=1)
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT


class ImageBatchRequest(BaseModel):
    prompts: List[str] = Field(min_length=1, max_length=16)
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT
    parallel: bool = False


class SpeechRequest(BaseModel):
    text: str = Field(min_length=1)
    voice: Voice = Voice.KORE


class LyricsSearchRequest(BaseModel):
    query: str = Field(min_length=1)


class LyricsTranslateRequest(BaseModel):
    text: str = Field(min_length=1)
    target_language: str = "Indonesian"


class UGCRequest(BaseModel):
    scenario: str = Field(min_length=1)
    language: str = "Indonesian"
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT
    parallel: bool = False


class VideoRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: VeoModel = DEFAULT_VEO_MODEL
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    resolution: Resolution = Resolution.HD
    image_base64: Optional[str] = None


# ============ Application Setup ============

def build_services(app: FastAPI, key_pool: KeyPoolManager = None, service: GeminiService = None):
    """Attach the shared key pool and generation service to the app"""
    if key_pool is None:
        key_pool = KeyPoolManager(store=UserKeyStore())
    if service is None:
        service = GeminiService(key_pool)
    app.state.key_pool = key_pool
    app.state.gemini_service = service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    logging.basicConfig(
        level=logging.DEBUG if app_config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for error in app_config.validate():
        print(f"[Config] Warning: {error}", flush=True)

    init_db()
    if getattr(app.state, "key_pool", None) is None:
        build_services(app)

    status = app.state.key_pool.get_status()
    print(f"[App] Started with {status['total']} {status['source']} API key(s)", flush=True)

    yield

    print("[App] Shutdown complete", flush=True)


app = FastAPI(
    title="Story Studio",
    description="Stories, illustrations, narration, lyrics and video with Google Gemini",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_key_pool(request: Request) -> KeyPoolManager:
    return request.app.state.key_pool


def get_service(request: Request) -> GeminiService:
    return request.app.state.gemini_service


# ============ Error Handling ============

STATUS_BY_CODE = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.CONTENT_BLOCKED: 422,
    ErrorCode.INVALID_RESPONSE: 502,
    ErrorCode.GENERATION_FAILED: 502,
    ErrorCode.GENERATION_TIMEOUT: 504,
}


@app.exception_handler(KeysExhaustedError)
async def keys_exhausted_handler(request: Request, exc: KeysExhaustedError):
    """All keys failed (or none configured) - the UI should ask for keys"""
    return JSONResponse(
        status_code=503,
        content={"detail": exc.message, **exc.to_dict()},
    )


async def run_generation(label: str, awaitable: Awaitable[Any]) -> Any:
    """
    Await a generation and map fatal errors to HTTP errors.

    The underlying message is passed through as-is: retrying with another
    key cannot fix these.
    """
    try:
        return await awaitable
    except KeysExhaustedError:
        raise
    except Exception as e:
        error = error_handler.classify_exception(e, {"operation": label})
        logger.error(format_error_for_log(error, e))
        raise HTTPException(
            status_code=STATUS_BY_CODE.get(error.code, 500),
            detail={
                "code": error.code.value,
                "message": error.user_message,
                "suggestion": error.suggestion,
            },
        )


# ============ Meta ============

@app.api_route("/api/health", methods=["GET", "HEAD"])
async def health_check(key_pool: KeyPoolManager = Depends(get_key_pool)):
    """Health check endpoint"""
    status = key_pool.get_status()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "keys": {
            "source": status["source"],
            "total": status["total"],
            "active": status["active"],
        },
        "errors": error_handler.get_error_summary(),
    }


@app.get("/api/options")
async def get_options():
    """Option tables for the UI"""
    return {
        "genres": GENRES,
        "voices": VOICE_OPTIONS,
        "ugc_languages": UGC_LANGUAGES,
        "aspect_ratios": [r.value for r in AspectRatio],
        "resolutions": [r.value for r in Resolution],
        "veo_models": [m.value for m in VeoModel],
        "max_user_keys": MAX_USER_KEYS,
    }


@app.get("/api/error-codes")
async def get_error_codes():
    """Get list of all error codes and their meanings"""
    return {
        code.value: {
            "name": code.name,
            "value": code.value,
        }
        for code in ErrorCode
    }


# ============ User API Keys ============

def _keys_response(key_pool: KeyPoolManager) -> dict:
    user_keys = key_pool.get_user_credentials()
    pool_status = key_pool.get_status()
    if not key_pool.is_user_supplied:
        # Server keys are never listed, even masked
        pool_status.pop("keys", None)
    return {
        "keys": [mask_key(k) for k in user_keys],
        "count": len(user_keys),
        "has_keys": len(user_keys) > 0,
        "pool": pool_status,
    }


@app.get("/api/keys")
async def list_user_keys(key_pool: KeyPoolManager = Depends(get_key_pool)):
    """Saved user keys (masked) and current pool status"""
    return _keys_response(key_pool)


@app.put("/api/keys")
async def save_user_keys(request: UserKeysInput, key_pool: KeyPoolManager = Depends(get_key_pool)):
    """Replace the saved user keys and rebuild the pool"""
    key_pool.set_user_credentials(request.keys)
    logger.info(f"[API Keys] Saved {len(key_pool.get_user_credentials())} user key(s)")
    return {"success": True, **_keys_response(key_pool)}


@app.delete("/api/keys")
async def delete_user_keys(key_pool: KeyPoolManager = Depends(get_key_pool)):
    """Forget the user keys; the pool falls back to the server keys"""
    key_pool.set_user_credentials([])
    return {"success": True, **_keys_response(key_pool)}


# ============ Story ============

@app.post("/api/story/ideas")
async def story_ideas(request: GenreRequest, service: GeminiService = Depends(get_service)):
    ideas = await run_generation("story_ideas", service.generate_story_ideas(request.genre))
    return {"ideas": ideas}


@app.post("/api/story/polish")
async def story_polish(request: PolishRequest, service: GeminiService = Depends(get_service)):
    text = await run_generation("polish_story", service.polish_story_text(request.text))
    return {"text": text}


@app.post("/api/story/full")
async def story_full(request: FullStoryRequest, service: GeminiService = Depends(get_service)):
    story = await run_generation(
        "full_story",
        service.generate_full_story(request.story_text, request.genre, request.gender),
    )
    return {"story": story}


@app.post("/api/story/scenes")
async def story_scenes(request: ScenesRequest, service: GeminiService = Depends(get_service)):
    scenes = await run_generation(
        "story_scenes",
        service.generate_story_scenes(request.full_story, request.character_description),
    )
    return {"scenes": scenes}


# ============ Images ============

@app.post("/api/images")
async def create_image(request: ImageRequest, service: GeminiService = Depends(get_service)):
    image = await run_generation("image", service.generate_image(request.prompt, request.aspect_ratio))
    return {"image": image}


@app.post("/api/images/batch")
async def create_image_batch(request: ImageBatchRequest, service: GeminiService = Depends(get_service)):
    results = await run_generation(
        "image_batch",
        service.generate_image_batch(request.prompts, request.aspect_ratio, parallel=request.parallel),
    )
    return {
        "images": results,
        "completed": sum(1 for r in results if r.image),
        "failed": sum(1 for r in results if r.error),
    }


# ============ Speech ============

@app.post("/api/speech")
async def create_speech(request: SpeechRequest, service: GeminiService = Depends(get_service)):
    return await run_generation("speech", service.generate_speech(request.text, request.voice))


# ============ Lyrics ============

@app.post("/api/lyrics/search")
async def search_lyrics(request: LyricsSearchRequest, service: GeminiService = Depends(get_service)):
    return await run_generation("lyrics", service.generate_lyrics(request.query))


@app.post("/api/lyrics/translate")
async def translate_lyrics(request: LyricsTranslateRequest, service: GeminiService = Depends(get_service)):
    lines = await run_generation(
        "translate_lyrics",
        service.translate_lyrics(request.text, request.target_language),
    )
    return {"lines": lines}


# ============ UGC ============

@app.post("/api/ugc/scripts")
async def ugc_scripts(request: UGCRequest, service: GeminiService = Depends(get_service)):
    scenes = await run_generation("ugc_scripts", service.generate_ugc_scripts(request.scenario, request.language))
    return {"scenes": scenes}


@app.post("/api/ugc/package")
async def ugc_package(request: UGCRequest, service: GeminiService = Depends(get_service)):
    return await run_generation(
        "ugc_package",
        service.generate_ugc_package(
            request.scenario, request.language, request.aspect_ratio, parallel=request.parallel,
        ),
    )


# ============ Video ============

@app.post("/api/video")
async def create_video(request: VideoRequest, service: GeminiService = Depends(get_service)):
    """Generate a Veo clip; responds with the MP4 bytes"""
    video = await run_generation(
        "video",
        service.generate_video(
            request.prompt,
            model=request.model,
            aspect_ratio=request.aspect_ratio,
            resolution=request.resolution,
            image_base64=request.image_base64,
        ),
    )
    return Response(content=video, media_type="video/mp4")


# ============ Main Entry Point ============

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=app_config.host,
        port=app_config.port,
        reload=app_config.debug,
    )
