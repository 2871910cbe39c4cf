# -*- coding: utf-8 -*-
"""
Gemini content generation for Story Studio

Every public coroutine here builds one request, hands it to
execute_with_rotation() and checks the shape of what comes back:

- Story: ideas per genre, polishing, full 8-act story, 8-scene breakdown
- Images: single scene image (with same-key backoff), sequential/parallel batches
- Speech: narrated audio as raw PCM
- Lyrics: grounded lookup and line-by-line translation
- UGC: 7-scene scripts and the matching image package
- Video: Veo text/image-to-video, downloaded server-side
"""

import asyncio
import base64
import binascii
import json
import logging
import re
import time
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import httpx
from google.genai import types
from pydantic import BaseModel, TypeAdapter, ValidationError

from config import (
    AppConfig, AspectRatio, Gender, Resolution, Voice, VeoModel, app_config,
    TEXT_MODEL, IMAGE_MODEL, SPEECH_MODEL, DEFAULT_VEO_MODEL,
    SPEECH_SAMPLE_RATE, SPEECH_CHANNELS, SPEECH_BITS_PER_SAMPLE,
    STORY_IDEAS_COUNT, STORY_SCENES_COUNT, UGC_SCENES_COUNT, VIDEO_DOWNLOAD_MAX_ATTEMPTS,
)
from error_handler import (
    ErrorHandler, GenerationFailedError, GenerationTimeoutError, InvalidResponseError,
    KeysExhaustedError, error_handler as default_error_handler,
)
from key_pool import KeyPoolManager
from rotation import MinIntervalGate, execute_with_rotation, retry_with_backoff

logger = logging.getLogger(__name__)


# ============ Response models ============

class StoryIdea(BaseModel):
    id: str
    text: str


class StoryScene(BaseModel):
    image_prompt: str
    narration: str


class LyricLine(BaseModel):
    original: str
    translated: str


class LyricSource(BaseModel):
    title: Optional[str] = None
    uri: str


class LyricResult(BaseModel):
    lyrics: str
    sources: List[LyricSource] = []


class UGCScene(BaseModel):
    visual_prompt: str
    spoken_script: str


class SpeechResult(BaseModel):
    audio_base64: str
    mime_type: str = f"audio/L16;rate={SPEECH_SAMPLE_RATE}"
    sample_rate: int = SPEECH_SAMPLE_RATE
    channels: int = SPEECH_CHANNELS
    bits_per_sample: int = SPEECH_BITS_PER_SAMPLE


class ImageResult(BaseModel):
    index: int
    prompt: str
    image: Optional[str] = None  # data URL
    error: Optional[str] = None


# ============ Payload helpers ============

_FENCE_START = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```\s*$")


def clean_json_text(text: str) -> str:
    """Strip a surrounding Markdown code fence from model output"""
    text = _FENCE_START.sub("", text or "")
    return _FENCE_END.sub("", text).strip()


def parse_json_list(text: Optional[str], item_type, what: str) -> list:
    """Decode a JSON array and validate every item"""
    try:
        data = json.loads(clean_json_text(text or "[]"))
    except json.JSONDecodeError as e:
        raise InvalidResponseError(f"The AI returned invalid JSON for {what}: {e}") from e

    if not isinstance(data, list):
        raise InvalidResponseError(f"The AI response for {what} is not a list.")

    try:
        return TypeAdapter(List[item_type]).validate_python(data)
    except ValidationError as e:
        raise InvalidResponseError(f"The AI response for {what} has the wrong shape: {e.error_count()} invalid field(s)") from e


def first_inline_data(response) -> Optional[Any]:
    """First inline_data blob in the first candidate, if any"""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None and getattr(inline, "data", None):
            return inline
    return None


def to_base64(data) -> str:
    """inline_data.data is bytes from the SDK, but may already be base64 text"""
    if isinstance(data, str):
        return re.sub(r"\s", "", data)
    return base64.b64encode(data).decode("ascii")


def decode_data_url(value: str) -> Tuple[bytes, str]:
    """Decode 'data:<mime>;base64,<data>' or bare base64 into (bytes, mime)"""
    mime_type = "image/png"
    payload = value.strip()
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        mime_type = header[5:].split(";")[0] or mime_type
    try:
        return base64.b64decode(re.sub(r"\s", "", payload), validate=True), mime_type
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image data: {e}") from e


# ============ Service ============

class GeminiService:
    """
    Content generation on top of a shared KeyPoolManager.

    Usage:
        service = GeminiService(pool)
        ideas = await service.generate_story_ideas("Fantasy Adventure")
    """

    def __init__(
        self,
        pool: KeyPoolManager,
        config: AppConfig = None,
        client_factory: Callable[[str], Any] = None,
        handler: ErrorHandler = None,
        http_client_factory: Callable[[], httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pool = pool
        self.config = config or app_config
        self.client_factory = client_factory
        self.handler = handler or default_error_handler
        self.http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=120.0, follow_redirects=True)
        )
        self._sleep = sleep
        self._clock = clock

    async def _call(self, operation, label: str):
        return await execute_with_rotation(
            self.pool,
            operation,
            client_factory=self.client_factory,
            handler=self.handler,
            label=label,
        )

    async def _generate_text(self, label: str, contents, config: types.GenerateContentConfig = None):
        """Plain generate_content call; returns the full response"""
        async def op(client, api_key):
            return await client.aio.models.generate_content(
                model=TEXT_MODEL,
                contents=contents,
                config=config,
            )
        return await self._call(op, label)

    # ------------------------------------------------------------------
    # Story
    # ------------------------------------------------------------------

    async def generate_story_ideas(self, genre: str) -> List[StoryIdea]:
        response = await self._generate_text(
            "story_ideas",
            f'Generate {STORY_IDEAS_COUNT} creative and unique story ideas for the genre: "{genre}". '
            "Return strictly a JSON array of strings.",
            types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=list[str],
            ),
        )
        texts = parse_json_list(response.text, str, "story ideas")
        batch = uuid.uuid4().hex[:8]
        return [StoryIdea(id=f"{batch}-{i}", text=text) for i, text in enumerate(texts)]

    async def polish_story_text(self, text: str) -> str:
        response = await self._generate_text(
            "polish_story",
            "Polish the following story text to make it more engaging, descriptive and "
            f"professional, while keeping the same plot:\n\n{text}",
        )
        # Keep the user's text if the model returns nothing
        return response.text or text

    async def generate_full_story(self, story_text: str, genre: str, gender: Gender = Gender.UNSPECIFIED) -> str:
        gender = Gender(gender)
        protagonist = ""
        if gender == Gender.MALE:
            protagonist = "The main character is male (laki-laki). "
        elif gender == Gender.FEMALE:
            protagonist = "The main character is female (perempuan). "

        response = await self._generate_text(
            "full_story",
            f'Write a complete, well-structured story in Indonesian based on this plot: "{story_text}". '
            f"Genre: {genre}. {protagonist}"
            "Use an 8-part structure so it maps onto 8 illustrated scenes: introduction, inciting "
            "incident, reaction, rising action, midpoint twist, crisis, climax, resolution. "
            "Write descriptively with smooth transitions between parts.",
        )
        story = (response.text or "").strip()
        if not story:
            raise InvalidResponseError("The AI returned an empty story.")
        return story

    async def generate_story_scenes(self, full_story: str, character_description: str = "") -> List[StoryScene]:
        character = character_description.strip() or "A main character"
        response = await self._generate_text(
            "story_scenes",
            f"Split the following story into EXACTLY {STORY_SCENES_COUNT} key scenes.\n"
            f'Start every image_prompt with this character description, unchanged: "{character}". '
            "Keep clothing, hair and facial features identical across scenes. "
            "image_prompt: a very detailed cinematic English prompt. "
            "narration: 2-3 sentences of Indonesian narration.\n\n"
            f"STORY:\n{full_story}",
            types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=list[StoryScene],
            ),
        )
        return parse_json_list(response.text, StoryScene, "story scenes")

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def generate_image(self, prompt: str, aspect_ratio: AspectRatio = AspectRatio.PORTRAIT) -> str:
        """Generate one image and return it as a data URL"""
        ratio = AspectRatio(aspect_ratio).value
        enhanced_prompt = (
            f"Create a high-quality image based on this description: {prompt}\n\n"
            "Requirements: cinematic lighting, photorealistic, highly detailed.\n"
            "Composition: full body shot or an angle that suits the action, detailed textures, natural anatomy."
        )

        async def op(client, api_key):
            response = await client.aio.models.generate_content(
                model=IMAGE_MODEL,
                contents=enhanced_prompt,
                config=types.GenerateContentConfig(
                    image_config=types.ImageConfig(aspect_ratio=ratio),
                ),
            )
            inline = first_inline_data(response)
            if inline is None:
                raise InvalidResponseError("No image data returned.")
            mime_type = getattr(inline, "mime_type", None) or "image/png"
            return f"data:{mime_type};base64,{to_base64(inline.data)}"

        op = retry_with_backoff(
            op,
            max_attempts=self.config.image_max_attempts,
            handler=self.handler,
            sleep=self._sleep,
        )
        return await self._call(op, "image")

    async def generate_image_batch(
        self,
        prompts: List[str],
        aspect_ratio: AspectRatio = AspectRatio.PORTRAIT,
        parallel: bool = False,
        gate: MinIntervalGate = None,
    ) -> List[ImageResult]:
        """
        Generate one image per prompt.

        Sequential mode spaces requests by config.image_request_interval.
        A failure on one image is recorded on its result; running out of
        keys aborts the whole batch.
        """
        if gate is None:
            gate = MinIntervalGate(self.config.image_request_interval, sleep=self._sleep)

        async def one(index: int, prompt: str) -> ImageResult:
            try:
                image = await self.generate_image(prompt, aspect_ratio)
                return ImageResult(index=index, prompt=prompt, image=image)
            except KeysExhaustedError:
                raise
            except Exception as e:
                logger.warning(f"[Gemini] Image {index + 1}/{len(prompts)} failed: {e}")
                return ImageResult(index=index, prompt=prompt, error=str(e))

        if parallel:
            tasks = [asyncio.ensure_future(one(i, p)) for i, p in enumerate(prompts)]
            try:
                return list(await asyncio.gather(*tasks))
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise

        results = []
        for i, prompt in enumerate(prompts):
            await gate.wait()
            results.append(await one(i, prompt))
        return results

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------

    async def generate_speech(self, text: str, voice: Voice = Voice.KORE) -> SpeechResult:
        voice_name = Voice(voice).value

        async def op(client, api_key):
            response = await client.aio.models.generate_content(
                model=SPEECH_MODEL,
                contents=text,
                config=types.GenerateContentConfig(
                    response_modalities=["AUDIO"],
                    speech_config=types.SpeechConfig(
                        voice_config=types.VoiceConfig(
                            prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice_name),
                        ),
                    ),
                ),
            )
            inline = first_inline_data(response)
            if inline is None:
                raise InvalidResponseError("No audio was generated. The text may have been blocked by safety filters.")
            return SpeechResult(audio_base64=to_base64(inline.data))

        return await self._call(op, "speech")

    # ------------------------------------------------------------------
    # Lyrics
    # ------------------------------------------------------------------

    async def generate_lyrics(self, query: str) -> LyricResult:
        response = await self._generate_text(
            "lyrics",
            f'Find the lyrics for: "{query}". If it is a URL, find the song lyrics. Return the full lyrics.',
            types.GenerateContentConfig(
                tools=[types.Tool(google_search=types.GoogleSearch())],
            ),
        )

        sources = []
        candidates = getattr(response, "candidates", None) or []
        metadata = getattr(candidates[0], "grounding_metadata", None) if candidates else None
        for chunk in getattr(metadata, "grounding_chunks", None) or []:
            web = getattr(chunk, "web", None)
            if web is not None and getattr(web, "uri", None):
                sources.append(LyricSource(title=getattr(web, "title", None), uri=web.uri))

        return LyricResult(lyrics=response.text or "Lyrics not found.", sources=sources)

    async def translate_lyrics(self, text: str, target_language: str) -> List[LyricLine]:
        response = await self._generate_text(
            "translate_lyrics",
            f"Translate the following lyrics to {target_language}. Return a JSON array of objects "
            f"with 'original' and 'translated' keys, one per line.\n\nLYRICS:\n{text}",
            types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=list[LyricLine],
            ),
        )
        return parse_json_list(response.text, LyricLine, "lyric translation")

    # ------------------------------------------------------------------
    # UGC
    # ------------------------------------------------------------------

    async def generate_ugc_scripts(self, scenario: str, language: str) -> List[UGCScene]:
        response = await self._generate_text(
            "ugc_scripts",
            f'Create a {UGC_SCENES_COUNT}-scene UGC video script based on: "{scenario}" in language {language}. '
            'Return a JSON array of objects with keys "visual_prompt" and "spoken_script". '
            "Every visual_prompt must describe a FULL BODY shot of the same person in a consistent "
            "outfit from head to toe (wide angle, showing shoes and full outfit, high detail).",
            types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=list[UGCScene],
            ),
        )
        return parse_json_list(response.text, UGCScene, "UGC scripts")

    async def generate_ugc_package(
        self,
        scenario: str,
        language: str,
        aspect_ratio: AspectRatio = AspectRatio.PORTRAIT,
        parallel: bool = False,
    ) -> dict:
        """Scripts plus one image per scene"""
        scenes = await self.generate_ugc_scripts(scenario, language)
        images = await self.generate_image_batch(
            [scene.visual_prompt for scene in scenes],
            aspect_ratio,
            parallel=parallel,
        )
        return {"scenes": scenes, "images": images}

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------

    async def generate_video(
        self,
        prompt: str,
        model: VeoModel = DEFAULT_VEO_MODEL,
        aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE,
        resolution: Resolution = Resolution.HD,
        image_base64: Optional[str] = None,
    ) -> bytes:
        """
        Generate a Veo clip and return the MP4 bytes.

        The download uses the same key that created the operation, since the
        generated file belongs to that key's project.
        """
        model_name = VeoModel(model).value
        video_config = types.GenerateVideosConfig(
            number_of_videos=1,
            aspect_ratio=AspectRatio(aspect_ratio).value,
            resolution=Resolution(resolution).value,
        )
        image = None
        if image_base64:
            image_bytes, mime_type = decode_data_url(image_base64)
            image = types.Image(image_bytes=image_bytes, mime_type=mime_type)

        async def op(client, api_key):
            kwargs = {"model": model_name, "prompt": prompt, "config": video_config}
            if image is not None:
                kwargs["image"] = image

            operation = await client.aio.models.generate_videos(**kwargs)
            started = self._clock()
            while not operation.done:
                if self._clock() - started >= self.config.video_timeout:
                    raise GenerationTimeoutError(
                        f"Video generation did not finish within {self.config.video_timeout:.0f}s."
                    )
                await self._sleep(self.config.video_poll_interval)
                operation = await client.aio.operations.get(operation)

            if getattr(operation, "error", None):
                raise GenerationFailedError(f"Video generation failed: {operation.error}")

            response = getattr(operation, "response", None)
            videos = getattr(response, "generated_videos", None) or []
            video = getattr(videos[0], "video", None) if videos else None
            uri = getattr(video, "uri", None)
            if not uri:
                raise InvalidResponseError("Video generation failed: no video was returned.")

            return uri, api_key

        uri, api_key = await self._call(op, "video")

        # Fetched outside rotation: a failed download never resubmits the job or invalidates its key
        download = retry_with_backoff(
            self._download,
            max_attempts=VIDEO_DOWNLOAD_MAX_ATTEMPTS,
            handler=self.handler,
            sleep=self._sleep,
        )
        return await download(uri, api_key)

    async def _download(self, uri: str, api_key: str) -> bytes:
        async with self.http_client_factory() as http:
            response = await http.get(uri, headers={"x-goog-api-key": api_key})
            response.raise_for_status()
            logger.info(f"[Gemini] Downloaded video ({len(response.content) / 1024:.0f} KB)")
            return response.content
