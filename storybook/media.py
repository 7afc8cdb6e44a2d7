"""Media realization: one illustration and one narration clip per scene.

Scenes are realized concurrently and each scene generates its image and
audio concurrently. An image failure is degraded to the fallback image; an
audio failure aborts the whole batch, cancels the remaining work and removes
the assets that were already saved.
"""

import asyncio
import logging
from dataclasses import dataclass

from . import config
from .errors import MediaGenerationError
from .generators import ImageGenerator, SpeechGenerator, download_image
from .models import PromptedScene, RealizedStory, SceneMedia, StoryContent
from .storage import AUDIO_CONSTRAINTS, IMAGE_CONSTRAINTS, AssetConstraints, AssetStore, validate_asset

logger = logging.getLogger(__name__)


async def join_all(coros):
    """Runs coroutines concurrently and returns their results in order.

    On the first exception the unfinished tasks are cancelled and awaited,
    then the exception of the earliest failed task is raised.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return [task.result() for task in tasks]


@dataclass
class MediaRealizer:
    images: ImageGenerator
    speech: SpeechGenerator
    store: AssetStore
    fallback_image_url: str = config.FALLBACK_IMAGE_URL

    async def realize(self, content: StoryContent, voice: str) -> RealizedStory:
        writes: list[asyncio.Future] = []
        try:
            media = await join_all(
                [self._realize_scene(scene, voice, writes) for scene in content.scenes]
            )
        except (Exception, asyncio.CancelledError):
            results = await asyncio.gather(*writes, return_exceptions=True)
            saved = [url for url in results if isinstance(url, str)]
            logger.error("Media realization aborted; discarding %d saved asset(s).", len(saved))
            self._delete(saved)
            raise
        return RealizedStory(content=content, media=tuple(media))

    def discard(self, realized: RealizedStory) -> None:
        """Deletes the stored assets of a story that will not be persisted."""
        urls = []
        for item in realized.media:
            if not item.image_fallback:
                urls.append(item.image_url)
            urls.append(item.audio_url)
        self._delete(urls)

    def _delete(self, urls: list[str]) -> None:
        for url in urls:
            try:
                self.store.delete(url)
            except Exception:
                logger.warning("Could not delete asset %s.", url, exc_info=True)

    async def _realize_scene(self, scene: PromptedScene, voice: str, writes: list[asyncio.Future]) -> SceneMedia:
        logger.info("Scene %d: generating image and audio.", scene.number)
        (image_url, fallback), audio_url = await join_all(
            [self._image(scene, writes), self._audio(scene, voice, writes)]
        )
        logger.info("Scene %d realized (image %s).", scene.number, "fallback" if fallback else "ready")
        return SceneMedia(
            sequence=scene.number,
            image_url=image_url,
            audio_url=audio_url,
            image_fallback=fallback,
        )

    async def _image(self, scene: PromptedScene, writes: list[asyncio.Future]) -> tuple[str, bool]:
        try:
            generated = await asyncio.to_thread(self.images.generate, scene.illustration_prompt)
            data = generated.data
            if data is None and generated.url:
                data = await asyncio.to_thread(download_image, generated.url)
            fmt = validate_asset(data or b"", generated.format, IMAGE_CONSTRAINTS)
            url = await self._save(data, fmt, IMAGE_CONSTRAINTS, writes)
        except Exception as e:
            logger.warning("Scene %d image failed, using fallback: %s", scene.number, e)
            return self.fallback_image_url, True
        return url, False

    async def _audio(self, scene: PromptedScene, voice: str, writes: list[asyncio.Future]) -> str:
        try:
            data = await asyncio.to_thread(self.speech.synthesize, scene.narration, voice)
            fmt = validate_asset(data, "mp3", AUDIO_CONSTRAINTS)
            url = await self._save(data, fmt, AUDIO_CONSTRAINTS, writes)
        except Exception as e:
            logger.error("Scene %d audio failed: %s", scene.number, e)
            raise MediaGenerationError(scene.number, "audio", str(e)) from e
        return url

    async def _save(self, data: bytes, fmt: str, constraints: AssetConstraints, writes: list[asyncio.Future]) -> str:
        write = asyncio.ensure_future(asyncio.to_thread(self.store.save, data, fmt, constraints))
        writes.append(write)
        # Shielded: a cancelled scene still finishes the write so it can be removed.
        return await asyncio.shield(write)
