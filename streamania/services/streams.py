from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import requests
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import (
    STREAM_STATUS_POLL_SECONDS,
    YOUTUBE_API_KEY,
    YOUTUBE_API_URL,
    YOUTUBE_EMBED_HOST,
    YOUTUBE_REQUEST_TIMEOUT_SECONDS,
)
from ..core.errors import ValidationFailed, VideoLookupFailed
from ..core.events import EventHub
from ..models import StreamConfig
from .activation import ActivationRegistry

logger = logging.getLogger(__name__)

STREAM_TOPIC = "stream.active"
PLATFORM = "youtube"

_VIDEO_REF_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_VIDEO_REF_URL_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/.*[?&]v=([A-Za-z0-9_-]{11})"),
)


def extract_video_ref(value: str) -> str:
    candidate = (value or "").strip()
    if _VIDEO_REF_RE.match(candidate):
        return candidate
    for pattern in _VIDEO_REF_URL_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return match.group(1)
    parsed = urlparse(candidate)
    if (parsed.hostname or "").lower().endswith("youtube.com"):
        for ref in parse_qs(parsed.query).get("v", []):
            if _VIDEO_REF_RE.match(ref):
                return ref
    raise ValidationFailed("Invalid YouTube URL or video ID")


def embed_url(video_ref: str) -> str:
    return f"https://{YOUTUBE_EMBED_HOST}/embed/{video_ref}?autoplay=1&mute=1"


@dataclass(frozen=True)
class StreamStatus:
    is_live: bool
    viewer_count: int
    title: str
    thumbnail_url: str


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class YouTubeClient:
    def __init__(
        self,
        api_key: str = YOUTUBE_API_KEY,
        api_url: str = YOUTUBE_API_URL,
        timeout: int = YOUTUBE_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout

    def _request(self, video_ref: str) -> Dict[str, Any]:
        if not self.api_key:
            raise VideoLookupFailed("YouTube API key is not configured")
        try:
            response = requests.get(
                self.api_url,
                params={
                    "part": "snippet,liveStreamingDetails,statistics",
                    "id": video_ref,
                    "key": self.api_key,
                },
                timeout=self.timeout,
                headers={"User-Agent": "streamania/1.0"},
            )
        except requests.RequestException as exc:
            logger.warning("YouTube request failed for %s: %s", video_ref, exc)
            raise VideoLookupFailed() from exc
        if not 200 <= response.status_code < 300:
            logger.warning("YouTube returned %s for %s", response.status_code, video_ref)
            raise VideoLookupFailed()
        try:
            return response.json()
        except ValueError as exc:
            raise VideoLookupFailed() from exc

    def fetch_status(self, video_ref: str) -> StreamStatus:
        data = self._request(video_ref)
        items = data.get("items") if isinstance(data, dict) else None
        if not items:
            raise VideoLookupFailed("Video not found")
        video = items[0] or {}
        snippet = video.get("snippet") or {}
        live_details = video.get("liveStreamingDetails") or {}
        statistics = video.get("statistics") or {}
        concurrent = live_details.get("concurrentViewers")
        is_live = bool(concurrent)
        thumbnails = snippet.get("thumbnails") or {}
        thumbnail = (thumbnails.get("maxres") or thumbnails.get("high") or {}).get("url", "")
        return StreamStatus(
            is_live=is_live,
            viewer_count=_to_int(concurrent) if is_live else _to_int(statistics.get("viewCount")),
            title=str(snippet.get("title") or ""),
            thumbnail_url=thumbnail,
        )


def serialize_stream(stream: StreamConfig) -> Dict[str, Any]:
    return {
        "id": stream.id,
        "title": stream.title,
        "platform": stream.platform,
        "stream_ref": stream.stream_ref,
        "is_active": bool(stream.is_active),
        "is_live": bool(stream.is_live),
        "viewer_count": stream.viewer_count,
        "thumbnail_url": stream.thumbnail_url,
        "status_available": stream.status_available,
        "embed_url": embed_url(stream.stream_ref),
    }


class StreamService:
    def __init__(
        self,
        db: Session,
        hub: Optional[EventHub] = None,
        youtube: Optional[YouTubeClient] = None,
    ) -> None:
        self.db = db
        self.youtube = youtube or YouTubeClient()
        self.registry: ActivationRegistry[StreamConfig] = ActivationRegistry(
            db,
            StreamConfig,
            STREAM_TOPIC,
            hub=hub,
            serialize=serialize_stream,
            label="stream",
        )

    def create_stream(self, title: str, source: str) -> StreamConfig:
        title = (title or "").strip()
        if not title:
            raise ValidationFailed("Title is required")
        stream = StreamConfig(
            title=title,
            platform=PLATFORM,
            stream_ref=extract_video_ref(source),
            is_live=False,
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        return self.registry.create(stream)

    def list_streams(self) -> List[StreamConfig]:
        return self.registry.list_all()

    def get_stream(self, stream_id: str) -> StreamConfig:
        return self.registry.get(stream_id)

    def get_active(self) -> Optional[StreamConfig]:
        return self.registry.get_active()

    def update_stream(
        self,
        stream_id: str,
        title: Optional[str] = None,
        source: Optional[str] = None,
    ) -> StreamConfig:
        stream = self.registry.get(stream_id)
        if title is not None:
            if not title.strip():
                raise ValidationFailed("Title is required")
            stream.title = title.strip()
        if source is not None:
            ref = extract_video_ref(source)
            if ref != stream.stream_ref:
                stream.stream_ref = ref
                stream.is_live = False
                stream.viewer_count = None
                stream.status_available = None
        stream.updated_at = datetime.utcnow()
        return self.registry.update(stream)

    def set_active(self, stream_id: str) -> StreamConfig:
        return self.registry.set_active(stream_id)

    def deactivate(self, stream_id: str) -> StreamConfig:
        return self.registry.deactivate(stream_id)

    def delete_stream(self, stream_id: str) -> None:
        self.registry.delete(stream_id)

    def check_status(self, video_ref: str) -> StreamStatus:
        return self.youtube.fetch_status(video_ref)

    def refresh_active_stream_status(self) -> tuple[Optional[StreamConfig], bool]:
        """Returns the active stream (if any) and whether provider status was available."""
        stream = self.registry.get_active()
        if stream is None:
            return None, False
        stream.status_checked_at = datetime.utcnow()
        try:
            status = self.youtube.fetch_status(stream.stream_ref)
        except VideoLookupFailed as exc:
            logger.warning("Status unknown for stream %s: %s", stream.id, exc.message)
            stream.status_available = False
            self.registry.update(stream)
            return stream, False
        stream.is_live = status.is_live
        stream.viewer_count = status.viewer_count
        if status.thumbnail_url:
            stream.thumbnail_url = status.thumbnail_url
        stream.status_available = True
        stream.updated_at = datetime.utcnow()
        self.registry.update(stream)
        return stream, True


class StatusPoller:
    """Re-reads provider status for the active stream on a fixed interval."""

    def __init__(
        self,
        session_factory: sessionmaker,
        hub: EventHub,
        youtube: YouTubeClient,
        interval_seconds: int = STREAM_STATUS_POLL_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.hub = hub
        self.youtube = youtube
        self.interval_seconds = max(1, int(interval_seconds))
        self._task: Optional[asyncio.Task] = None

    def refresh_once(self) -> bool:
        db = self.session_factory()
        try:
            _, available = StreamService(db, self.hub, self.youtube).refresh_active_stream_status()
            return available
        finally:
            db.close()

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.refresh_once)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Stream status refresh failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
