"""
Read-only catalog lookups used before a stream token is issued.

Streamable videos are episodes. An episode can be watched while both it and
its drama are ``active``. The catalog has no per-user entitlements yet, so
every viewer may watch every available episode.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import sqlalchemy as sa
from databases import Database

from api.database import dramas, episodes

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "active"


@dataclass(frozen=True)
class CatalogVideo:
    id: str
    title: str
    drama_title: str
    available: bool


class VideoCatalog(Protocol):
    async def get_video(self, video_id: str) -> Optional[CatalogVideo]:
        ...

    async def user_can_watch(self, user_id: Any, video_id: str) -> bool:
        ...


class DatabaseCatalog:
    """Catalog backed by the site's dramas/episodes tables."""

    def __init__(self, db: Database):
        self.db = db

    async def get_video(self, video_id: str) -> Optional[CatalogVideo]:
        query = (
            sa.select(
                episodes.c.id,
                episodes.c.title,
                episodes.c.status,
                dramas.c.title.label("drama_title"),
                dramas.c.status.label("drama_status"),
            )
            .select_from(episodes.join(dramas, episodes.c.drama_id == dramas.c.id))
            .where(episodes.c.id == str(video_id))
        )
        row = await self.db.fetch_one(query)
        if row is None:
            return None
        return CatalogVideo(
            id=row["id"],
            title=row["title"],
            drama_title=row["drama_title"],
            available=row["status"] == ACTIVE_STATUS and row["drama_status"] == ACTIVE_STATUS,
        )

    async def user_can_watch(self, user_id: Any, video_id: str) -> bool:
        video = await self.get_video(video_id)
        return video is not None and video.available


class StaticCatalog:
    """In-memory catalog mapping video id to availability (development and tests)."""

    def __init__(self, videos: Optional[Dict[str, bool]] = None):
        self.videos = dict(videos or {})

    async def get_video(self, video_id: str) -> Optional[CatalogVideo]:
        if video_id not in self.videos:
            return None
        return CatalogVideo(id=video_id, title=video_id, drama_title="", available=self.videos[video_id])

    async def user_can_watch(self, user_id: Any, video_id: str) -> bool:
        return bool(self.videos.get(video_id, False))
