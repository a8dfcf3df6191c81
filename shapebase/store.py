"""
In-memory store for users, shapes, content and predictions.

Mirrors the async interface of `shapebase.db.postgres.PostgresStore` so the
service runs without a database.
"""

import itertools
import uuid
from dataclasses import replace
from typing import Mapping, Optional

from shapebase.corpus import Bounds, OutcomeCorpus
from shapebase.dimensions import Space, TasteVector
from shapebase.errors import CrossSpaceError, NotFoundError, PredictionStateError
from shapebase.logger import logger
from shapebase.models import (ContentItem, PredictionRecord, UserProfile,
                              utcnow, validate_prediction)
from shapebase.search.fuzzy_search import canonical_title


class MemoryStore:
    def __init__(self):
        self.cache_namespace = uuid.uuid4().hex
        self.version = 0
        self.corpus = OutcomeCorpus()
        self._user_ids = itertools.count(1)
        self._content_ids = itertools.count(1)
        self._prediction_ids = itertools.count(1)
        self._usernames: dict[tuple[str, Space], int] = {}
        self._user_spaces: dict[int, Space] = {}
        self._shapes: dict[int, TasteVector] = {}
        self._profiles: dict[int, UserProfile] = {}
        self._contents: dict[int, ContentItem] = {}

    def _touch(self) -> None:
        self.version += 1

    async def get_or_create_user(self, username: str, space: Space) -> int:
        key = (username, Space(space))
        user_id = self._usernames.get(key)
        if user_id is None:
            user_id = next(self._user_ids)
            self._usernames[key] = user_id
            self._user_spaces[user_id] = Space(space)
            logger.info(f"created {Space(space).value} user {user_id} for {username}")
        return user_id

    async def get_user_space(self, user_id: int) -> Space:
        try:
            return self._user_spaces[user_id]
        except KeyError:
            raise NotFoundError(f"user {user_id} not found") from None

    async def get_shape(self, user_id: int) -> Optional[TasteVector]:
        await self.get_user_space(user_id)
        return self._shapes.get(user_id)

    async def save_shape(self, user_id: int, updates: Mapping[str, float]) -> TasteVector:
        space = await self.get_user_space(user_id)
        current = self._shapes.get(user_id) or TasteVector.empty(space)
        shape = current.updated(updates)
        self._shapes[user_id] = shape
        self._touch()
        return shape

    async def list_shapes(self, space: Space) -> dict[int, TasteVector]:
        return {
            user_id: shape
            for user_id, shape in self._shapes.items()
            if shape.space == Space(space) and not shape.is_empty
        }

    async def get_profile(self, user_id: int) -> UserProfile:
        space = await self.get_user_space(user_id)
        return self._profiles.get(user_id) or UserProfile(user_id, space)

    async def list_profiles(self, space: Space) -> dict[int, UserProfile]:
        return {
            user_id: profile
            for user_id, profile in self._profiles.items()
            if profile.space == Space(space)
        }

    async def save_profile(
        self,
        user_id: int,
        display_name: Optional[str] = None,
        current_mood: Optional[str] = None,
        bud_bio: Optional[str] = None,
    ) -> UserProfile:
        profile = await self.get_profile(user_id)
        if display_name is not None:
            profile = replace(profile, display_name=display_name)
        if current_mood is not None:
            profile = replace(profile, current_mood=current_mood, mood_updated_at=utcnow())
        if bud_bio is not None:
            profile = replace(profile, bud_bio=bud_bio)
        self._profiles[user_id] = profile
        self._touch()
        return profile

    async def find_or_create_content(
        self,
        title: str,
        content_type: str,
        space: Space,
        external_id: Optional[str] = None,
        external_source: Optional[str] = None,
        year: Optional[int] = None,
        parent_id: Optional[int] = None,
    ) -> ContentItem:
        space = Space(space)
        content_type = content_type or "unknown"
        if external_id and external_source:
            for content in self._contents.values():
                if (content.space, content.external_source, content.external_id) == (
                    space,
                    external_source,
                    external_id,
                ):
                    return content

        clean_title = canonical_title(title)
        for content in self._contents.values():
            if (
                content.space == space
                and content.content_type == content_type
                and canonical_title(content.title) == clean_title
            ):
                if external_id and external_source:
                    content = replace(
                        content,
                        external_id=external_id,
                        external_source=external_source,
                        year=year or content.year,
                    )
                    self._contents[content.content_id] = content
                    self._touch()
                return content

        if parent_id is not None:
            await self.get_content(parent_id)
        content = ContentItem(
            content_id=next(self._content_ids),
            title=title,
            content_type=content_type,
            space=space,
            external_id=external_id,
            external_source=external_source,
            year=year,
            parent_id=parent_id,
        )
        self._contents[content.content_id] = content
        self._touch()
        logger.info(f"created {space.value} content {content.content_id}: {title}")
        return content

    async def get_content(self, content_id: int) -> ContentItem:
        try:
            return self._contents[content_id]
        except KeyError:
            raise NotFoundError(f"content {content_id} not found") from None

    async def get_contents(self, content_ids: list[int]) -> dict[int, ContentItem]:
        return {idx: self._contents[idx] for idx in content_ids if idx in self._contents}

    async def list_content(self, space: Space) -> list[ContentItem]:
        return [c for c in self._contents.values() if c.space == Space(space)]

    async def get_content_hierarchy(self, content_id: int) -> list[ContentItem]:
        """Content and its ancestors, root first (show, season, episode)."""
        hierarchy = [await self.get_content(content_id)]
        seen = {content_id}
        while hierarchy[-1].parent_id is not None and hierarchy[-1].parent_id not in seen:
            parent = self._contents.get(hierarchy[-1].parent_id)
            if parent is None:
                break
            seen.add(parent.content_id)
            hierarchy.append(parent)
        return hierarchy[::-1]

    async def save_prediction(
        self,
        user_id: int,
        content_id: int,
        predicted: float,
        shape_snapshot: TasteVector,
        ai_predicted: Optional[float] = None,
        mood_before: Optional[str] = None,
    ) -> PredictionRecord:
        space = await self.get_user_space(user_id)
        content = await self.get_content(content_id)
        if content.space != space or shape_snapshot.space != space:
            raise CrossSpaceError(f"prediction for user {user_id} must stay in {space.value}")
        validate_prediction(space, predicted)
        validate_prediction(space, ai_predicted)

        record = PredictionRecord(
            prediction_id=next(self._prediction_ids),
            user_id=user_id,
            content_id=content_id,
            space=space,
            shape_snapshot=shape_snapshot,
            predicted=float(predicted),
            ai_predicted=None if ai_predicted is None else float(ai_predicted),
            mood_before=mood_before,
            predicted_at=utcnow(),
        )
        self.corpus.add(record)
        self._touch()
        return record

    async def get_prediction(self, prediction_id: int) -> PredictionRecord:
        record = self.corpus.get(prediction_id)
        if record is None:
            raise NotFoundError(f"prediction {prediction_id} not found")
        return record

    async def record_outcome(
        self,
        prediction_id: int,
        actual: float,
        notes: Optional[str] = None,
        mood_after: Optional[str] = None,
    ) -> PredictionRecord:
        record = await self.get_prediction(prediction_id)
        record = record.completed(actual, notes=notes, mood_after=mood_after)
        self.corpus.replace(record)
        self._touch()
        return record

    async def append_notes(self, prediction_id: int, notes: str) -> PredictionRecord:
        record = (await self.get_prediction(prediction_id)).with_notes(notes)
        self.corpus.replace(record)
        return record

    async def delete_prediction(self, prediction_id: int) -> None:
        record = await self.get_prediction(prediction_id)
        if not record.is_pending:
            raise PredictionStateError(f"prediction {prediction_id} is completed and kept")
        self.corpus.remove(prediction_id)
        self._touch()

    async def pending_predictions(self, user_id: int) -> list[PredictionRecord]:
        pending = [r for r in self.corpus.for_user(user_id) if r.is_pending]
        return sorted(pending, key=lambda r: (r.predicted_at, r.prediction_id), reverse=True)

    async def completed_predictions(
        self, user_id: int, limit: Optional[int] = None
    ) -> list[PredictionRecord]:
        completed = [r for r in self.corpus.for_user(user_id) if not r.is_pending]
        completed.sort(key=lambda r: (r.completed_at, r.prediction_id), reverse=True)
        return completed if limit is None else completed[:limit]

    async def fetch_corpus(
        self,
        space: Space,
        content_id: Optional[int] = None,
        bounds: Optional[Bounds] = None,
    ) -> list[PredictionRecord]:
        return self.corpus.records(space, content_id=content_id, bounds=bounds, completed_only=True)
