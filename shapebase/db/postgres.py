"""
PostgreSQL store built on asyncpg.

Same async interface as `shapebase.store.MemoryStore`.
"""

import json
import uuid
from typing import Mapping, Optional

import asyncpg

from shapebase.corpus import Bounds
from shapebase.dimensions import MIDPOINT, Space, TasteVector
from shapebase.errors import CrossSpaceError, NotFoundError, PredictionStateError
from shapebase.logger import logger
from shapebase.models import (ContentItem, PredictionRecord, UserProfile,
                              utcnow, validate_actual, validate_prediction)
from shapebase.search.fuzzy_search import canonical_title

CREATE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id SERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        space TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (username, space)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_shapes (
        user_id INTEGER NOT NULL REFERENCES users (user_id),
        dimension TEXT NOT NULL,
        value REAL NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, dimension)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_profiles (
        user_id INTEGER PRIMARY KEY REFERENCES users (user_id),
        display_name TEXT,
        current_mood TEXT,
        mood_updated_at TIMESTAMPTZ,
        bud_bio TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content (
        content_id SERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        canonical_title TEXT NOT NULL,
        content_type TEXT NOT NULL,
        space TEXT NOT NULL,
        external_id TEXT,
        external_source TEXT,
        year INTEGER,
        parent_id INTEGER REFERENCES content (content_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_content_title
    ON content (space, content_type, canonical_title)
    """,
    """
    CREATE TABLE IF NOT EXISTS predictions (
        prediction_id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users (user_id),
        content_id INTEGER NOT NULL REFERENCES content (content_id),
        space TEXT NOT NULL,
        shape_snapshot JSONB NOT NULL,
        predicted REAL NOT NULL,
        ai_predicted REAL,
        mood_before TEXT,
        predicted_at TIMESTAMPTZ NOT NULL,
        actual REAL,
        mood_after TEXT,
        completed_at TIMESTAMPTZ,
        notes TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_predictions_space_content
    ON predictions (space, content_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_predictions_user ON predictions (user_id)
    """,
]

CONTENT_COLUMNS = """
    content_id, title, content_type, space, external_id,
    external_source, year, parent_id
"""


async def create_tables(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as connection:
        async with connection.transaction():
            for statement in CREATE_TABLES:
                await connection.execute(statement)


def _row_to_content(row) -> ContentItem:
    return ContentItem(
        content_id=row["content_id"],
        title=row["title"],
        content_type=row["content_type"],
        space=Space(row["space"]),
        external_id=row["external_id"],
        external_source=row["external_source"],
        year=row["year"],
        parent_id=row["parent_id"],
    )


def _row_to_prediction(row) -> PredictionRecord:
    space = Space(row["space"])
    return PredictionRecord(
        prediction_id=row["prediction_id"],
        user_id=row["user_id"],
        content_id=row["content_id"],
        space=space,
        shape_snapshot=TasteVector.from_mapping(space, json.loads(row["shape_snapshot"])),
        predicted=row["predicted"],
        ai_predicted=row["ai_predicted"],
        mood_before=row["mood_before"],
        predicted_at=row["predicted_at"],
        actual=row["actual"],
        mood_after=row["mood_after"],
        completed_at=row["completed_at"],
        notes=row["notes"],
    )


def _bounds_clause(space: Space, bounds: Bounds, first_arg: int) -> tuple[str, list[float]]:
    """Per-dimension BETWEEN filters on the snapshot, missing values read as midpoint."""
    clauses, args = [], []
    for i, dimension in enumerate(space.dimensions):
        low_arg = first_arg + 2 * i
        # dimension names come from the static table, never from the request
        clauses.append(
            f"COALESCE((shape_snapshot->>'{dimension}')::float8, {MIDPOINT}) "
            f"BETWEEN ${low_arg} AND ${low_arg + 1}"
        )
        args.extend([bounds.low[i], bounds.high[i]])
    return " AND ".join(clauses), args


class PostgresStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool
        self.cache_namespace = uuid.uuid4().hex
        self.version = 0

    def _touch(self) -> None:
        self.version += 1

    async def get_or_create_user(self, username: str, space: Space) -> int:
        space = Space(space)
        async with self.pool.acquire() as connection:
            await connection.execute(
                "INSERT INTO users (username, space) VALUES ($1, $2) ON CONFLICT DO NOTHING",
                username,
                space.value,
            )
            return await connection.fetchval(
                "SELECT user_id FROM users WHERE username = $1 AND space = $2",
                username,
                space.value,
            )

    async def get_user_space(self, user_id: int) -> Space:
        async with self.pool.acquire() as connection:
            space = await connection.fetchval("SELECT space FROM users WHERE user_id = $1", user_id)
        if space is None:
            raise NotFoundError(f"user {user_id} not found")
        return Space(space)

    async def get_shape(self, user_id: int) -> Optional[TasteVector]:
        space = await self.get_user_space(user_id)
        async with self.pool.acquire() as connection:
            rows = await connection.fetch(
                "SELECT dimension, value FROM user_shapes WHERE user_id = $1", user_id
            )
        if not rows:
            return None
        return TasteVector.from_mapping(space, {row["dimension"]: row["value"] for row in rows})

    async def save_shape(self, user_id: int, updates: Mapping[str, float]) -> TasteVector:
        current = await self.get_shape(user_id)
        if current is None:
            current = TasteVector.empty(await self.get_user_space(user_id))
        shape = current.updated(updates)
        # only the supplied dimensions are written
        changed = [
            (user_id, name, shape[name])
            for name, value in updates.items()
            if name in shape.space.dimensions and value is not None
        ]
        async with self.pool.acquire() as connection:
            await connection.executemany(
                """
                INSERT INTO user_shapes (user_id, dimension, value, updated_at)
                VALUES ($1, $2, $3, now())
                ON CONFLICT (user_id, dimension) DO UPDATE
                SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
            """,
                changed,
            )
        self._touch()
        return shape

    async def list_shapes(self, space: Space) -> dict[int, TasteVector]:
        space = Space(space)
        async with self.pool.acquire() as connection:
            rows = await connection.fetch(
                """
                SELECT s.user_id, s.dimension, s.value
                FROM user_shapes s JOIN users u ON u.user_id = s.user_id
                WHERE u.space = $1
            """,
                space.value,
            )
        raw: dict[int, dict[str, float]] = {}
        for row in rows:
            raw.setdefault(row["user_id"], {})[row["dimension"]] = row["value"]
        shapes = {user_id: TasteVector.from_mapping(space, dims) for user_id, dims in raw.items()}
        return {user_id: shape for user_id, shape in shapes.items() if not shape.is_empty}

    async def get_profile(self, user_id: int) -> UserProfile:
        space = await self.get_user_space(user_id)
        async with self.pool.acquire() as connection:
            row = await connection.fetchrow(
                """
                SELECT display_name, current_mood, mood_updated_at, bud_bio
                FROM user_profiles WHERE user_id = $1
            """,
                user_id,
            )
        if row is None:
            return UserProfile(user_id, space)
        return UserProfile(user_id, space, **dict(row))

    async def list_profiles(self, space: Space) -> dict[int, UserProfile]:
        space = Space(space)
        async with self.pool.acquire() as connection:
            rows = await connection.fetch(
                """
                SELECT p.user_id, p.display_name, p.current_mood, p.mood_updated_at, p.bud_bio
                FROM user_profiles p JOIN users u ON u.user_id = p.user_id
                WHERE u.space = $1
            """,
                space.value,
            )
        return {row["user_id"]: UserProfile(space=space, **dict(row)) for row in rows}

    async def save_profile(
        self,
        user_id: int,
        display_name: Optional[str] = None,
        current_mood: Optional[str] = None,
        bud_bio: Optional[str] = None,
    ) -> UserProfile:
        await self.get_user_space(user_id)
        mood_updated_at = utcnow() if current_mood is not None else None
        async with self.pool.acquire() as connection:
            await connection.execute(
                """
                INSERT INTO user_profiles
                (user_id, display_name, current_mood, mood_updated_at, bud_bio)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (user_id) DO UPDATE
                SET display_name = COALESCE($2, user_profiles.display_name),
                    current_mood = COALESCE($3, user_profiles.current_mood),
                    mood_updated_at = COALESCE($4, user_profiles.mood_updated_at),
                    bud_bio = COALESCE($5, user_profiles.bud_bio)
            """,
                user_id,
                display_name,
                current_mood,
                mood_updated_at,
                bud_bio,
            )
        self._touch()
        return await self.get_profile(user_id)

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
        clean_title = canonical_title(title)
        if parent_id is not None:
            await self.get_content(parent_id)
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                if external_id and external_source:
                    row = await connection.fetchrow(
                        f"""
                        SELECT {CONTENT_COLUMNS} FROM content
                        WHERE space = $1 AND external_source = $2 AND external_id = $3
                        LIMIT 1
                    """,
                        space.value,
                        external_source,
                        external_id,
                    )
                    if row is not None:
                        return _row_to_content(row)

                row = await connection.fetchrow(
                    f"""
                    SELECT {CONTENT_COLUMNS} FROM content
                    WHERE space = $1 AND content_type = $2 AND canonical_title = $3
                    ORDER BY content_id LIMIT 1
                """,
                    space.value,
                    content_type,
                    clean_title,
                )
                if row is not None:
                    if external_id and external_source:
                        row = await connection.fetchrow(
                            f"""
                            UPDATE content
                            SET external_id = $2, external_source = $3,
                                year = COALESCE($4, year)
                            WHERE content_id = $1
                            RETURNING {CONTENT_COLUMNS}
                        """,
                            row["content_id"],
                            external_id,
                            external_source,
                            year,
                        )
                        self._touch()
                    return _row_to_content(row)

                row = await connection.fetchrow(
                    f"""
                    INSERT INTO content (
                        title, canonical_title, content_type, space,
                        external_id, external_source, year, parent_id)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    RETURNING {CONTENT_COLUMNS}
                """,
                    title,
                    clean_title,
                    content_type,
                    space.value,
                    external_id,
                    external_source,
                    year,
                    parent_id,
                )
        self._touch()
        logger.info(f"created {space.value} content {row['content_id']}: {title}")
        return _row_to_content(row)

    async def get_content(self, content_id: int) -> ContentItem:
        async with self.pool.acquire() as connection:
            row = await connection.fetchrow(
                f"SELECT {CONTENT_COLUMNS} FROM content WHERE content_id = $1", content_id
            )
        if row is None:
            raise NotFoundError(f"content {content_id} not found")
        return _row_to_content(row)

    async def get_contents(self, content_ids: list[int]) -> dict[int, ContentItem]:
        async with self.pool.acquire() as connection:
            rows = await connection.fetch(
                f"SELECT {CONTENT_COLUMNS} FROM content WHERE content_id = ANY($1::int[])",
                content_ids,
            )
        return {row["content_id"]: _row_to_content(row) for row in rows}

    async def list_content(self, space: Space) -> list[ContentItem]:
        async with self.pool.acquire() as connection:
            rows = await connection.fetch(
                f"SELECT {CONTENT_COLUMNS} FROM content WHERE space = $1 ORDER BY content_id",
                Space(space).value,
            )
        return [_row_to_content(row) for row in rows]

    async def get_content_hierarchy(self, content_id: int) -> list[ContentItem]:
        """Content and its ancestors, root first (show, season, episode)."""
        hierarchy = [await self.get_content(content_id)]
        seen = {content_id}
        while hierarchy[-1].parent_id is not None and hierarchy[-1].parent_id not in seen:
            try:
                parent = await self.get_content(hierarchy[-1].parent_id)
            except NotFoundError:
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

        async with self.pool.acquire() as connection:
            row = await connection.fetchrow(
                """
                INSERT INTO predictions (
                    user_id, content_id, space, shape_snapshot,
                    predicted, ai_predicted, mood_before, predicted_at)
                VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8)
                RETURNING *
            """,
                user_id,
                content_id,
                space.value,
                json.dumps(shape_snapshot.to_dict()),
                predicted,
                ai_predicted,
                mood_before,
                utcnow(),
            )
        self._touch()
        return _row_to_prediction(row)

    async def get_prediction(self, prediction_id: int) -> PredictionRecord:
        async with self.pool.acquire() as connection:
            row = await connection.fetchrow(
                "SELECT * FROM predictions WHERE prediction_id = $1", prediction_id
            )
        if row is None:
            raise NotFoundError(f"prediction {prediction_id} not found")
        return _row_to_prediction(row)

    async def record_outcome(
        self,
        prediction_id: int,
        actual: float,
        notes: Optional[str] = None,
        mood_after: Optional[str] = None,
    ) -> PredictionRecord:
        validate_actual(actual)
        async with self.pool.acquire() as connection:
            row = await connection.fetchrow(
                """
                UPDATE predictions
                SET actual = $2, notes = $3, mood_after = $4, completed_at = $5
                WHERE prediction_id = $1 AND actual IS NULL
                RETURNING *
            """,
                prediction_id,
                actual,
                notes,
                mood_after,
                utcnow(),
            )
        if row is None:
            await self.get_prediction(prediction_id)
            raise PredictionStateError(f"prediction {prediction_id} already has an outcome")
        self._touch()
        return _row_to_prediction(row)

    async def append_notes(self, prediction_id: int, notes: str) -> PredictionRecord:
        async with self.pool.acquire() as connection:
            row = await connection.fetchrow(
                """
                UPDATE predictions
                SET notes = CASE WHEN notes IS NULL OR notes = '' THEN $2
                                 ELSE notes || E'\\n' || $2 END
                WHERE prediction_id = $1
                RETURNING *
            """,
                prediction_id,
                notes,
            )
        if row is None:
            raise NotFoundError(f"prediction {prediction_id} not found")
        return _row_to_prediction(row)

    async def delete_prediction(self, prediction_id: int) -> None:
        async with self.pool.acquire() as connection:
            deleted = await connection.fetchval(
                """
                DELETE FROM predictions
                WHERE prediction_id = $1 AND actual IS NULL
                RETURNING prediction_id
            """,
                prediction_id,
            )
        if deleted is None:
            await self.get_prediction(prediction_id)
            raise PredictionStateError(f"prediction {prediction_id} is completed and kept")
        self._touch()

    async def pending_predictions(self, user_id: int) -> list[PredictionRecord]:
        async with self.pool.acquire() as connection:
            rows = await connection.fetch(
                """
                SELECT * FROM predictions
                WHERE user_id = $1 AND actual IS NULL
                ORDER BY predicted_at DESC, prediction_id DESC
            """,
                user_id,
            )
        return [_row_to_prediction(row) for row in rows]

    async def completed_predictions(
        self, user_id: int, limit: Optional[int] = None
    ) -> list[PredictionRecord]:
        async with self.pool.acquire() as connection:
            rows = await connection.fetch(
                """
                SELECT * FROM predictions
                WHERE user_id = $1 AND actual IS NOT NULL
                ORDER BY completed_at DESC, prediction_id DESC
                LIMIT $2
            """,
                user_id,
                limit,
            )
        return [_row_to_prediction(row) for row in rows]

    async def fetch_corpus(
        self,
        space: Space,
        content_id: Optional[int] = None,
        bounds: Optional[Bounds] = None,
    ) -> list[PredictionRecord]:
        space = Space(space)
        query = "SELECT * FROM predictions WHERE space = $1 AND actual IS NOT NULL"
        args: list = [space.value]
        if content_id is not None:
            args.append(content_id)
            query += f" AND content_id = ${len(args)}"
        if bounds is not None:
            clause, bound_args = _bounds_clause(space, bounds, first_arg=len(args) + 1)
            query += f" AND {clause}"
            args.extend(bound_args)
        query += " ORDER BY prediction_id"

        async with self.pool.acquire() as connection:
            async with connection.transaction():
                return [
                    _row_to_prediction(row)
                    async for row in connection.cursor(query, *args)
                ]
