import os
from typing import Optional

import asyncpg
from fastapi import FastAPI, Query, Request
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import JSONResponse

from shapebase.config import load_config
from shapebase.db.postgres import PostgresStore, create_tables
from shapebase.dimensions import Space
from shapebase.errors import NotFoundError, ShapebaseError
from shapebase.evidence import (fetch_evidence, find_taste_buds,
                                format_evidence_line, summarize_history)
from shapebase.logger import logger
from shapebase.ml.calibration import should_request_feedback
from shapebase.models import ContentItem, Outcome, PredictionRecord
from shapebase.search.fuzzy_search import get_searcher
from shapebase.store import MemoryStore
from shapebase.utils import timed

app = FastAPI()
app.add_middleware(SessionMiddleware, secret_key=os.environ.get("SESSION_SECRET", "foobar"))


class LoginParams(BaseModel):
    username: str = Field(min_length=1)
    space: Space = Space.ENTERTAINMENT


class ShapeParams(BaseModel):
    updates: dict[str, float]


class ProfileParams(BaseModel):
    display_name: Optional[str] = None
    current_mood: Optional[str] = None
    bud_bio: Optional[str] = None


class PredictionParams(BaseModel):
    title: str = Field(min_length=1)
    content_type: str = "unknown"
    predicted: float
    ai_predicted: Optional[float] = None
    mood_before: Optional[str] = None
    external_id: Optional[str] = None
    external_source: Optional[str] = None
    year: Optional[int] = None
    parent_id: Optional[int] = None


class OutcomeParams(BaseModel):
    actual: Optional[float] = Field(default=None, ge=0.0, le=10.0)
    outcome: Optional[Outcome] = None
    notes: Optional[str] = None
    mood_after: Optional[str] = None


class NotesParams(BaseModel):
    notes: str = Field(min_length=1)


@app.on_event("startup")
@timed
async def startup_event():
    app.state.config = load_config()
    if os.environ.get("POSTGRES_URI"):
        app.state.pool = await asyncpg.create_pool(os.environ["POSTGRES_URI"])
        await create_tables(app.state.pool)
        app.state.store = PostgresStore(app.state.pool)
    else:
        logger.warning("POSTGRES_URI is not set, using the in-memory store")
        app.state.pool = None
        app.state.store = MemoryStore()


@app.on_event("shutdown")
async def shutdown_event():
    if app.state.pool is not None:
        await app.state.pool.close()


def _session_key(space: Space) -> str:
    return f"user_id:{space.value}"


def _not_logged_in() -> JSONResponse:
    return JSONResponse({"error": "not logged in"}, status_code=401)


def _error(exc: ShapebaseError) -> JSONResponse:
    logger.warning(f"request rejected: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=exc.status)


def _content_json(content: ContentItem) -> dict:
    return {
        "content_id": content.content_id,
        "title": content.title,
        "content_type": content.content_type,
        "year": content.year,
        "parent_id": content.parent_id,
        "external_id": content.external_id,
        "external_source": content.external_source,
    }


def _prediction_json(record: PredictionRecord, content: Optional[ContentItem] = None) -> dict:
    return {
        "prediction_id": record.prediction_id,
        "content_id": record.content_id,
        "content": _content_json(content) if content is not None else None,
        "predicted": record.predicted,
        "ai_predicted": record.ai_predicted,
        "shape_snapshot": record.shape_snapshot.to_dict(),
        "mood_before": record.mood_before,
        "predicted_at": record.predicted_at.isoformat() if record.predicted_at else None,
        "actual": record.actual,
        "outcome": None if record.is_pending else Outcome.from_actual(record.actual).value,
        "mood_after": record.mood_after,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "notes": record.notes,
    }


async def _owned_prediction(request: Request, prediction_id: int) -> PredictionRecord:
    record = await request.app.state.store.get_prediction(prediction_id)
    if request.session.get(_session_key(record.space)) != record.user_id:
        # other users' predictions are invisible
        raise NotFoundError(f"prediction {prediction_id} not found")
    return record


@app.post("/login")
async def login(request: Request, body: LoginParams) -> JSONResponse:
    user_id = await request.app.state.store.get_or_create_user(body.username, body.space)
    request.session[_session_key(body.space)] = user_id
    logger.info(f"storing {body.space.value} user {user_id} in session")
    return JSONResponse({"username": body.username, "space": body.space.value, "user_id": user_id})


@app.get("/{space}/shape")
async def get_shape(request: Request, space: Space) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()
    shape = await request.app.state.store.get_shape(user_id)
    return JSONResponse(
        {
            "space": space.value,
            "dimensions": list(space.dimensions),
            "shape": shape.to_dict() if shape is not None else None,
        }
    )


@app.put("/{space}/shape")
async def update_shape(request: Request, space: Space, body: ShapeParams) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()
    try:
        shape = await request.app.state.store.save_shape(user_id, body.updates)
    except ShapebaseError as exc:
        return _error(exc)
    logger.info(f"updated {sorted(body.updates)} for user {user_id}")
    return JSONResponse({"space": space.value, "shape": shape.to_dict()})


@app.get("/{space}/profile")
async def get_profile(request: Request, space: Space) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()
    profile = await request.app.state.store.get_profile(user_id)
    return JSONResponse(
        {
            "display_name": profile.display_name,
            "current_mood": profile.current_mood,
            "bud_bio": profile.bud_bio,
        }
    )


@app.put("/{space}/profile")
async def update_profile(request: Request, space: Space, body: ProfileParams) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()
    profile = await request.app.state.store.save_profile(
        user_id,
        display_name=body.display_name,
        current_mood=body.current_mood,
        bud_bio=body.bud_bio,
    )
    return JSONResponse(
        {
            "display_name": profile.display_name,
            "current_mood": profile.current_mood,
            "bud_bio": profile.bud_bio,
        }
    )


@app.post("/{space}/predictions")
@timed
async def create_prediction(request: Request, space: Space, body: PredictionParams) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()

    store = request.app.state.store
    shape = await store.get_shape(user_id)
    if shape is None or shape.is_empty:
        return JSONResponse({"error": "save a shape before making predictions"}, status_code=400)

    try:
        content = await store.find_or_create_content(
            body.title,
            body.content_type,
            space,
            external_id=body.external_id,
            external_source=body.external_source,
            year=body.year,
            parent_id=body.parent_id,
        )
        record = await store.save_prediction(
            user_id,
            content.content_id,
            body.predicted,
            shape,
            ai_predicted=body.ai_predicted,
            mood_before=body.mood_before,
        )
    except ShapebaseError as exc:
        return _error(exc)
    logger.info(f"saved prediction {record.prediction_id} of user {user_id} for {content.title}")
    return JSONResponse(_prediction_json(record, content), status_code=201)


@app.get("/{space}/predictions")
async def list_predictions(request: Request, space: Space) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()

    store = request.app.state.store
    pending = await store.pending_predictions(user_id)
    completed = await store.completed_predictions(user_id, limit=20)
    contents = await store.get_contents(sorted({r.content_id for r in pending + completed}))
    return JSONResponse(
        {
            "pending": [_prediction_json(r, contents.get(r.content_id)) for r in pending],
            "completed": [_prediction_json(r, contents.get(r.content_id)) for r in completed],
        }
    )


@app.post("/predictions/{prediction_id}/outcome")
async def record_outcome(request: Request, prediction_id: int, body: OutcomeParams) -> JSONResponse:
    if (body.actual is None) == (body.outcome is None):
        return JSONResponse({"error": "send exactly one of actual or outcome"}, status_code=400)

    store = request.app.state.store
    try:
        record = await _owned_prediction(request, prediction_id)
        actual = body.actual if body.outcome is None else body.outcome.stored_value
        record = await store.record_outcome(
            prediction_id, actual, notes=body.notes, mood_after=body.mood_after
        )
    except ShapebaseError as exc:
        return _error(exc)

    request_feedback = False
    if record.space == Space.MUSIC:
        request_feedback = should_request_feedback(Outcome.from_actual(record.actual), record.predicted)
    logger.info(f"recorded outcome {record.actual} for prediction {prediction_id}")
    return JSONResponse({**_prediction_json(record), "request_feedback": request_feedback})


@app.post("/predictions/{prediction_id}/notes")
async def append_notes(request: Request, prediction_id: int, body: NotesParams) -> JSONResponse:
    try:
        await _owned_prediction(request, prediction_id)
        record = await request.app.state.store.append_notes(prediction_id, body.notes)
    except ShapebaseError as exc:
        return _error(exc)
    return JSONResponse(_prediction_json(record))


@app.delete("/predictions/{prediction_id}")
async def delete_prediction(request: Request, prediction_id: int) -> JSONResponse:
    try:
        await _owned_prediction(request, prediction_id)
        await request.app.state.store.delete_prediction(prediction_id)
    except ShapebaseError as exc:
        return _error(exc)
    logger.info(f"deleted pending prediction {prediction_id}")
    return JSONResponse({"status": "ok"})


@app.get("/{space}/evidence")
@timed
async def evidence(
    request: Request,
    space: Space,
    content_id: Optional[int] = Query(default=None, ge=0),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()

    store = request.app.state.store
    config = request.app.state.config
    shape = await store.get_shape(user_id)
    if shape is None or shape.is_empty:
        return JSONResponse({"evidence": [], "lines": []})

    if content_id is not None:
        params = {"content_id": content_id, "min_weight": config.content_min_weight}
    else:
        params = {"min_weight": config.min_weight, "limit": limit or config.evidence_limit}
    try:
        aggregates = await fetch_evidence(store, shape, sigma=config.sigma, **params)
    except Exception as exc:
        msg = "evidence lookup failed"
        logger.error(msg + " " + str(exc))
        return JSONResponse({"error": msg}, status_code=500)

    return JSONResponse(
        {
            "evidence": [
                {
                    "content": _content_json(agg.content) if agg.content is not None else None,
                    "content_id": agg.content_id,
                    "weighted_avg_outcome": agg.weighted_avg_outcome,
                    "rating_count": agg.rating_count,
                    "total_weight": agg.total_weight,
                }
                for agg in aggregates
            ],
            "lines": [format_evidence_line(agg) for agg in aggregates],
        }
    )


@app.get("/{space}/taste_buds")
async def taste_buds(request: Request, space: Space) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()
    config = request.app.state.config
    buds = await find_taste_buds(
        request.app.state.store, user_id, sigma=config.sigma, limit=config.taste_buds_limit
    )
    return JSONResponse([bud._asdict() for bud in buds])


@app.get("/{space}/calibration")
async def calibration_summary(request: Request, space: Space) -> JSONResponse:
    user_id = request.session.get(_session_key(space))
    if user_id is None:
        return _not_logged_in()

    config = request.app.state.config
    summary = await summarize_history(
        request.app.state.store,
        user_id,
        half_life=config.half_life,
        min_sample=config.min_calibration_sample,
        tolerance=config.calibration_tolerance,
    )
    report, counts, stats = summary["calibration"], summary["counts"], summary["stats"]
    counts_json = None
    if counts is not None:
        counts_json = {
            **counts._asdict(),
            "effective_hits": counts.effective_hits,
            "hit_rate": counts.hit_rate,
        }
    return JSONResponse(
        {
            "verdict": report.verdict.value,
            "sample_size": report.sample_size,
            "weighted_avg_prediction": report.weighted_avg_prediction,
            "weighted_actual_rate": report.weighted_actual_rate,
            "bias": report.bias,
            "counts": counts_json,
            "stats": stats._asdict() if stats is not None else None,
        }
    )


@app.get("/{space}/content/search")
async def search_content(
    request: Request,
    space: Space,
    query: str,
    limit: int = Query(default=10, ge=1, le=50),
    content_type: Optional[str] = None,
) -> JSONResponse:
    searcher = await get_searcher(request.app.state.store, space)
    try:
        contents = searcher(query, limit=limit, content_type=content_type)
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    return JSONResponse([_content_json(content) for content in contents])


@app.get("/content/{content_id}/hierarchy")
async def content_hierarchy(request: Request, content_id: int) -> JSONResponse:
    try:
        hierarchy = await request.app.state.store.get_content_hierarchy(content_id)
    except ShapebaseError as exc:
        return _error(exc)
    return JSONResponse([_content_json(content) for content in hierarchy])
