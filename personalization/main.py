import asyncio
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from personalization.constants import INSIGHT_DEFAULT_LIMIT
from personalization.context import ServiceContext, build_context
from personalization.feed import get_personalized_feed
from personalization.insights import get_creator_insight_snapshot
from personalization.logging_config import configure_logging, get_logger
from personalization.models import PersonalizedFeedOptions
from personalization.privacy import (
    export_user_insights,
    get_privacy_preferences,
    update_privacy_preferences,
)

logger = get_logger(__name__)


class PrivacyUpdateRequest(BaseModel):
    personalization_opt_out: Optional[bool] = None
    analytics_opt_out: Optional[bool] = None


def _require_store(context: ServiceContext) -> None:
    if not context.database_enabled:
        raise HTTPException(status_code=503, detail="Personalization store unavailable")


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return user_id


def create_app(context: Optional[ServiceContext] = None) -> FastAPI:
    if context is None:
        context = build_context()
        configure_logging(context.settings.log_level)

    app = FastAPI(title="Reader Personalization API")
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"status": "ok", "store": context.database_enabled}

    @app.get("/feed/personal")
    async def personal_feed(
        response: Response,
        limit: Optional[int] = None,
        post_id: Optional[str] = Query(default=None, alias="postId"),
        refresh: Optional[str] = None,
        x_user_id: Optional[str] = Header(default=None),
    ):
        _require_store(context)
        options = PersonalizedFeedOptions(
            user_id=x_user_id or None,
            limit=limit,
            context_post_id=post_id,
            force_refresh=refresh == "1",
        )
        feed = await asyncio.to_thread(get_personalized_feed, context, options)
        response.headers["Cache-Control"] = "private, max-age=60"
        response.headers["X-Personalization-Cache"] = feed.cache
        if feed.segment:
            response.headers["X-Personalization-Segment"] = feed.segment
        return feed.to_dict()

    @app.get("/privacy")
    def read_privacy(x_user_id: Optional[str] = Header(default=None)):
        user_id = _require_user(x_user_id)
        _require_store(context)
        return get_privacy_preferences(context, user_id).to_dict()

    @app.put("/privacy")
    def write_privacy(
        req: PrivacyUpdateRequest, x_user_id: Optional[str] = Header(default=None)
    ):
        user_id = _require_user(x_user_id)
        _require_store(context)
        prefs = update_privacy_preferences(
            context,
            user_id,
            personalization_opt_out=req.personalization_opt_out,
            analytics_opt_out=req.analytics_opt_out,
        )
        logger.info("privacy_updated", user_id=user_id, **prefs.to_dict())
        return prefs.to_dict()

    @app.get("/privacy/export")
    def export_privacy(x_user_id: Optional[str] = Header(default=None)):
        user_id = _require_user(x_user_id)
        _require_store(context)
        payload = export_user_insights(context, user_id)
        if payload is None:
            raise HTTPException(status_code=404, detail="No personalization profile")
        return payload

    @app.get("/insights/creator")
    def creator_insights(limit: int = Query(default=INSIGHT_DEFAULT_LIMIT, ge=1, le=100)):
        _require_store(context)
        return get_creator_insight_snapshot(context, limit).to_dict()

    return app
