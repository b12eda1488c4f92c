"""FastAPI application serving the admission webhook endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, FastAPI

from ndb_operator import __version__
from ndb_operator.admission.review import AdmissionReviewer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ndb", tags=["admission"])
health_router = APIRouter(tags=["health"])

_reviewer: AdmissionReviewer | None = None


def init_router(reviewer: AdmissionReviewer) -> None:
    global _reviewer  # noqa: PLW0603
    _reviewer = reviewer


def _svc() -> AdmissionReviewer:
    assert _reviewer is not None, "AdmissionReviewer not initialized"
    return _reviewer


@router.post("/validate")
def validate(review: Any = Body(...)) -> dict[str, Any]:  # noqa: B008
    return _svc().validate(review)


@router.post("/mutate")
def mutate(review: Any = Body(...)) -> dict[str, Any]:  # noqa: B008
    return _svc().mutate(review)


@health_router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok", "version": __version__}


def create_app(reviewer: AdmissionReviewer | None = None) -> FastAPI:
    """Build and return the webhook application."""
    app = FastAPI(title="NDB Operator Webhook", version=__version__, docs_url=None)

    init_router(reviewer or AdmissionReviewer())
    app.include_router(router)
    app.include_router(health_router)

    logger.info("Admission webhook endpoints registered under %s", router.prefix)
    return app
