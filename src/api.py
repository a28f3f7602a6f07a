"""
HTTP API - REST endpoints for submitting and inspecting desired state.

A FastAPI application over the StateStore. GuestBooks written here are
picked up by the controller through the store's event bus; the API never
touches Deployments except to read them.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from events import EventBus, ObjectEvent
from models import Deployment, GuestBook, GuestBookSpec, ObjectKey, ObjectMeta
from store import ConflictError, NotFoundError, StateStore, StoreError
from validation import GUESTBOOK_SPEC_SCHEMA, validate_spec_against_schema

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


class GuestBookApply(BaseModel):
    """Request body for creating or replacing a GuestBook."""

    spec: Dict[str, Any] = Field(
        default_factory=dict, description="GuestBook spec, e.g. {'replicas': 5}"
    )
    labels: Optional[Dict[str, str]] = Field(None, description="Object labels")

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        is_valid, error = validate_spec_against_schema(v, GUESTBOOK_SPEC_SCHEMA)
        if not is_valid:
            raise ValueError(error)
        return v


class GuestBookResponse(BaseModel):
    """Response model for a GuestBook."""

    namespace: str
    name: str
    resource_version: Optional[str] = None
    labels: Dict[str, str] = {}
    replicas: Optional[int] = None

    @classmethod
    def from_guestbook(cls, guestbook: GuestBook) -> "GuestBookResponse":
        return cls(
            namespace=guestbook.metadata.namespace,
            name=guestbook.metadata.name,
            resource_version=guestbook.metadata.resource_version,
            labels=guestbook.metadata.labels,
            replicas=guestbook.spec.replicas,
        )


def _check_key(namespace: str, name: str) -> ObjectKey:
    try:
        validate_name_format(namespace, "namespace")
        validate_name_format(name, "name")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ObjectKey(namespace=namespace, name=name)


def create_app(
    store: StateStore,
    controller: Optional[Any] = None,
    event_bus: Optional[EventBus] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        store: Store holding GuestBooks and Deployments.
        controller: Optional Controller for manual reconcile triggers.
        event_bus: Optional EventBus backing the SSE watch stream.

    Returns:
        A configured FastAPI app.
    """
    app = FastAPI(
        title="GuestBook Operator API",
        description="Desired-state API for guestbook front-ends",
        version="1.0.0",
    )

    @app.get("/")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "guestbook-operator"}

    # ==================== GuestBook Endpoints ====================

    @app.get("/api/v1/guestbooks", response_model=List[GuestBookResponse])
    async def list_guestbooks(namespace: Optional[str] = None):
        """List GuestBooks, optionally in one namespace."""
        try:
            guestbooks = await store.list(GuestBook, namespace=namespace)
        except StoreError as e:
            logger.error(f"Error listing GuestBooks: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return [GuestBookResponse.from_guestbook(gb) for gb in guestbooks]

    @app.get(
        "/api/v1/namespaces/{namespace}/guestbooks/{name}",
        response_model=GuestBookResponse,
    )
    async def get_guestbook(namespace: str, name: str):
        """Get a GuestBook."""
        key = _check_key(namespace, name)
        try:
            guestbook = await store.get(GuestBook, key)
        except StoreError as e:
            logger.error(f"Error getting GuestBook {key}: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        if guestbook is None:
            raise HTTPException(status_code=404, detail="GuestBook not found")
        return GuestBookResponse.from_guestbook(guestbook)

    @app.put(
        "/api/v1/namespaces/{namespace}/guestbooks/{name}",
        response_model=GuestBookResponse,
    )
    async def apply_guestbook(namespace: str, name: str, body: GuestBookApply):
        """Create a GuestBook or replace the spec of an existing one."""
        key = _check_key(namespace, name)
        spec = GuestBookSpec(replicas=body.spec.get("replicas"))
        try:
            existing = await store.get(GuestBook, key)
            if existing is None:
                stored = await store.create(
                    GuestBook(
                        metadata=ObjectMeta(
                            name=name, namespace=namespace, labels=body.labels or {}
                        ),
                        spec=spec,
                    )
                )
                logger.info(f"Created GuestBook {key}")
            else:
                existing.spec = spec
                if body.labels is not None:
                    existing.metadata.labels = body.labels
                stored = await store.update(existing)
                logger.info(f"Updated GuestBook {key}")
        except ConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except StoreError as e:
            logger.error(f"Error applying GuestBook {key}: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return GuestBookResponse.from_guestbook(stored)

    @app.delete("/api/v1/namespaces/{namespace}/guestbooks/{name}")
    async def delete_guestbook(namespace: str, name: str):
        """Delete a GuestBook; its Deployment is garbage collected."""
        key = _check_key(namespace, name)
        try:
            await store.delete(GuestBook, key)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="GuestBook not found")
        except StoreError as e:
            logger.error(f"Error deleting GuestBook {key}: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        logger.info(f"Deleted GuestBook {key}")
        return {"message": "GuestBook deleted", "namespace": namespace, "name": name}

    @app.post(
        "/api/v1/namespaces/{namespace}/guestbooks/{name}/reconcile",
        status_code=202,
    )
    async def trigger_reconciliation(namespace: str, name: str):
        """Manually trigger reconciliation for a GuestBook."""
        if controller is None:
            raise HTTPException(status_code=503, detail="Controller not available")
        key = _check_key(namespace, name)
        controller.trigger_reconciliation(key)
        return {
            "message": "Reconciliation triggered",
            "namespace": namespace,
            "name": name,
        }

    # ==================== Deployment Endpoints ====================

    @app.get("/api/v1/deployments")
    async def list_deployments(namespace: Optional[str] = None):
        """List Deployments managed by the operator."""
        try:
            deployments = await store.list(Deployment, namespace=namespace)
        except StoreError as e:
            logger.error(f"Error listing Deployments: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return [deployment.to_dict() for deployment in deployments]

    @app.get("/api/v1/namespaces/{namespace}/deployments/{name}")
    async def get_deployment(namespace: str, name: str):
        """Get a Deployment."""
        key = _check_key(namespace, name)
        try:
            deployment = await store.get(Deployment, key)
        except StoreError as e:
            logger.error(f"Error getting Deployment {key}: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        if deployment is None:
            raise HTTPException(status_code=404, detail="Deployment not found")
        return deployment.to_dict()

    # ==================== Event Streaming ====================

    @app.get("/api/v1/events")
    async def stream_events(kind: Optional[str] = None):
        """SSE stream of object events, optionally filtered by kind."""
        if event_bus is None:
            raise HTTPException(
                status_code=503,
                detail="Event streaming not available",
            )

        if kind:

            def filter_fn(event: ObjectEvent) -> bool:
                return event.kind == kind

        else:
            filter_fn = None

        subscriber_id, subscription = await event_bus.subscribe(filter_fn)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class APIServer:
    """Runs the FastAPI app under uvicorn."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8000):
        self.app = app
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
