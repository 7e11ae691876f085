import logging
import os
import time
from uuid import UUID

import sentry_sdk
from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from . import pubsub
from .auth import user_from_token
from .database import SessionLocal
from .ratelimit import limiter, testing
from .routes import alerts, checkins, circle, pokes, users, voice
from .services.resolution import circle_link_for

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

dsn = os.getenv("SENTRY_DSN")
if dsn:
    sentry_sdk.init(dsn=dsn, integrations=[FastApiIntegration()])

REQUEST_COUNT = Counter("request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram("request_latency_seconds", "Request latency", ["endpoint"])

app = FastAPI(title="CircleWatch API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, lambda r, e: Response("Too Many Requests", status_code=429))
if not testing:
    app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(request.method, endpoint).inc()
    REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
    return response


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(checkins.router)
app.include_router(users.router)
app.include_router(circle.router)
app.include_router(alerts.router)
app.include_router(pokes.router)
app.include_router(voice.router)


def audit_routes():
    from fastapi.routing import APIRoute
    from .auth import get_current_user

    for route in app.routes:
        if isinstance(route, APIRoute) and route.path.startswith("/api"):
            calls = [dep.call for dep in route.dependant.dependencies]
            if get_current_user not in calls:
                raise RuntimeError(f"Route {route.path} missing authentication")


audit_routes()


@app.websocket("/ws/circle/{checker_id}")
async def circle_events(websocket: WebSocket, checker_id: UUID, token: str = ""):
    db = SessionLocal()
    try:
        user = user_from_token(db, token)
        allowed = user is not None and (
            user.id == checker_id or circle_link_for(db, checker_id, user.id) is not None
        )
    finally:
        db.close()
    if not allowed:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    async for data in pubsub.iter_circle_events(checker_id):
        await websocket.send_text(data)
