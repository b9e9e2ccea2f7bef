import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from dotenv import load_dotenv
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from database import UserStore, UserStoreError
from schemas import UserCreate, UserUpdate, UserResponse

# Chargement des variables d'environnement
load_dotenv()

SERVICE_NAME = "users-service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./users.db"

# Config logging JSON (niveaux INFO, WARNING, ERROR)
logger.remove()  # Supprime le handler par défaut
logger.add(
    sink="logs.json",
    format="{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message} | {extra}",
    level="INFO",
    serialize=True,  # Format JSON
    rotation="1 day",  # Rotation quotidienne
)

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["service", "method", "endpoint"]
)
ERROR_COUNT = Counter(
    "http_errors_total",
    "Total HTTP errors",
    ["service", "endpoint", "error_type"]
)

# Connexion à la base, initialisée une seule fois au démarrage
store: Optional[UserStore] = None


class InvalidUserIdError(ValueError):
    error_type = "invalid_id"


USER_ID_PATTERN = re.compile(r"-?[0-9]+")
# Bornes d'un INTEGER SQL (64 bits signé)
MIN_USER_ID = -(2 ** 63)
MAX_USER_ID = 2 ** 63 - 1


def parse_user_id(raw: str) -> int:
    """Parse the :id path segment; anything but a plain 64-bit integer is rejected."""
    if not USER_ID_PATTERN.fullmatch(raw):
        raise InvalidUserIdError(f"Invalid user id: {raw!r}")
    user_id = int(raw)
    if not MIN_USER_ID <= user_id <= MAX_USER_ID:
        raise InvalidUserIdError(f"User id out of range: {raw!r}")
    return user_id


@asynccontextmanager
async def lifespan(app: FastAPI):
    global store
    database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    store = UserStore(database_url)
    await store.create_schema()
    logger.info(f"{SERVICE_NAME} connected to database")
    yield
    await store.dispose()
    store = None
    logger.info(f"{SERVICE_NAME} shutting down")


app = FastAPI(title="Users Service", lifespan=lifespan)


def get_store() -> UserStore:
    if store is None:
        raise RuntimeError("Database not initialized")
    return store


def operation_failed(endpoint: str, message: str, error: Exception, error_type: Optional[str] = None) -> JSONResponse:
    """Every failure of an operation becomes the same 500 with a fixed message."""
    error_type = error_type or getattr(error, "error_type", "unknown")
    logger.error(f"{message}: {error}", extra={"error_type": error_type})
    ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint, error_type=error_type).inc()
    return JSONResponse(status_code=500, content={"error": message})


# Message fixe par opération, aussi pour les bodies rejetés avant le handler
USER_COLLECTION_ERRORS = {
    "POST": "User could not be created",
    "GET": "Users could not be fetched",
}
USER_ITEM_ERRORS = {
    "GET": "User could not be fetched",
    "PUT": "User could not be updated",
    "DELETE": "User could not be deleted",
}


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    path = request.url.path.rstrip("/")
    if path == "/users":
        message, endpoint = USER_COLLECTION_ERRORS.get(request.method), "/users"
    elif path.startswith("/users/"):
        message, endpoint = USER_ITEM_ERRORS.get(request.method), "/users/{user_id}"
    else:
        message = None
    if message is None:
        return await request_validation_exception_handler(request, exc)
    return operation_failed(endpoint, message, exc, "invalid_body")


# Middleware pour logger les requests avec correlation ID (observabilité)
@app.middleware("http")
async def log_requests(request: Request, call_next):
    # Generate or propagate correlation ID (trace-id)
    trace_id = request.headers.get("X-Trace-ID", str(uuid.uuid4()))
    start_time = time.time()

    # Bind trace_id to logger context
    with logger.contextualize(trace_id=trace_id, service=SERVICE_NAME):
        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={"method": request.method, "url": str(request.url), "trace_id": trace_id}
        )

        response = await call_next(request)

        latency = time.time() - start_time

        REQUEST_COUNT.labels(
            service=SERVICE_NAME,
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code
        ).inc()
        REQUEST_LATENCY.labels(
            service=SERVICE_NAME,
            method=request.method,
            endpoint=request.url.path
        ).observe(latency)

        logger.info(
            f"Response status: {response.status_code}",
            extra={"status": response.status_code, "latency": latency, "trace_id": trace_id}
        )

        # Add trace_id to response headers for tracing
        response.headers["X-Trace-ID"] = trace_id
        return response


@app.get("/metrics")
async def metrics():
    """Endpoint /metrics compatible Prometheus"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health(store: UserStore = Depends(get_store)):
    """Health check endpoint"""
    database_ok = await store.health_check()
    return {
        "status": "healthy" if database_ok else "degraded",
        "service": SERVICE_NAME,
        "database": "ok" if database_ok else "unavailable",
    }


@app.post("/users", response_model=UserResponse, status_code=201)
async def create_user(user: UserCreate, store: UserStore = Depends(get_store)):
    logger.info(f"Creating user: {user.name}")
    try:
        created = await store.create(user.name, user.email)
    except UserStoreError as e:
        return operation_failed("/users", "User could not be created", e)
    logger.info(f"User created with ID {created.id}")
    return created


@app.get("/users", response_model=List[UserResponse])
async def get_users(store: UserStore = Depends(get_store)):
    logger.info("Fetching all users")
    try:
        return await store.find_all()
    except UserStoreError as e:
        return operation_failed("/users", "Users could not be fetched", e)


@app.get("/users/{user_id}", response_model=Optional[UserResponse])
async def get_user(user_id: str, store: UserStore = Depends(get_store)):
    logger.info(f"Fetching user {user_id}")
    try:
        user = await store.find_unique(parse_user_id(user_id))
    except (InvalidUserIdError, UserStoreError) as e:
        return operation_failed("/users/{user_id}", "User could not be fetched", e)
    if user is None:
        # Pas de 404: on renvoie null avec un 200
        logger.warning(f"User {user_id} not found")
    return user


@app.put("/users/{user_id}", response_model=UserResponse)
async def update_user(user_id: str, user: UserUpdate, store: UserStore = Depends(get_store)):
    logger.info(f"Updating user {user_id}")
    try:
        return await store.update(parse_user_id(user_id), **user.model_dump(exclude_unset=True))
    except (InvalidUserIdError, UserStoreError) as e:
        return operation_failed("/users/{user_id}", "User could not be updated", e)


@app.delete("/users/{user_id}", response_model=UserResponse)
async def delete_user(user_id: str, store: UserStore = Depends(get_store)):
    logger.info(f"Deleting user {user_id}")
    try:
        return await store.delete(parse_user_id(user_id))
    except (InvalidUserIdError, UserStoreError) as e:
        return operation_failed("/users/{user_id}", "User could not be deleted", e)


if __name__ == "__main__":
    port = int(os.getenv("PORT", 3000))
    logger.info(f"Server running on http://localhost:{port}")
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=port)
