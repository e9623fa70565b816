from contextlib import asynccontextmanager
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from tickethub.config import settings
from tickethub.database import run_migrations
from tickethub.logging_setup import request_id_var, setup_json_logging
from tickethub.bookings import router as bookings_router
from tickethub.payments import router as payments_router
from tickethub.admin import router as admin_router
from tickethub.gnpl import router as gnpl_router, admin_router as gnpl_admin_router

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_json_logging(settings.LOG_LEVEL)
    if settings.DB_MIGRATE_ON_STARTUP:
        run_migrations()
    yield

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="TicketHub booking reservation & settlement API",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL, "https://web.telegram.org"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response

# Include routers
app.include_router(
    bookings_router,
    prefix=f"{settings.API_V1_STR}/bookings",
    tags=["Booking & Ticketing"]
)

app.include_router(
    payments_router,
    prefix=f"{settings.API_V1_STR}/payments",
    tags=["Payments"]
)

app.include_router(
    gnpl_router,
    prefix=f"{settings.API_V1_STR}/gnpl",
    tags=["GNPL"]
)

app.include_router(
    gnpl_admin_router,
    prefix=f"{settings.API_V1_STR}/admin/gnpl",
    tags=["Admin GNPL"]
)

app.include_router(admin_router)

@app.get("/")
def root():
    """Root endpoint"""
    return {
        "message": "TicketHub Booking Engine API",
        "version": "1.0.0",
        "docs": "/docs"
    }

@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
