"""FastAPI dashboard API - whitelist, links, role sync and the donation webhook."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bot.models.base import init_db
from web.api.auth_routes import router as auth_router
from web.api.donation_routes import router as donation_router
from web.api.utils import get_services
from web.api.whitelist_routes import router as whitelist_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    if get_services.cache_info().currsize:
        await get_services().close()


app = FastAPI(title="Roster Whitelist API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(whitelist_router)
app.include_router(donation_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
