# transcription_quota/app/main.py
from __future__ import annotations
import logging
import sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from transcription_quota.app.config import settings
from transcription_quota.app.routers.v2.billing import router as billing_v2_router
from transcription_quota.app.routers.v2.transcriptions import router as transcriptions_v2_router

# Plain stdout logging (dev and containers)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

app = FastAPI(title="Transcription Credits API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(transcriptions_v2_router)
app.include_router(billing_v2_router)


@app.get("/health")
def health():
    return {"ok": True, "env": settings.APP_ENV}
