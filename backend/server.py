"""
LexDesk CRM - API server

Client timeline (interaction aggregator), WhatsApp and email dispatch.
"""

from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import logging

from config import CORS_ORIGINS, client
from routes.emails import router as emails_router
from routes.interactions import router as interactions_router
from routes.whatsapp import router as whatsapp_router
from services.whatsapp_dispatch import whatsapp_threads

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app without a prefix
app = FastAPI(title="LexDesk CRM")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "LexDesk CRM API"}


api_router.include_router(interactions_router)
api_router.include_router(whatsapp_router)
api_router.include_router(emails_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
async def shutdown_db_client():
    whatsapp_threads.shutdown()
    client.close()
    logger.info("LexDesk CRM stopped")
