import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient

from config import CORS_ORIGINS, DB_NAME, LOG_LEVEL, MONGO_URL
from routers import admin_memberships, memberships, razorpay_webhook
from services.membership_service import ensure_indexes

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# MongoDB connection (transactions need a replica set)
client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
db = client[DB_NAME]


def init_routers(database):
    """Initialize routers with database instance"""
    memberships.init_router(database)
    admin_memberships.init_router(database)
    razorpay_webhook.init_router(database)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_routers(db)
    await ensure_indexes(db)
    logger.info(f"Connected to MongoDB database {DB_NAME}")
    yield
    client.close()


app = FastAPI(title="Membership API", lifespan=lifespan)

api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    return {"status": "healthy"}


api_router.include_router(memberships.router)
api_router.include_router(admin_memberships.router)
api_router.include_router(razorpay_webhook.router)
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
