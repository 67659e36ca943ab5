from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from pathlib import Path
import os
import logging

from audit_service import AuditService
from permissions import PermissionChecker
from payment_application_service import PaymentApplicationService
import payment_routes

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection (transactions need a replica set)
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
db_name = os.environ.get('DB_NAME', 'construction_management')
cors_origins = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    audit_service = AuditService(db)
    billing_service = PaymentApplicationService(client, db, audit_service)
    await billing_service.create_indexes()
    payment_routes.configure(billing_service, PermissionChecker(db))
    logger.info(f"Billing service connected to database '{db_name}'")

    yield

    client.close()


# Create the main app
app = FastAPI(
    title="Construction Management System - Progress Billing",
    version="1.0.0",
    description="Payment application verification, approval and recall",
    lifespan=lifespan
)


@app.get("/api/health")
async def health():
    return {"status": "healthy", "service": "progress-billing"}


app.include_router(payment_routes.billing_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
