import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from app.core.config import settings

logger = logging.getLogger(__name__)

class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URI, tz_aware=True)
    mongodb.db = mongodb.client[settings.MONGODB_DB]

    # Create indexes
    await create_indexes(mongodb.db)
    logger.info("Connected to MongoDB: %s", settings.MONGODB_DB)

async def disconnect_from_mongo():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
    logger.info("Disconnected from MongoDB")

async def create_indexes(db: AsyncIOMotorDatabase):
    """Create database indexes."""
    await db["dmr_entries"].create_index([("company_id", 1), ("po_number", 1), ("entry_type", 1)])

    # Open debit notes per vendor+site, oldest first
    await db["debit_notes"].create_index(
        [("company_id", 1), ("vendor_id", 1), ("site_id", 1), ("status", 1), ("created_at", 1)]
    )
    # One entry number per site
    await db["debit_notes"].create_index(
        [("company_id", 1), ("site_id", 1), ("debit_entry_number", -1)], unique=True
    )
    await db["debit_notes"].create_index([("company_id", 1), ("po_number", 1)])

    # Credit note indexes
    await db["credit_notes"].create_index([("company_id", 1), ("vendor_id", 1), ("site_id", 1)])
    await db["credit_notes"].create_index("settled_debit_notes.debit_note_id")

def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db
