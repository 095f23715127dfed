#!/usr/bin/env python3
"""
One-time setup script: creates the dialogue engine's indexes and seeds a
demo clinic with its doctors.

Creates:
- all indexes of DatabaseService.create_indexes (including the unique
  active-session and booking idempotency indexes)
- clinics collection: one clinic document
- doctors collection: doctors linked to that clinic by service code

Usage:
    python scripts/seed_clinic.py
"""

import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add parent directory to path to import clinicbot modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from clinicbot.config.settings import settings
from clinicbot.services.db_service import DatabaseService, create_mongo_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CLINIC_ID = "white-tooth"

CLINIC = {
    "_id": CLINIC_ID,
    "name": settings.clinic_name,
    "phone": "+77012345678",
    "address": "г. Алматы, ул. Абая, 123",
    "timezone": settings.clinic_timezone,
    "languages": ["ru", "kk"],
    "is_active": True,
}

DOCTORS = [
    {"_id": "ivanov", "name": "Доктор Иванов Петр Сергеевич", "specialization": "Терапевт", "services": ["consultation", "treatment", "cleaning"]},
    {"_id": "petrova", "name": "Доктор Петрова Анна Николаевна", "specialization": "Хирург", "services": ["consultation", "surgery"]},
    {"_id": "sidorov", "name": "Доктор Сидоров Михаил Владимирович", "specialization": "Ортопед", "services": ["consultation", "prosthetics"]},
]


async def seed_clinic():
    client = None
    try:
        logger.info("Connecting to MongoDB...")
        client = create_mongo_client(settings)
        db = client.get_default_database()
        await client.admin.command('ping')
        logger.info(f"Connected to database: {db.name}")

        await DatabaseService(db).create_indexes()

        now = datetime.now(timezone.utc)
        await db.clinics.update_one(
            {"_id": CLINIC_ID},
            {"$set": {k: v for k, v in CLINIC.items() if k != "_id"}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
        logger.info(f"✓ Clinic '{CLINIC['name']}' ready (id {CLINIC_ID})")

        for doctor in DOCTORS:
            await db.doctors.update_one(
                {"_id": doctor["_id"]},
                {"$set": {**{k: v for k, v in doctor.items() if k != "_id"}, "clinic_id": CLINIC_ID, "is_active": True}},
                upsert=True,
            )
        logger.info(f"✓ {len(DOCTORS)} doctors ready")

    except Exception as e:
        logger.error(f"Error seeding clinic data: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if client:
            client.close()
            logger.info("MongoDB connection closed")


if __name__ == "__main__":
    asyncio.run(seed_clinic())
