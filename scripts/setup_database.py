#!/usr/bin/env python3
"""
Database setup script for the scan analysis service.

This script handles initial table creation, health checks, resets and
loading a handful of sample scans for local development.
"""

import sys
import logging

from scan_analysis.models.database import ScanPriority, ScanStatus, ScanType
from scan_analysis.services.record_store import RecordStore
from scan_analysis.utils.database import db_manager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SAMPLE_SCANS = [
    (ScanType.XRAY, "Chest", ScanPriority.MEDIUM, "samples/chest-xray.jpg"),
    (ScanType.MRI, "Brain", ScanPriority.HIGH, "samples/brain-mri.jpg"),
    (ScanType.CT, "Lung", ScanPriority.MEDIUM, "samples/lung-ct.jpg"),
    (ScanType.XRAY, "Knee", ScanPriority.LOW, "samples/knee-xray.jpg"),
    (ScanType.ULTRASOUND, "Breast", ScanPriority.URGENT, "samples/breast-ultrasound.jpg"),
]


def setup_database():
    """
    Set up the database tables.

    This function:
    1. Checks database connectivity
    2. Creates tables if they don't exist
    3. Verifies the setup
    """
    logger.info("Starting database setup...")

    try:
        logger.info("Checking database connectivity...")
        if not db_manager.health_check():
            logger.error("Database health check failed")
            return False
        logger.info("Database connectivity verified")

        logger.info("Ensuring all tables exist...")
        db_manager.create_tables()

        logger.info("Performing final health check...")
        if not db_manager.health_check():
            logger.error("Final health check failed")
            return False

        logger.info("Database setup completed successfully!")
        return True

    except Exception as e:
        logger.error(f"Database setup failed: {e}")
        return False


def check_setup():
    """Check if the database is reachable and report scan counts."""
    logger.info("Checking database setup...")

    try:
        if not db_manager.health_check():
            logger.error("Database is not accessible")
            return False

        store = RecordStore()
        for scan_status in ScanStatus:
            logger.info(f"Scans {scan_status.value}: {store.count_scans(scan_status)}")

        logger.info("Database setup is valid")
        return True

    except Exception as e:
        logger.error(f"Setup check failed: {e}")
        return False


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This will delete all data!
    """
    logger.warning("Resetting database - this will delete all data!")

    try:
        logger.info("Dropping all tables...")
        db_manager.drop_tables()

        logger.info("Recreating tables...")
        db_manager.create_tables()

        logger.info("Database reset completed successfully!")
        return True

    except Exception as e:
        logger.error(f"Database reset failed: {e}")
        return False


def seed_database():
    """Create pending sample scans referencing images under the local image root."""
    try:
        db_manager.create_tables()
        store = RecordStore()
        for scan_type, body_part, priority, image_key in SAMPLE_SCANS:
            store.create_scan(
                scan_type=scan_type,
                body_part=body_part,
                image_keys=[image_key],
                priority=priority,
                created_by="admin",
                notes="Sample scan",
            )
        logger.info(f"Created {len(SAMPLE_SCANS)} sample scans")
        return True

    except Exception as e:
        logger.error(f"Seeding failed: {e}")
        return False


def main():
    """Main entry point for the database setup script."""
    if len(sys.argv) < 2:
        print("Usage: python setup_database.py <command>")
        print("Commands:")
        print("  setup   - Create the database tables")
        print("  check   - Check if the database is properly set up")
        print("  reset   - Reset the database (WARNING: deletes all data)")
        print("  seed    - Create sample pending scans")
        sys.exit(1)

    command = sys.argv[1].lower()

    if command == "setup":
        success = setup_database()
        sys.exit(0 if success else 1)

    elif command == "check":
        success = check_setup()
        sys.exit(0 if success else 1)

    elif command == "reset":
        # Require confirmation for reset
        if len(sys.argv) < 3 or sys.argv[2] != "--confirm":
            print("WARNING: This will delete all data!")
            print("Use: python setup_database.py reset --confirm")
            sys.exit(1)

        success = reset_database()
        sys.exit(0 if success else 1)

    elif command == "seed":
        success = seed_database()
        sys.exit(0 if success else 1)

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
