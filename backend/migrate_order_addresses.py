import json
import logging
import os
import sys

from dotenv import load_dotenv
from pymongo import MongoClient

logger = logging.getLogger("migrate_order_addresses")


def migrate_order_addresses(db) -> int:
    """Replace JSON-string order addresses with structured documents."""
    orders = list(db.orders.find({}, {"address": 1}))
    logger.info("Found %d orders to check", len(orders))

    migrated_count = 0
    for order in orders:
        address = order.get("address")
        if not isinstance(address, str):
            continue

        try:
            address_document = json.loads(address)
        except ValueError as exc:
            logger.error("Error parsing address for order %s: %s", order["_id"], exc)
            continue

        if not isinstance(address_document, dict):
            logger.error("Address for order %s is not an object, skipping", order["_id"])
            continue

        db.orders.update_one(
            {"_id": order["_id"]}, {"$set": {"address": address_document}}
        )
        migrated_count += 1
        logger.info("Migrated order %s", order["_id"])

    logger.info("Migration complete. Migrated %d orders.", migrated_count)
    return migrated_count


def main() -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    mongo_uri = os.getenv("MONGO_URI", "mongodb://localhost:27017/arianshop")
    client = MongoClient(mongo_uri)
    try:
        migrate_order_addresses(client.get_default_database("arianshop"))
    except Exception as exc:
        logger.error("Migration error: %s", exc)
        return 1
    finally:
        client.close()
        logger.info("Database connection closed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
