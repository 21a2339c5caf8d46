"""Seed the database with a demo rotation slot."""

from __future__ import annotations

import os

from dotenv import load_dotenv

from rotator.db.migrate import run_migrations
from rotator.db.session import create_engine_from_env
from rotator.errors import PermanentValidationError
from rotator.media.models import MediaDescriptor
from rotator.rotation.store import SlotStore

DEMO_SHOP = os.environ.get("DEMO_SHOP", "demo-shop.myshopify.com")
DEMO_PRODUCT = os.environ.get("DEMO_PRODUCT_ID", "1000")

CONTROL_MEDIA = [
    MediaDescriptor(source_url="https://cdn.example.com/demo/front.jpg", position=0, alt_text="Front"),
    MediaDescriptor(source_url="https://cdn.example.com/demo/back.jpg", position=1, alt_text="Back"),
]
TEST_MEDIA = [
    MediaDescriptor(source_url="https://cdn.example.com/demo/front.jpg", position=0, alt_text="Front"),
    MediaDescriptor(source_url="https://cdn.example.com/demo/model.jpg", position=1, alt_text="On model"),
]


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    store = SlotStore(engine)
    try:
        slot = store.create_slot(
            shop_id=DEMO_SHOP,
            product_id=DEMO_PRODUCT,
            test_id="demo-test",
            control_media=CONTROL_MEDIA,
            test_media=TEST_MEDIA,
            interval_minutes=60,
        )
    except PermanentValidationError as exc:
        print(f"Skipped: {exc}")
        return
    print(f"Seed complete: slot {slot.id}")


if __name__ == "__main__":
    main()
