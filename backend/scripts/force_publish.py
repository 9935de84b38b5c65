#!/usr/bin/env python3
"""
Force the active-drop metafield for one shop to match the store (same as POST /api/debug/metafield/update).
Run: cd backend && python scripts/force_publish.py --shop my-shop.myshopify.com --token shpat_...
"""
import argparse
import json
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.api.deps import validate_shop_domain
from app.core.errors import DropSchedulerError
from app.scheduler.engine import DropEngine
from app.scheduler.shop_actor import Command
from app.services.catalog.shopify_catalog import ShopifyCatalog


def main():
    parser = argparse.ArgumentParser(description="Force-publish the active drop handle for one shop")
    parser.add_argument("--shop", required=True, help="<name>.myshopify.com")
    parser.add_argument("--token", default=os.getenv("SHOPIFY_ACCESS_TOKEN"), help="Offline Admin API token (or SHOPIFY_ACCESS_TOKEN)")
    parser.add_argument("--reset-cache", action="store_true", help="Re-read owner id and current value first")
    args = parser.parse_args()

    engine = DropEngine(ShopifyCatalog())
    try:
        shop = validate_shop_domain(args.shop)
        engine.authenticate(shop, args.token)
        result = engine.trigger(shop, Command.PUBLISH, reset_cache=args.reset_cache)
    except DropSchedulerError as e:
        print(f"FAIL {e.status_code}: {e.message}")
        sys.exit(1)
    print(json.dumps(result, indent=2))
    # The debug path never raises on a failed write; the cache flag carries it
    if result["cache_state"]["last_write_failed"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
