#!/usr/bin/env python3
"""
Register a merchant and its default settings.
Usage: python scripts/add_merchant.py <shop_domain> <access_token> [currency] [cron]

The cron expression, if given, schedules both catalog and order syncs.
"""

import asyncio
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from margin_sync.config import settings
from margin_sync.db import AppSettings, Merchant, SQLiteDatabase
from margin_sync.processor import InvalidCronExpression, parse_cron
from margin_sync.shopify import normalize_shop_domain


async def main(shop_domain: str, access_token: str, currency=None, cron=None):
    if cron:
        try:
            parse_cron(cron)
        except InvalidCronExpression as e:
            print(e)
            sys.exit(1)

    db = SQLiteDatabase(settings.database_path)
    await db.initialize()

    try:
        merchant = await db.create_merchant(Merchant(
            shop_domain=normalize_shop_domain(shop_domain),
            access_token=access_token,
            shop_currency=currency.upper() if currency else None,
        ))
        await db.save_app_settings(AppSettings(
            merchant_id=merchant.id,
            default_currency=merchant.shop_currency,
            auto_refresh_cron=cron,
        ))
    finally:
        await db.close()

    print(f"\nMerchant created for {merchant.shop_domain}\n")
    print(f"MERCHANT_ID={merchant.id}")
    print()


if __name__ == "__main__":
    if len(sys.argv) < 3 or len(sys.argv) > 5:
        print("Usage: python scripts/add_merchant.py <shop_domain> <access_token> [currency] [cron]")
        sys.exit(1)

    asyncio.run(main(*sys.argv[1:]))
