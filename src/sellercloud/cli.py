"""
Command-line interface for SellerCloud.

Manages marketplace connections, fetches and refreshes cached data, and prints
analytics computed from the cached snapshot. The CLI is a plain consumer of
the data store and the analytics service: it never talks to a marketplace
except through the fetch gateway.
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import date
from typing import Any, Dict, Optional

import httpx

from sellercloud.cache.storage import create_storage
from sellercloud.core.currency import RateTable
from sellercloud.core.models import DataType
from sellercloud.marketplaces.base import FetchOptions
from sellercloud.marketplaces.factory import (
    SUPPORTED_MARKETPLACES,
    create_marketplace_client,
    credentials_from_dict,
)
from sellercloud.security.encryption import CredentialEncryptor
from sellercloud.services.analytics_service import AnalyticsService
from sellercloud.services.credentials import EncryptedCredentialStore
from sellercloud.services.data_store import MarketplaceDataStore
from sellercloud.services.gateway import FetchGateway
from sellercloud.utils.config import get_config, reload_config, validate_configuration
from sellercloud.utils.exceptions import SellerCloudError
from sellercloud.utils.logger import get_logger, setup_logging


cli_logger = get_logger(__name__)

STATUS_EMOJI = {
    "never_loaded": "⚪",
    "fresh": "✅",
    "stale": "🕒",
    "stale_with_error": "⚠️",
    "failed": "❌",
}


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


class SellerCloudCLI:
    """Command-line interface for SellerCloud operations."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id
        self.config = None
        self.credential_store = None
        self.gateway = None
        self.store = None

    def _init_services(self):
        """Initialize services (lazy loading)."""
        if self.store is not None:
            return

        self.config = get_config()
        self.user_id = self.user_id or self.config.app.default_user

        storage = create_storage(self.config.cache)
        if self.config.cache.storage_backend == "memory":
            print("⚠️  Memory storage selected: connections and data are lost when the command exits")

        encryptor = CredentialEncryptor(
            self.config.app.encryption_master_key,
            self.config.app.encryption_secondary_key
        )
        self.credential_store = EncryptedCredentialStore(storage, encryptor)
        self.gateway = FetchGateway(
            self.user_id,
            self.credential_store,
            config=self.config.gateway,
            rates=RateTable.from_config(self.config.currency),
        )
        # Reads in a one-shot command must not start background refreshes
        cache_config = self.config.cache.model_copy(update={"auto_refresh": False})
        self.store = MarketplaceDataStore(self.user_id, self.gateway, storage, cache_config)
        cli_logger.info(f"Services initialized for user {self.user_id}")

    async def close(self):
        if self.gateway is not None:
            await self.gateway.aclose()

    async def cmd_config(self, args) -> int:
        """Handle configuration commands."""
        if args.config_action == "validate":
            cli_logger.info("Validating configuration...")
            validation_result = validate_configuration()

            if validation_result["valid"]:
                print("✅ Configuration is valid")
                print(f"📊 Summary: {json.dumps(validation_result['summary'], indent=2)}")
                return 0
            print(f"❌ Configuration validation failed: {validation_result['error']}")
            return 1

        if args.config_action == "show":
            config = get_config()
            print("📋 Current configuration:")
            config_summary = {
                "cache": config.cache.model_dump(),
                "gateway": config.gateway.model_dump(),
                "currency": config.currency.model_dump(),
                "application": {
                    "log_level": config.app.log_level,
                    "debug_mode": config.app.debug_mode,
                    "default_user": config.app.default_user,
                    "low_stock_threshold": config.app.low_stock_threshold,
                    "has_encryption_key": bool(config.app.encryption_master_key),
                    "has_secondary_key": bool(config.app.encryption_secondary_key),
                },
            }
            print(json.dumps(config_summary, indent=2))
            return 0

        if args.config_action == "reload":
            cli_logger.info("Reloading configuration...")
            reload_config()
            print("✅ Configuration reloaded successfully")
            return 0

        if args.config_action == "generate-key":
            print("🔑 New encryption key (set it as SELLERCLOUD_ENCRYPTION_MASTER_KEY):")
            print(CredentialEncryptor.generate_key())
            return 0

        print(f"❌ Unknown config action: {args.config_action}")
        return 1

    async def cmd_connect(self, args) -> int:
        """Store credentials for a marketplace."""
        self._init_services()

        fields: Dict[str, Any] = {"api_key": args.api_key}
        for name in ("campaign_id", "business_id", "shop_id", "client_id"):
            value = getattr(args, name)
            if value is not None:
                fields[name] = value
        credentials = credentials_from_dict(args.marketplace, fields)

        if args.verify:
            print(f"🔌 Testing {args.marketplace} credentials...")
            async with httpx.AsyncClient(timeout=self.config.gateway.request_timeout) as http:
                client = create_marketplace_client(args.marketplace, credentials, http)
                result = await client.test_connection()
            if not result["success"]:
                print(f"❌ {args.marketplace} rejected the credentials: {result['error']}")
                return 1
            print(f"✅ {args.marketplace} API connection successful")

        self.credential_store.connect(self.user_id, args.marketplace, credentials)
        print(f"✅ Connected {args.marketplace} for user {self.user_id}")
        return 0

    async def cmd_disconnect(self, args) -> int:
        """Remove a marketplace connection and its cached data."""
        self._init_services()

        removed = self.credential_store.disconnect(self.user_id, args.marketplace)
        self.store.disconnect(args.marketplace)

        if not removed:
            print(f"⚠️  {args.marketplace} was not connected")
            return 1
        print(f"✅ Disconnected {args.marketplace}")
        return 0

    async def cmd_status(self, args) -> int:
        """Show connections and snapshot state."""
        self._init_services()

        connections = await self.credential_store.list_connected(self.user_id)
        if not connections:
            print("📭 No marketplaces connected. Use: sellercloud connect <marketplace> --api-key ...")
            return 0

        print(f"📊 Marketplaces of user {self.user_id} (data version {self.store.data_version}):")
        for connection in connections:
            print(f"  • {connection.marketplace}: last sync {connection.last_sync_at or 'never'}")
            if args.verbose:
                print(f"      📋 {json.dumps(connection.to_public_dict())}")
            snapshot = self.store.get_snapshot(connection.marketplace)
            for data_type in DataType:
                state = self.store.status(connection.marketplace, data_type).value
                count = len(snapshot.records(data_type)) if snapshot else 0
                print(f"      {STATUS_EMOJI[state]} {data_type.value}: {state} ({count} records)")
        return 0

    async def cmd_check(self, args) -> int:
        """Test stored credentials against the marketplace API."""
        self._init_services()

        print(f"🔌 Testing {args.marketplace} API connection...")
        result = await self.gateway.test_connection(args.marketplace)
        if result["success"]:
            print(f"✅ {args.marketplace} API connection successful")
            if args.verbose:
                print(f"📋 Details: {json.dumps(result, indent=2, default=str)}")
            return 0
        print(f"❌ API connection failed: {result['error']}")
        return 1

    async def cmd_fetch(self, args) -> int:
        """Fetch records directly through the gateway without caching them."""
        self._init_services()

        options = FetchOptions(
            limit=args.limit,
            fetch_all=args.all,
            from_date=args.from_date,
            to_date=args.to_date,
            status=args.status,
        )
        result = await self.gateway.fetch(args.marketplace, args.data_type, options)

        if args.json:
            print(json.dumps([record.to_dict() for record in result.data], indent=2, ensure_ascii=False))
            return 0

        print(f"📦 {len(result.data)} {args.data_type} from {args.marketplace} "
              f"({result.pages} page(s), upstream total {result.total})")
        if result.truncated:
            print(f"⚠️  Partial result: {result.truncated_by}")
        for record in result.data:
            if args.data_type == DataType.PRODUCTS.value:
                print(f"   • {record.offer_id}: {record.name} | {record.price} | "
                      f"FBO {record.stock_fbo} / FBS {record.stock_fbs}")
            else:
                print(f"   • {record.id}: {record.status} | {record.total} | {record.created_at}")
        return 0

    async def cmd_refresh(self, args) -> int:
        """Refresh cached snapshots."""
        self._init_services()

        print("🔄 Refreshing marketplace data...")
        outcomes = await self.store.refetch_all(args.marketplaces or None, force=args.force)
        if not outcomes:
            print("📭 Nothing to refresh: no marketplaces connected")
            return 0

        failed = 0
        for (marketplace, data_type), outcome in outcomes.items():
            if outcome.partial:
                print(f"⚠️  {marketplace} {data_type.value}: {outcome.records} records, partial: {outcome.truncated_by}")
            elif outcome.ok:
                print(f"✅ {marketplace} {data_type.value}: {outcome.records} records")
            elif outcome.discarded:
                print(f"⏭️  {marketplace} {data_type.value}: superseded")
            else:
                failed += 1
                print(f"❌ {marketplace} {data_type.value}: {outcome.error}")

        print(f"📊 Data version {self.store.data_version}")
        return 1 if failed else 0

    async def cmd_stats(self, args) -> int:
        """Print analytics from the cached snapshot."""
        self._init_services()

        if args.refresh:
            targets = [args.marketplace] if args.marketplace else None
            await self.store.refetch_all(targets)

        analytics = AnalyticsService(
            self.store,
            low_stock_threshold=self.config.app.low_stock_threshold,
            window_days=args.days,
            top_n=args.top,
        )

        if not args.marketplace:
            summary = analytics.summary()
            if args.json:
                print(json.dumps(summary, indent=2, default=str))
                return 0
            print("📊 Summary across marketplaces:")
            print(json.dumps(summary["totals"], indent=2))
            for marketplace, stats in summary["marketplaces"].items():
                print(f"  • {marketplace}: revenue {stats['total_revenue']}, "
                      f"{stats['total_orders']} orders, {stats['total_products']} products")
            if summary["failed"]:
                print(f"⚠️  Refresh failed for: {', '.join(summary['failed'])}")
            return 0

        stats = analytics.stats_for(args.marketplace)
        daily = analytics.revenue_by_day_for(args.marketplace)
        top = analytics.top_products_for(args.marketplace)

        if args.json:
            print(json.dumps({
                "stats": stats.to_dict(),
                "revenue_by_day": [day.to_dict() for day in daily],
                "top_products": [product.to_dict() for product in top],
            }, indent=2, ensure_ascii=False))
            return 0

        print(f"📊 {args.marketplace} statistics:")
        print(json.dumps(stats.to_dict(), indent=2))
        print(f"📈 Revenue over the last {args.days} days:")
        for day in daily:
            print(f"   {day.date.isoformat()}: {day.revenue} ({day.orders} orders)")
        print("🏆 Top products:")
        for position, product in enumerate(top, 1):
            print(f"   {position}. {product.offer_id} {product.name}: {product.revenue} ({product.quantity} sold)")
        return 0


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="sellercloud",
        description="SellerCloud CLI - marketplace data aggregation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sellercloud config generate-key                 # Create an encryption key
  sellercloud connect uzum --api-key KEY --verify # Store Uzum credentials
  sellercloud refresh                             # Refresh all connected marketplaces
  sellercloud stats uzum                          # Analytics from the cached snapshot
  sellercloud fetch yandex orders --limit 10      # Fetch one page directly
        """
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set logging level (default: from configuration)"
    )
    parser.add_argument("--user", help="User id to operate on (default: SELLERCLOUD_DEFAULT_USER)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument(
        "config_action",
        choices=["validate", "show", "reload", "generate-key"],
        help="Configuration action to perform"
    )

    connect_parser = subparsers.add_parser("connect", help="Store marketplace credentials")
    connect_parser.add_argument("marketplace", choices=SUPPORTED_MARKETPLACES)
    connect_parser.add_argument("--api-key", required=True, help="API key / token")
    connect_parser.add_argument("--campaign-id", help="Yandex campaign id")
    connect_parser.add_argument("--business-id", help="Yandex business id")
    connect_parser.add_argument("--shop-id", help="Uzum shop id")
    connect_parser.add_argument("--client-id", help="Ozon client id")
    connect_parser.add_argument("--verify", action="store_true", help="Test credentials before storing")

    disconnect_parser = subparsers.add_parser("disconnect", help="Remove a marketplace connection")
    disconnect_parser.add_argument("marketplace", choices=SUPPORTED_MARKETPLACES)

    subparsers.add_parser("status", help="Show connections and cache state")

    check_parser = subparsers.add_parser("check", help="Test stored credentials")
    check_parser.add_argument("marketplace", choices=SUPPORTED_MARKETPLACES)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch records through the gateway")
    fetch_parser.add_argument("marketplace", choices=SUPPORTED_MARKETPLACES)
    fetch_parser.add_argument("data_type", choices=[data_type.value for data_type in DataType])
    fetch_parser.add_argument("--limit", type=int, default=50, help="Page size (default: 50)")
    fetch_parser.add_argument("--all", action="store_true", help="Follow pagination to the end")
    fetch_parser.add_argument("--from-date", type=_parse_date, help="Orders from date (YYYY-MM-DD)")
    fetch_parser.add_argument("--to-date", type=_parse_date, help="Orders to date (YYYY-MM-DD)")
    fetch_parser.add_argument("--status", help="Native order status filter")
    fetch_parser.add_argument("--json", action="store_true", help="Print records as JSON")

    refresh_parser = subparsers.add_parser("refresh", help="Refresh cached data")
    refresh_parser.add_argument("marketplaces", nargs="*",
                                help=f"Marketplaces to refresh: {', '.join(SUPPORTED_MARKETPLACES)} "
                                     "(default: all connected)")
    refresh_parser.add_argument("--force", action="store_true", help="Supersede running refreshes")

    stats_parser = subparsers.add_parser("stats", help="Analytics from cached data")
    stats_parser.add_argument("marketplace", nargs="?", choices=SUPPORTED_MARKETPLACES)
    stats_parser.add_argument("--days", type=int, default=7, help="Revenue window in days (default: 7)")
    stats_parser.add_argument("--top", type=int, default=5, help="Number of top products (default: 5)")
    stats_parser.add_argument("--refresh", action="store_true", help="Refresh before computing")
    stats_parser.add_argument("--json", action="store_true", help="Print as JSON")

    return parser


async def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    setup_logging()

    if not args.command:
        parser.print_help()
        return 1

    cli = SellerCloudCLI(args.user)
    handlers = {
        "config": cli.cmd_config,
        "connect": cli.cmd_connect,
        "disconnect": cli.cmd_disconnect,
        "status": cli.cmd_status,
        "check": cli.cmd_check,
        "fetch": cli.cmd_fetch,
        "refresh": cli.cmd_refresh,
        "stats": cli.cmd_stats,
    }

    try:
        return await handlers[args.command](args)
    except KeyboardInterrupt:
        print("\n⏹️  Operation cancelled by user")
        return 130
    except SellerCloudError as e:
        cli_logger.error(f"{args.command} failed: {e}")
        print(f"❌ {e}")
        return 1
    finally:
        await cli.close()


def cli_entry_point():
    """Entry point for console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    cli_entry_point()
