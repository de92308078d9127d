"""
Main entry point for the Skymmich service.
"""

import asyncio
import sys
import argparse
from typing import Optional
from aiohttp import web
from .config import ConfigService, settings
from .immich_client import ImmichAPIError
from .immich_sync import SyncConfigurationError
from .logging import setup_logging, get_logger
from .server import SERVER_KEY, build_storage, create_app


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Skymmich - astrophotography catalog and plate solving for Immich"
    )

    parser.add_argument(
        "--mode",
        choices=["serve", "worker", "sync", "sidecars"],
        default="serve",
        help="Run mode (default: serve)"
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Override the HTTP port from configuration"
    )

    parser.add_argument(
        "--no-worker",
        action="store_true",
        help="Serve the API without the background plate-solving worker"
    )

    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Test the configured Immich connection and exit"
    )

    parser.add_argument(
        "--show-jobs",
        action="store_true",
        help="Show plate-solving jobs and exit"
    )

    return parser.parse_args(argv)


async def test_connection(app: web.Application) -> bool:
    logger = get_logger("main")
    server = app[SERVER_KEY]
    config = server.config_service.get_immich_config()
    if not config.host or not config.api_key:
        logger.error("❌ Immich host and API key are not configured")
        return False
    async with server.immich_sync.client() as immich:
        success, message = await immich.test_connection()
    (logger.info if success else logger.error)(f"{'✅' if success else '❌'} {message}")
    return success


def show_jobs(app: web.Application) -> None:
    logger = get_logger("main")
    jobs = app[SERVER_KEY].storage.get_plate_solving_jobs()
    logger.info(f"📊 {len(jobs)} plate-solving jobs")
    for job in jobs[:20]:
        logger.info(
            f"   #{job.id} image {job.image_id}: {job.status} "
            f"(submission {job.astrometry_submission_id}, attempts {job.attempts})"
        )
    if len(jobs) > 20:
        logger.info(f"   ... and {len(jobs) - 20} more")


async def run_worker(app: web.Application) -> None:
    """Run only the plate-solving worker until interrupted."""
    worker = app[SERVER_KEY].worker
    try:
        await worker.run()
    finally:
        await worker.stop()


async def run_sync(app: web.Application) -> bool:
    logger = get_logger("main")
    try:
        result = await app[SERVER_KEY].immich_sync.run_sync()
    except (SyncConfigurationError, ImmichAPIError) as e:
        logger.error(f"❌ Sync failed: {e}")
        return False
    logger.info(f"✅ {result.message}")
    return True


def regenerate_sidecars(app: web.Application) -> None:
    logger = get_logger("main")
    outcome = app[SERVER_KEY].sidecar_writer.regenerate_all()
    logger.info(
        f"📝 Sidecars written: {outcome['written']}, skipped: {outcome['skipped']}, failed: {outcome['failed']}"
    )


def main(argv=None):
    """Main entry point."""
    setup_logging()
    logger = get_logger("main")

    args = parse_arguments(argv)
    port = args.port or settings.port

    storage = build_storage()
    config_service = ConfigService(storage)

    try:
        if args.test_connection:
            logger.info("🔍 Testing connection to Immich")
            app = create_app(storage, config_service)
            return 0 if asyncio.run(test_connection(app)) else 1

        if args.show_jobs:
            show_jobs(create_app(storage, config_service))
            return 0

        logger.info(f"🚀 Starting Skymmich in {args.mode} mode")

        if args.mode == "serve":
            app = create_app(
                storage,
                config_service,
                run_background=True,
                run_worker=settings.enable_plate_solving and not args.no_worker,
            )
            logger.info(f"🌐 Listening on http://{settings.host}:{port}")
            web.run_app(app, host=settings.host, port=port, print=None)
        elif args.mode == "worker":
            asyncio.run(run_worker(create_app(storage, config_service)))
        elif args.mode == "sync":
            if not asyncio.run(run_sync(create_app(storage, config_service))):
                return 1
        elif args.mode == "sidecars":
            regenerate_sidecars(create_app(storage, config_service))

        logger.info("✅ Service completed successfully")
        return 0

    except KeyboardInterrupt:
        logger.info("⏹️  Service interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"❌ Unexpected error: {str(e)}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
