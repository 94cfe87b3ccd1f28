"""CLI entrypoint and programmatic interface for the orchestrator."""

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

import asyncpg

from scan_orchestrator.config import OrchestratorConfig
from scan_orchestrator.registry import HandlerRegistry, handler_registry
from scan_orchestrator.runtime import Orchestrator, init_schema


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: OrchestratorConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


def load_handlers(handlers_module: Optional[str], logger: logging.Logger) -> None:
    """Import the module whose import registers the job handlers."""
    if not handlers_module:
        logger.warning("No handlers module configured, no worker pools will run")
        return
    importlib.import_module(handlers_module)
    logger.info(f"Loaded handlers from {handlers_module}")


def load_entities(path: str) -> Dict[str, dict]:
    """
    Read entity definitions from a JSON file.

    Format: ``{"library-1": {"scan_paths": ["/media"], "parent_id": null}}``
    """
    with open(path, "r", encoding="utf-8") as fh:
        entities = json.load(fh)
    if not isinstance(entities, dict):
        raise ValueError(f"Entity file {path} must contain a JSON object")
    return entities


async def run_orchestrator(
    config: Optional[OrchestratorConfig] = None,
    db_pool=None,
    registry: Optional[HandlerRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    entities: Optional[Dict[str, dict]] = None,
    scan_on_start: Optional[List[str]] = None,
    init_db: bool = False,
):
    """
    Run the orchestrator programmatically.

    Args:
        config: OrchestratorConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        registry: HandlerRegistry instance. If None, will use global handler_registry.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        entities: Entity definitions to register, keyed by entity id.
        scan_on_start: Entity ids to start a scan for once running.
        init_db: Create the tables before starting.

    Example:
        ```python
        from scan_orchestrator import OrchestratorConfig, handler_registry, run_orchestrator
        import asyncio

        config = OrchestratorConfig.from_env()
        asyncio.run(run_orchestrator(
            config=config,
            registry=handler_registry,
            entities={"library-1": {"scan_paths": ["/media/movies"]}},
            scan_on_start=["library-1"],
        ))
        ```
    """
    if config is None:
        config = OrchestratorConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if registry is None:
        registry = handler_registry

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        if init_db:
            await init_schema(db_pool)
            logger.info("Database schema initialized")

        orchestrator = Orchestrator(config, db_pool, registry=registry, logger=logger)
        for entity_id, definition in (entities or {}).items():
            orchestrator.register_entity(
                entity_id,
                scan_paths=definition.get("scan_paths"),
                parent_id=definition.get("parent_id"),
                scan_priority=definition.get("scan_priority"),
            )

        await orchestrator.start()
        try:
            for entity_id in scan_on_start or []:
                status = await orchestrator.start_scan(entity_id)
                logger.info(f"Started scan of {entity_id}: {status.scan_state.value}")
            await shutdown_event.wait()
        finally:
            await orchestrator.stop()
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for the orchestrator."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Scan Orchestrator")
    parser.add_argument(
        "--handlers-module",
        help="Module that registers job handlers (default: SCAN_ORCHESTRATOR_HANDLERS_MODULE)",
    )
    parser.add_argument(
        "--entities",
        help="JSON file with entity definitions to register",
    )
    parser.add_argument(
        "--scan",
        action="append",
        default=[],
        metavar="ENTITY_ID",
        help="Start a scan of this entity once running (repeatable)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the job tables before starting",
    )

    args = parser.parse_args()

    try:
        config = OrchestratorConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    try:
        load_handlers(args.handlers_module or config.handlers_module, logger)
        entities = load_entities(args.entities) if args.entities else {}
    except (ImportError, OSError, ValueError) as e:
        logger.error(f"Failed to load startup files: {e}")
        sys.exit(1)

    async def run():
        """Async main function."""
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

        try:
            await run_orchestrator(
                config=config,
                registry=handler_registry,
                logger=logger,
                shutdown_event=shutdown_event,
                entities=entities,
                scan_on_start=args.scan,
                init_db=args.init_schema,
            )
        except Exception as e:
            logger.error(f"Fatal error in orchestrator: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
