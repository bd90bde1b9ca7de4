"""
Command-line interface for the pool event indexer.
"""

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any, Dict, List


def main():
    """Parse arguments and dispatch to a command handler; returns the exit code."""
    parser = argparse.ArgumentParser(
        description="Pool Event Indexer CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pool-indexer init --force                 # Write default config and create tables
  pool-indexer validate --check-db          # Validate configuration and database
  pool-indexer db-setup --drop-existing     # Recreate database schema
  pool-indexer serve --auto-run             # Serve admin API with auto-run for all pools
  pool-indexer trigger pools 3              # Run one indexing pass for pool 3
  pool-indexer status pools --format json   # Show checkpoint status for all pools
  pool-indexer reset pools 3 --force        # Delete indexed data for pool 3
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version="pool-event-indexer 0.1.0"
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="YAML or JSON settings file (default: %(default)s)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging and full tracebacks"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_init_command(subparsers)
    _add_validate_command(subparsers)
    _add_db_setup_command(subparsers)
    _add_serve_command(subparsers)
    _add_trigger_command(subparsers)
    _add_status_command(subparsers)
    _add_reset_command(subparsers)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"No handler for command {args.command!r}")
        return 1

    try:
        result = handler(args)
        # Async handlers get a fresh event loop per invocation
        return asyncio.run(result) if asyncio.iscoroutine(result) else result
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except Exception as e:
        if args.verbose:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {e}")
        return 1


def _add_init_command(subparsers):
    """init: write a default config file."""
    init_parser = subparsers.add_parser(
        "init",
        help="Create a config file and the database tables",
        description="Write a default configuration file and create the database schema"
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Replace a config file that already exists"
    )
    init_parser.add_argument(
        "--db-url",
        type=str,
        help="SQLAlchemy URL to use instead of database.url"
    )
    init_parser.add_argument(
        "--skip-db",
        action="store_true",
        help="Only write the config file"
    )


def _add_validate_command(subparsers):
    """validate: check the config file."""
    validate_parser = subparsers.add_parser(
        "validate",
        help="Check a config file for errors",
        description="Validate configuration file and system setup"
    )
    validate_parser.add_argument(
        "--check-db",
        action="store_true",
        help="Connect to the database and count rows per table"
    )
    validate_parser.add_argument(
        "--check-rpc",
        action="store_true",
        help="Also fetch the chain head from the RPC endpoint"
    )


def _add_db_setup_command(subparsers):
    """db-setup: create (or recreate) tables."""
    db_parser = subparsers.add_parser(
        "db-setup",
        help="Create the indexer tables",
        description="Set up checkpoint, event and staker tables"
    )
    db_parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop the indexer tables first (deletes all indexed data)"
    )


def _add_serve_command(subparsers):
    """serve: run the admin API."""
    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve the admin API",
        description="Run the admin HTTP API and the auto-run scheduler"
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        help="Bind address (overrides config file)"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        help="Port (overrides config file)"
    )
    serve_parser.add_argument(
        "--auto-run",
        action="store_true",
        help="Start auto-run for every configured pool on startup"
    )
    serve_parser.add_argument(
        "--domain",
        type=str,
        help="Restrict --auto-run to one domain"
    )
    serve_parser.add_argument(
        "--mock-provider",
        action="store_true",
        help="Use an empty scripted provider instead of the RPC endpoint"
    )


def _add_trigger_command(subparsers):
    """trigger: one synchronous run."""
    trigger_parser = subparsers.add_parser(
        "trigger",
        help="Run one indexing pass",
        description="Index one pool up to the chain head (or the block budget) and exit"
    )
    trigger_parser.add_argument("domain", type=str, help="Event domain, e.g. pools")
    trigger_parser.add_argument("pid", type=int, help="Pool id")
    trigger_parser.add_argument(
        "--max-blocks",
        type=int,
        help="Block budget for this run (overrides config file)"
    )
    trigger_parser.add_argument(
        "--mock-provider",
        action="store_true",
        help="Use an empty scripted provider instead of the RPC endpoint"
    )


def _add_status_command(subparsers):
    """status: print checkpoints."""
    status_parser = subparsers.add_parser(
        "status",
        help="Show indexer status",
        description="Show checkpoint progress for the pools of a domain"
    )
    status_parser.add_argument("domain", type=str, help="Event domain, e.g. pools")
    status_parser.add_argument(
        "--pid",
        type=int,
        help="Only show one pool"
    )
    status_parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)"
    )


def _add_reset_command(subparsers):
    """reset: wipe one pool."""
    reset_parser = subparsers.add_parser(
        "reset",
        help="Reset a pool indexer",
        description="Delete the checkpoint, indexed events and staker positions of a pool"
    )
    reset_parser.add_argument("domain", type=str, help="Event domain, e.g. pools")
    reset_parser.add_argument("pid", type=int, help="Pool id")
    reset_parser.add_argument(
        "--force",
        action="store_true",
        help="Do not ask for confirmation"
    )


def _load_config(args):
    from pool_event_indexer.config.manager import ConfigManager

    manager = ConfigManager(args.config)
    return manager.load_config()


async def _open_registry(config, use_mock: bool = False):
    """Initialize store, provider and registry for one command."""
    from pool_event_indexer.clients.chain_client import create_chain_provider
    from pool_event_indexer.database.sqlalchemy_manager import SQLAlchemyIndexerStore
    from pool_event_indexer.indexing.registry import IndexerRegistry

    store = SQLAlchemyIndexerStore(config.database)
    await store.initialize()
    provider = create_chain_provider(config.provider, config.error_handling, use_mock=use_mock)
    return IndexerRegistry(config, store, provider)


def init_command(args):
    """Write the default configuration, then create tables unless --skip-db."""
    config_path = Path(args.config)

    if config_path.exists() and not args.force:
        print(f"{config_path} already exists (pass --force to replace it)")
        return 1

    try:
        from pool_event_indexer.config.manager import ConfigManager

        if config_path.exists():
            config_path.unlink()

        print(f"Writing default configuration to {config_path}")

        manager = ConfigManager(str(config_path))
        config = manager.load_config()

        if args.db_url:
            config.database.url = args.db_url

        print(f"✓ Wrote {config_path}")
        print(f"  database: {config.database.url}")
        print(f"  rpc:      {config.provider.rpc_url}")
        print(f"  Domains: {', '.join(sorted(config.domains))}")

        if not args.skip_db:
            print("\nCreating tables...")
            return asyncio.run(_init_database(config))

        return 0

    except Exception as e:
        print(f"Could not write configuration: {e}")
        return 1


async def _init_database(config):
    """Create the tables for a freshly written configuration."""
    try:
        from pool_event_indexer.database.sqlalchemy_manager import SQLAlchemyIndexerStore

        store = SQLAlchemyIndexerStore(config.database)
        await store.initialize()
        await store.close()

        print("✓ Tables created")
        return 0

    except Exception as e:
        print(f"Could not create tables: {e}")
        return 1


def validate_command(args):
    """Validate the settings file and print a summary of what it configures."""
    config_path = Path(args.config)

    if not config_path.exists():
        print(f"No configuration at {config_path}; run init first")
        return 1

    try:
        from pool_event_indexer.config.manager import ConfigManager

        print(f"Checking {config_path}")

        manager = ConfigManager(str(config_path))
        is_valid, errors = manager.validate_config_file()

        if not is_valid:
            print(f"✗ {len(errors)} problem(s) found:")
            for error in errors:
                print(f"  - {error}")
            return 1

        print("✓ Configuration is valid")
        config = manager.load_config()

        print()
        print(f"  Database:          {config.database.url}")
        print(f"  RPC:               {config.provider.rpc_url}")
        print(f"  Workers per pool:  {config.indexer.workers_per_pool}")
        print(f"  Blocks per batch:  {config.indexer.blocks_per_batch:,}")
        print(f"  Auto-run interval: {config.indexer.auto_run_interval_ms / 1000:.0f}s")
        for name, domain in sorted(config.domains.items()):
            print(f"  Domain {name}: {len(domain.pool_ids)} pools, "
                  f"{config.workers_for(name)} workers each, genesis {domain.genesis_block}")

        if args.check_db or args.check_rpc:
            return asyncio.run(_additional_validation(config, args.check_db, args.check_rpc))

        return 0

    except Exception as e:
        print(f"Validation aborted: {e}")
        return 1


async def _additional_validation(config, check_db: bool, check_rpc: bool):
    """Check database and RPC connectivity."""
    from pool_event_indexer.clients.chain_client import create_chain_provider
    from pool_event_indexer.database.connection import DatabaseConnection
    from pool_event_indexer.exceptions import IndexerError

    failed = False

    if check_db:
        connection = DatabaseConnection(config.database)
        connection.initialize()
        if connection.health_check():
            print("✓ Database connection OK")
            for table, rows in connection.table_counts().items():
                print(f"  {table}: {rows:,} rows")
        else:
            print("✗ Database connection failed")
            failed = True
        connection.close()

    if check_rpc:
        provider = create_chain_provider(config.provider, config.error_handling)
        try:
            head = await provider.get_block_number()
            print(f"✓ RPC reachable, chain head at block {head:,}")
        except IndexerError as e:
            print(f"✗ RPC check failed: {e}")
            failed = True
        finally:
            await provider.close()

    return 1 if failed else 0


async def db_setup_command(args):
    """Create the indexer tables, optionally dropping them first."""
    try:
        from pool_event_indexer.database.connection import DatabaseConnection

        config = _load_config(args)

        print(f"Schema target: {config.database.url}")

        connection = DatabaseConnection(config.database)
        connection.initialize()

        if args.drop_existing:
            print("Dropping indexer tables...")
            connection.drop_tables()

        connection.create_tables()
        connection.close()

        print("✓ Database setup completed successfully")
        return 0

    except Exception as e:
        print(f"Database setup failed: {e}")
        return 1


async def serve_command(args):
    """Serve the admin API until interrupted."""
    from pool_event_indexer.api.admin_routes import run_admin_server
    from pool_event_indexer.config.manager import ConfigManager
    from pool_event_indexer.utils.structured_logging import setup_logging

    manager = ConfigManager(args.config)
    config = manager.load_config()
    setup_logging(config.logging)

    registry = await _open_registry(config, use_mock=args.mock_provider)
    loop = asyncio.get_running_loop()

    def on_config_change(settings):
        # Called from the watchdog thread
        loop.call_soon_threadsafe(setup_logging, settings.logging)
        loop.call_soon_threadsafe(registry.apply_settings, settings)

    manager.add_change_callback(on_config_change)
    manager.start_hot_reload()

    host = args.host or config.api.host
    port = args.port or config.api.port

    runner = await run_admin_server(registry, host, port, config.api.base_path)
    print(f"✓ Admin API listening on http://{host}:{port}{config.api.base_path}")

    if args.auto_run:
        started = await registry.start_all_auto_runs(args.domain)
        print(f"✓ Auto-run started for {len(started)} pools")

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await stop_event.wait()
    finally:
        print("\nShutting down...")
        manager.stop_hot_reload()
        await runner.cleanup()
        await registry.store.close()

    return 0


async def trigger_command(args):
    """Run one indexing pass and print the result."""
    config = _load_config(args)
    registry = await _open_registry(config, use_mock=args.mock_provider)

    try:
        coordinator = await registry.get(args.domain, args.pid)
        print(f"Indexing {coordinator.indexer_name} from block {coordinator.checkpoint.last_indexed_block:,}...")
        result = await coordinator.run_once(args.max_blocks)
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.status.value != "error" else 1
    finally:
        await registry.shutdown()
        await registry.store.close()


async def status_command(args):
    """Show checkpoint status."""
    config = _load_config(args)
    registry = await _open_registry(config, use_mock=True)

    try:
        if args.pid is not None:
            statuses = [(await registry.get(args.domain, args.pid)).status()]
        else:
            statuses = await registry.statuses(args.domain)

        rows = [status.to_dict() for status in statuses]
        if args.format == "json":
            print(json.dumps(rows, indent=2))
        else:
            _print_status_table(rows)
        return 0
    finally:
        await registry.shutdown()
        await registry.store.close()


def _print_status_table(rows: List[Dict[str, Any]]):
    print(f"{'Indexer':<28} {'Status':<10} {'Last block':>14} {'Target':>14} {'Done':>8} {'Events':>10}")
    print("-" * 89)
    for row in rows:
        target = f"{row['targetBlock']:,}" if row['targetBlock'] is not None else "-"
        print(
            f"{row['indexerName']:<28} {row['status']:<10} {row['lastIndexedBlock']:>14,} "
            f"{target:>14} {row['percentComplete']:>7.1f}% {row['totalEventsIndexed']:>10,}"
        )
        if row['lastError']:
            print(f"  last error: {row['lastError']}")


async def reset_command(args):
    """Reset one pool."""
    if not args.force:
        answer = input(f"Delete all indexed data for {args.domain}/{args.pid}? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 1

    config = _load_config(args)
    registry = await _open_registry(config, use_mock=True)

    try:
        coordinator = await registry.get(args.domain, args.pid)
        deleted = await coordinator.reset()
        print(f"✓ Reset {coordinator.indexer_name}: deleted {deleted} rows")
        return 0
    finally:
        await registry.shutdown()
        await registry.store.close()


COMMANDS = {
    "init": init_command,
    "validate": validate_command,
    "db-setup": db_setup_command,
    "serve": serve_command,
    "trigger": trigger_command,
    "status": status_command,
    "reset": reset_command,
}


if __name__ == "__main__":
    raise SystemExit(main())
