"""edgecache CLI - serve a generation, run a one-off reconcile, or inspect the store."""

import argparse
import json
import os
import sys
from pathlib import Path
from urllib.parse import urlsplit

DEFAULT_SCOPE = "http://127.0.0.1:8001/"
DEFAULT_DB = str(Path.home() / ".cache" / "edgecache" / "edgecache.db")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="edgecache",
        description="edgecache - offline asset cache for an edge process",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Install and activate a generation, then serve it")
    _add_manifest_args(serve_parser)
    serve_parser.add_argument("--port", type=int, default=8001, help="Port (default: 8001)")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    serve_parser.add_argument(
        "--upstream",
        default=os.environ.get("EDGECACHE_UPSTREAM"),
        help="Origin hosting the assets (default: $EDGECACHE_UPSTREAM; required when --scope is this server's own address)",
    )
    serve_parser.add_argument("--skip-waiting", action="store_true", help="Activate even if a prior generation is in control")
    serve_parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    serve_parser.add_argument("--quiet", action="store_true", help="Only show WARNING and above")

    reconcile_parser = subparsers.add_parser("reconcile", help="Evict namespaces and assets outside the manifest")
    _add_manifest_args(reconcile_parser)

    status_parser = subparsers.add_parser("status", help="Show namespaces and entry counts")
    status_parser.add_argument("--db", default=os.environ.get("EDGECACHE_DB", DEFAULT_DB), help="Tier store path")
    status_parser.add_argument("--json", action="store_true", dest="json_output", help="Output as JSON")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _dispatch(args)


def _add_manifest_args(parser):
    parser.add_argument(
        "--manifest",
        default=os.environ.get("EDGECACHE_MANIFEST"),
        help="Manifest JSON written by the build (default: $EDGECACHE_MANIFEST)",
    )
    parser.add_argument(
        "--scope",
        default=os.environ.get("EDGECACHE_SCOPE", DEFAULT_SCOPE),
        help=f"Base URL served (default: $EDGECACHE_SCOPE or {DEFAULT_SCOPE})",
    )
    parser.add_argument("--db", default=os.environ.get("EDGECACHE_DB", DEFAULT_DB), help="Tier store path")


def _dispatch(args):
    """Route CLI commands to their implementations."""
    if args.command == "serve":
        log_level = "DEBUG" if args.verbose else ("WARNING" if args.quiet else "INFO")
        _serve(args, log_level)
    elif args.command == "reconcile":
        _reconcile(args)
    elif args.command == "status":
        _status(args)


def _load_manifest_or_exit(args):
    from edgecache.hub.manifest import load_manifest

    if not args.manifest:
        print("Error: --manifest or EDGECACHE_MANIFEST is required", file=sys.stderr)
        sys.exit(1)
    try:
        return load_manifest(args.manifest)
    except (OSError, ValueError) as e:
        print(f"Error: cannot load manifest {args.manifest}: {e}", file=sys.stderr)
        sys.exit(1)


_LOCAL_HOSTS = frozenset({"127.0.0.1", "localhost", "::1", "0.0.0.0", "::"})


def _scope_is_self(scope: str, host: str, port: int) -> bool:
    """True when the scope origin is this process's own listen address."""
    parts = urlsplit(scope)
    scope_port = parts.port or (443 if parts.scheme == "https" else 80)
    if scope_port != port or not parts.hostname:
        return False
    scope_host = parts.hostname.lower()
    return scope_host == host.lower() or (scope_host in _LOCAL_HOSTS and host.lower() in _LOCAL_HOSTS)


def _serve(args, log_level: str = "INFO"):
    """Start the edge process for one generation."""
    import asyncio
    import logging

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("edgecache.serve")

    import uvicorn

    from edgecache.hub.api import ADMIN_PREFIX, create_api
    from edgecache.hub.core import EdgeHub
    from edgecache.hub.errors import InstallationFailure

    manifest = _load_manifest_or_exit(args)
    scope = args.scope if args.scope.endswith("/") else args.scope + "/"
    if not args.upstream and _scope_is_self(scope, args.host, args.port):
        print(
            f"Error: scope {scope} is this server's own address; pass --upstream with the origin hosting the assets",
            file=sys.stderr,
        )
        sys.exit(1)

    async def start() -> int:
        logger.info("=" * 70)
        logger.info(f"edgecache {manifest.version} (generation {manifest.generation})")
        logger.info("=" * 70)
        logger.info(f"Store: {args.db}")
        logger.info(f"Scope: {scope}")
        logger.info(f"Upstream: {args.upstream or '(scope origin)'}")
        logger.info(f"WebSocket: ws://{args.host}:{args.port}{ADMIN_PREFIX}/ws")
        logger.info("=" * 70)

        hub = EdgeHub(args.db, manifest, scope, upstream=args.upstream)
        await hub.initialize()

        try:
            await hub.start(skip_waiting=args.skip_waiting)
        except InstallationFailure:
            await hub.shutdown()
            return 1

        app = create_api(hub)
        config = uvicorn.Config(
            app,
            host=args.host,
            port=args.port,
            log_level=log_level.lower(),
            access_log=(log_level != "WARNING"),
        )
        server = uvicorn.Server(config)

        try:
            await server.serve()
        finally:
            await hub.shutdown()
        return 0

    sys.exit(asyncio.run(start()))


def _reconcile(args):
    """Run the generation sweep without serving."""
    import asyncio

    from edgecache.hub.cache import TierStore
    from edgecache.hub.reconciler import reconcile

    manifest = _load_manifest_or_exit(args)
    scope = args.scope if args.scope.endswith("/") else args.scope + "/"

    async def run():
        store = TierStore(args.db)
        await store.initialize()
        try:
            return await reconcile(store, manifest, scope)
        finally:
            await store.close()

    summary = asyncio.run(run())
    print(f"Deleted {len(summary['namespaces_deleted'])} namespace(s), {len(summary['keys_deleted'])} hashed asset(s)")
    for name in summary["namespaces_deleted"]:
        print(f"  namespace  {name}")
    for url in summary["keys_deleted"]:
        print(f"  asset      {url}")


def _status(args):
    """Print namespaces and entry counts."""
    import asyncio

    from edgecache.hub.cache import TierStore
    from edgecache.hub.constants import META_ACTIVE_GENERATION

    if not Path(args.db).exists():
        print(f"No tier store at {args.db}", file=sys.stderr)
        sys.exit(1)

    async def run():
        store = TierStore(args.db)
        await store.initialize()
        try:
            return await store.count_keys(), await store.get_meta(META_ACTIVE_GENERATION)
        finally:
            await store.close()

    counts, generation = asyncio.run(run())

    if args.json_output:
        print(json.dumps({"active_generation": generation, "namespaces": counts}, indent=2))
        return

    print(f"Active generation: {generation or '(none)'}")
    for name, count in counts.items():
        print(f"  {name:<40} {count:>6} entries")


if __name__ == "__main__":
    main()
