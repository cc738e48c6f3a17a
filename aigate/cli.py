"""
Command-line interface for aigate.

Provides commands for:
- Serving the HTTP API
- Inspecting exported cache and monitor snapshots
"""

import argparse
import json
import sys
from collections import Counter
from pathlib import Path


def cmd_serve(args):
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


def _unwrap(snapshot: dict) -> tuple:
    """Find the cache and monitor parts of an export, whatever its envelope."""
    if isinstance(snapshot.get("data"), dict):
        snapshot = snapshot["data"]
    if "entries" in snapshot:
        return snapshot, None
    if "traces" in snapshot:
        return None, snapshot
    return snapshot.get("cache"), snapshot.get("performance")


def summarize_cache(cache: dict) -> dict:
    entries = cache.get("entries", [])
    sizes = [len(json.dumps(e.get("value"), sort_keys=True, separators=(",", ":"))) for e in entries]
    operations = Counter(e.get("operation", "?") for e in entries)
    tags = Counter(t for e in entries for t in e.get("tags", []))
    return {
        "version": cache.get("version"),
        "exported_at": cache.get("exported_at"),
        "entries": len(entries),
        "bytes": sum(sizes),
        "largest_entry_bytes": max(sizes) if sizes else 0,
        "total_hits": sum(e.get("hit_count", 0) for e in entries),
        "operations": dict(operations.most_common()),
        "tags": dict(tags.most_common(10)),
    }


def summarize_monitor(performance: dict) -> dict:
    traces = performance.get("traces", [])
    alerts = performance.get("alerts", [])
    failures = sum(1 for t in traces if not t.get("success"))
    return {
        "exported_at": performance.get("exported_at"),
        "traces": len(traces),
        "failures": failures,
        "error_rate": failures / len(traces) * 100 if traces else 0.0,
        "operations": dict(Counter(t.get("operation", "?") for t in traces).most_common()),
        "alerts": len(alerts),
        "active_alerts": sum(1 for a in alerts if a.get("resolved_at") is None),
    }


def cmd_inspect(args):
    """Summarise an exported snapshot."""
    path = Path(args.file)
    try:
        snapshot = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        sys.exit(1)
    if not isinstance(snapshot, dict):
        print(f"Error: {path} is not a JSON object", file=sys.stderr)
        sys.exit(1)

    cache, performance = _unwrap(snapshot)
    if cache is None and performance is None:
        print(f"Error: {path} is neither a cache nor a monitor export", file=sys.stderr)
        sys.exit(1)

    report = {}
    if cache is not None:
        report["cache"] = summarize_cache(cache)
    if performance is not None:
        report["performance"] = summarize_monitor(performance)

    if args.json:
        print(json.dumps(report, indent=2))
        return

    print("\n" + "=" * 60)
    print(f"AIGATE SNAPSHOT: {path.name}")
    print("=" * 60)
    if "cache" in report:
        c = report["cache"]
        print(f"\nCache entries: {c['entries']} ({c['bytes']:,} bytes, largest {c['largest_entry_bytes']:,})")
        print(f"Total hits: {c['total_hits']}")
        for op, count in c["operations"].items():
            print(f"  {op}: {count}")
    if "performance" in report:
        p = report["performance"]
        print(f"\nTraces: {p['traces']} ({p['failures']} failed, {p['error_rate']:.1f}% error rate)")
        print(f"Alerts: {p['alerts']} ({p['active_alerts']} active)")
        for op, count in p["operations"].items():
            print(f"  {op}: {count}")
    print("=" * 60)


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="aigate: AI request cache and control CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the API on port 8000
  aigate serve --port 8000

  # Summarise a cache export
  aigate inspect cache-export.json
""",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Port")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    serve_parser.add_argument("--log-level", default="INFO", help="Log level")

    inspect_parser = subparsers.add_parser("inspect", help="Summarise an exported snapshot")
    inspect_parser.add_argument("file", help="Path to a cache or monitor export (JSON)")
    inspect_parser.add_argument("--json", action="store_true", help="Print the summary as JSON")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {
        "serve": cmd_serve,
        "inspect": cmd_inspect,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
