#!/usr/bin/env python3

"""
Binge List

Track the movies and TV shows you are watching, plan to watch, or finished.

The list lives in a local JSON store (``binge_list_store.json`` next to the
script, or under /config when containerized). The web backend and this command
line share that file; a running backend picks up changes made here.

Requirements
------------
- Python 3.10+
- Packages: fastapi, uvicorn, requests, pydantic, stripe, supabase
"""

import argparse
import json
import sys
from typing import Any, Dict, List, Optional, Sequence

from _base import BingeListError
from _config import configure_logging, load_config
from _logging import log
from _statistics import insights
from _store import open_store
from _watchlist import STATUSES, Watchlist, WatchlistEntry

__VERSION__ = "1.0.0"

ANSI_G = "\033[92m"
ANSI_R = "\033[91m"
ANSI_DIM = "\033[90m"
ANSI_X = "\033[0m"

STATUS_MARK = {"watching": "▶", "plan-to-watch": "•", "finished": "✓"}


# --------------------------- CLI / Main --------------------------------------
def build_parser(include_examples: bool = False) -> argparse.ArgumentParser:
    epilog_examples = """Examples

  Start the web backend:
    ./binge_list.py serve --bind 0.0.0.0:8787

  Add a show you are watching:
    ./binge_list.py add "Severance" --type tv --status watching --genre Drama --genre Sci-Fi

  Mark it finished and rate it:
    ./binge_list.py status 1718000000000 finished
    ./binge_list.py rate 1718000000000 9

  Show your numbers as JSON:
    ./binge_list.py stats --json
"""
    epilog = epilog_examples if include_examples else None

    ap = argparse.ArgumentParser(
        prog="binge_list.py",
        description="Personal movie & TV watchlist.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog=epilog,
    )
    ap.add_argument("--config", help="Path of config.json (default next to the script, or /config in Docker)")
    ap.add_argument("--store", help="Path of the JSON store (default from config.json)")
    ap.add_argument("--debug", action="store_true", help="Enable verbose logging")
    ap.add_argument("--version", action="store_true", help="Print version info and exit")
    sub = ap.add_subparsers(dest="cmd")

    sp = sub.add_parser("serve", help="Run the web backend")
    sp.add_argument("--bind", default="0.0.0.0:8787", help="Bind host:port (default 0.0.0.0:8787)")

    sp = sub.add_parser("list", help="Show the watchlist")
    sp.add_argument("-q", "--query", default="", help="Filter by title or genre")
    sp.add_argument("--type", choices=["all", "movie", "tv"], default="all")
    sp.add_argument("--status", choices=list(STATUSES))
    sp.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    sp = sub.add_parser("add", help="Add a title")
    sp.add_argument("title")
    sp.add_argument("--type", choices=["movie", "tv"], default="movie")
    sp.add_argument("--status", choices=list(STATUSES), default="plan-to-watch")
    sp.add_argument("--genre", action="append", default=[], help="Genre label (repeatable)")
    sp.add_argument("--year", type=int)
    sp.add_argument("--rating", type=int)
    sp.add_argument("--notes")
    sp.add_argument("--premium", action="store_true", help="Skip the free plan limit for this add")

    sp = sub.add_parser("status", help="Change the status of an entry")
    sp.add_argument("id")
    sp.add_argument("status", choices=list(STATUSES))

    sp = sub.add_parser("rate", help="Rate an entry 1-10 (0 clears the rating)")
    sp.add_argument("id")
    sp.add_argument("rating", type=int)

    sp = sub.add_parser("remove", help="Remove an entry")
    sp.add_argument("id")

    sp = sub.add_parser("stats", help="Totals, average rating, streaks")
    sp.add_argument("--json", action="store_true", help="Print JSON")
    return ap


def _row(e: WatchlistEntry) -> str:
    mark = STATUS_MARK.get(e.status, "?")
    year = f" ({e.year})" if e.year else ""
    rating = f" ★{e.rating}" if e.rating else ""
    genres = f" {ANSI_DIM}[{', '.join(e.genres)}]{ANSI_X}" if e.genres else ""
    return f"{mark} {e.id:<14} {e.type:<5} {e.title}{year}{rating}{genres}"


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _cmd_list(wl: Watchlist, args: argparse.Namespace) -> int:
    items = wl.filter(args.query, args.type)
    if args.status:
        items = [e for e in items if e.status == args.status]
    if args.json:
        _print_json([e.model_dump(mode="json", by_alias=True) for e in items])
        return 0
    if not items:
        print("[i] Nothing here yet.")
        return 0
    groups: Dict[str, List[WatchlistEntry]] = wl.by_status(items)
    for status in STATUSES:
        if groups[status]:
            print(f"{status} ({len(groups[status])})")
            for e in groups[status]:
                print("  " + _row(e))
    return 0


def _cmd_stats(wl: Watchlist, args: argparse.Namespace) -> int:
    data = insights(wl.items())
    if args.json:
        _print_json(data)
        return 0
    print(f"[i] Watched: {data['totalWatched']}  Watching: {data['totalWatching']}  Planned: {data['totalPlanned']}")
    print(f"[i] This month: {data['watchedThisMonth']}  Average rating: {data['averageRating']}")
    print(f"[i] Favourite genre: {data['favoriteGenre']}")
    print(f"[i] Streak: current {data['currentStreak']}, longest {data['longestStreak']}")
    remaining = wl.remaining()
    if remaining is not None:
        print(f"[i] Free plan: {remaining} slot(s) left")
    return 0


def run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    configure_logging(cfg, log, debug=args.debug)

    if args.cmd == "serve":
        import webapp
        host, _, port = args.bind.rpartition(":")
        webapp.main(host=host or "0.0.0.0", port=int(port or 8787))
        return 0

    st = cfg.get("storage") or {}
    store = open_store(
        args.store or st.get("path"),
        quota_bytes=int(st.get("quota_bytes") or 5 * 1024 * 1024),
        poll_interval=0,
    )
    try:
        wl = Watchlist(
            store,
            free_limit=int((cfg.get("billing") or {}).get("free_limit") or 10),
            is_premium=(lambda: True) if getattr(args, "premium", False) else None,
        )
        if args.cmd == "list":
            return _cmd_list(wl, args)
        if args.cmd == "stats":
            return _cmd_stats(wl, args)
        if args.cmd == "add":
            e = wl.add({
                "title": args.title,
                "type": args.type,
                "status": args.status,
                "genres": args.genre,
                "year": args.year,
                "rating": args.rating,
                "notes": args.notes,
            })
            print(f"{ANSI_G}[✓]{ANSI_X} Added '{e.title}' as {e.id}")
        elif args.cmd == "status":
            e = wl.set_status(args.id, args.status)
            print(f"{ANSI_G}[✓]{ANSI_X} '{e.title}' is now {e.status}")
        elif args.cmd == "rate":
            e = wl.rate(args.id, args.rating or None)
            print(f"{ANSI_G}[✓]{ANSI_X} '{e.title}' rated {e.rating or '-'}")
        elif args.cmd == "remove":
            e = wl.remove(args.id)
            print(f"{ANSI_G}[✓]{ANSI_X} Removed '{e.title}'")
        return 0
    finally:
        store.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    if args.version:
        print(f"binge_list {__VERSION__}")
        return 0
    if not args.cmd:
        build_parser(include_examples=True).print_help()
        return 0
    try:
        return run(args)
    except BingeListError as e:
        print(ANSI_R + f"[!] {e}" + ANSI_X, file=sys.stderr)
        return 1
    except ValueError as e:
        # pydantic validation errors
        print(ANSI_R + f"[!] Invalid input: {e}" + ANSI_X, file=sys.stderr)
        return 2


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n[!] Aborted")
