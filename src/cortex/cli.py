"""Cortex CLI: query, store and maintain the memory store from a shell."""

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path


def _format_age(created_at) -> str:
    """Format a datetime as relative age string (e.g. '2d ago', '1w ago')."""
    if not created_at:
        return ""
    now = datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    seconds = int((now - created_at).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    days = seconds // 86400
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


def _run(coro_fn, args):
    """Build a manager, run ``coro_fn(manager, args)``, always close it."""
    from cortex.manager import create_memory_manager

    async def _main():
        manager = create_memory_manager()
        try:
            return await coro_fn(manager, args)
        finally:
            await manager.close()

    return asyncio.run(_main())


def _joined(parts, usage: str) -> str:
    text = " ".join(parts).strip()
    if not text:
        print(f"Usage: {usage}", file=sys.stderr)
        sys.exit(1)
    return text


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------


async def _query(manager, args):
    query_text = _joined(args.query_text, "cortex query <search text>")
    start = time.monotonic()
    results = await manager.query_knowledge(query_text, category=args.category, limit=args.limit)
    elapsed = time.monotonic() - start

    if args.json:
        out = [r.to_dict() for r in results]
        print(json.dumps({"results": out, "count": len(out), "elapsed_s": round(elapsed, 3)}, indent=2))
        return
    if not results:
        print(f'No results for "{query_text}" ({elapsed:.2f}s)')
        return
    for r in results:
        preview = r.snippet.content[:120].replace("\n", " ")
        age = _format_age(r.snippet.created_at)
        print(f"{r.relevance:6.2f}  {r.match_type.value:8}  #{r.snippet.id:<5} [{r.snippet.category.value}] {preview}  {age}")
    print(f"\n{len(results)} result(s) ({elapsed:.2f}s)")


def cmd_query(args):
    """Search knowledge (keyword + semantic)."""
    _run(_query, args)


async def _store(manager, args):
    content = _joined(args.content, "cortex store <text> [-c CATEGORY]")
    tags = [t for t in (args.tags or "").split(",") if t.strip()]
    snippet = await manager.store_knowledge(content, args.category, importance=args.importance, tags=tags)
    print(f"Stored #{snippet.id} [{args.category}]: {content[:80]}")


def cmd_store(args):
    """Store a knowledge snippet."""
    _run(_store, args)


async def _remember(manager, args):
    text = _joined(args.text, "cortex remember <text>")
    fact_id = await manager.add_core_fact(text, args.category, args.importance)
    print(f"Remembered core fact #{fact_id}: {text[:120]}")


def cmd_remember(args):
    """Store a core fact that is always loaded into context."""
    _run(_remember, args)


async def _forget(manager, args):
    if args.id is not None:
        if await manager.delete_knowledge_by_id(args.id):
            print(f"Deleted #{args.id}")
        else:
            print(f"No memory with id {args.id}")
        return
    query_text = _joined(args.query_text or [], "cortex forget <query> | --id N")
    deleted = await manager.forget_knowledge(query_text, delete_all=args.all)
    if not deleted:
        print(f'No memories matching "{query_text}"')
        return
    for s in deleted:
        print(f"Deleted #{s.id} [{s.category.value}] {s.content[:100]}")


def cmd_forget(args):
    """Delete knowledge by id or by query match."""
    _run(_forget, args)


# ---------------------------------------------------------------------------
# Core facts / episodes / reflection
# ---------------------------------------------------------------------------


async def _facts(manager, args):
    if args.deactivate is not None:
        ok = await manager.deactivate_core_fact(args.deactivate)
        print(f"Deactivated #{args.deactivate}" if ok else f"No core fact with id {args.deactivate}")
        return
    facts = await manager.list_core_facts(category=args.category)
    if args.json:
        print(json.dumps([
            {"id": f.id, "content": f.content, "category": f.category.value, "importance": f.importance}
            for f in facts
        ], indent=2))
        return
    if not facts:
        print("No core facts.")
        return
    for f in facts:
        print(f"#{f.id:<4} [{f.category.value}] ({f.importance:.2f}) {f.content}")


def cmd_facts(args):
    """List or deactivate core facts."""
    _run(_facts, args)


async def _episodes(manager, args):
    episodes = await manager.get_recent_episodes(args.limit)
    if args.json:
        print(json.dumps([
            {
                "id": e.id,
                "session_id": e.session_id,
                "summary": e.summary,
                "key_topics": e.key_topics,
                "key_takeaways": e.key_takeaways,
                "message_count": e.message_count,
                "ended_at": e.ended_at.isoformat(),
            }
            for e in episodes
        ], indent=2))
        return
    if not episodes:
        print("No episodes yet.")
        return
    for e in episodes:
        topics = ", ".join(e.key_topics) or "-"
        print(f"{_format_age(e.ended_at):>10}  {e.session_id}  ({e.message_count} msgs)")
        print(f"            {e.summary}")
        print(f"            topics: {topics}")


def cmd_episodes(args):
    """Show recent session episodes."""
    _run(_episodes, args)


async def _reflect(manager, args):
    path = Path(args.transcript)
    try:
        turns = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"Cannot read transcript {path}: {e}", file=sys.stderr)
        sys.exit(1)
    if isinstance(turns, dict):
        turns = turns.get("messages", [])
    result = await manager.reflect_and_summarize(turns)
    if result is None:
        print("Nothing reflected (too few turns, no generator, or unparseable response).")
        return
    print(f"Episode #{result.episode_id}: {result.summary}")
    for fact in result.extracted_facts:
        kind = "core" if fact.is_core_fact else "knowledge"
        print(f"  + {kind} [{fact.category.value}] {fact.content}")


def cmd_reflect(args):
    """Summarize a JSON transcript into an episode (needs ANTHROPIC_API_KEY)."""
    _run(_reflect, args)


# ---------------------------------------------------------------------------
# Backups and stats
# ---------------------------------------------------------------------------


async def _backup(manager, args):
    record = await manager.create_backup()
    if record is None:
        print("No database found; nothing to back up.")
        return
    print(f"Backup saved: {record.filename} ({record.size / 1024:.1f} KB)")


def cmd_backup(args):
    """Snapshot the store to <home>/backups/."""
    _run(_backup, args)


async def _backups(manager, args):
    backups = await manager.list_backups()
    if args.json:
        print(json.dumps([b.to_dict() for b in backups], indent=2))
        return
    if not backups:
        print("No backups.")
        return
    for b in backups:
        print(f"{b.filename:55}  {b.size / 1024:8.1f} KB  {_format_age(b.timestamp)}")


def cmd_backups(args):
    """List backups, newest first."""
    _run(_backups, args)


async def _restore(manager, args):
    if await manager.restore_from_backup(args.filename):
        print(f"Restored from {args.filename} (previous state kept as pre_restore_*.db)")
    else:
        print(f"Backup not found: {args.filename}", file=sys.stderr)
        sys.exit(1)


def cmd_restore(args):
    """Restore the store from a backup."""
    _run(_restore, args)


async def _stats(manager, args):
    stats = await manager.get_stats()
    if args.json:
        print(json.dumps(stats, indent=2))
        return
    b = stats["backup"]
    print(f"Core facts:         {stats['core_facts']}")
    print(f"Knowledge snippets: {stats['knowledge_snippets']}")
    print(f"Episodes:           {stats['episodes']}")
    print(f"Backups:            {b['total_backups']} ({b['total_size_kb']} KB)")
    if b["newest_backup"]:
        print(f"Newest backup:      {b['newest_backup']}")


def cmd_stats(args):
    """Show tier counts and backup status."""
    _run(_stats, args)


CATEGORIES = ["identity", "instruction", "preference", "project", "personal", "fact", "technical"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cortex",
        description="Cortex: tiered long-term memory for AI agents",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    query_parser = subparsers.add_parser("query", help="Search knowledge (keyword + semantic)")
    query_parser.add_argument("query_text", nargs="+", help="Search text")
    query_parser.add_argument("--category", choices=CATEGORIES, help="Restrict to one category")
    query_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    query_parser.add_argument("--json", action="store_true", help="Output as JSON")

    store_parser = subparsers.add_parser("store", help="Store a knowledge snippet")
    store_parser.add_argument("content", nargs="+", help="Snippet content")
    store_parser.add_argument("-c", "--category", default="fact", choices=CATEGORIES, help="Category (default: fact)")
    store_parser.add_argument("-i", "--importance", type=float, default=None, help="Importance 0-1 (default: 0.5)")
    store_parser.add_argument("-t", "--tags", default="", help="Comma-separated tags")

    remember_parser = subparsers.add_parser("remember", help="Store a core fact (always in context)")
    remember_parser.add_argument("text", nargs="+", help="Fact text")
    remember_parser.add_argument("-c", "--category", default="preference", choices=CATEGORIES)
    remember_parser.add_argument("-i", "--importance", type=float, default=0.9)

    forget_parser = subparsers.add_parser("forget", help="Delete knowledge by id or query")
    forget_parser.add_argument("query_text", nargs="*", help="Query matching the memory to delete")
    forget_parser.add_argument("--id", type=int, default=None, help="Delete this snippet id")
    forget_parser.add_argument("--all", action="store_true", help="Delete every match, not just the best")

    facts_parser = subparsers.add_parser("facts", help="List core facts")
    facts_parser.add_argument("--category", choices=CATEGORIES)
    facts_parser.add_argument("--deactivate", type=int, default=None, help="Deactivate this fact id")
    facts_parser.add_argument("--json", action="store_true", help="Output as JSON")

    episodes_parser = subparsers.add_parser("episodes", help="Show recent session episodes")
    episodes_parser.add_argument("--limit", type=int, default=5)
    episodes_parser.add_argument("--json", action="store_true", help="Output as JSON")

    reflect_parser = subparsers.add_parser("reflect", help="Summarize a JSON transcript into an episode")
    reflect_parser.add_argument("transcript", help="JSON file: [{role, content}, ...]")

    subparsers.add_parser("backup", help="Snapshot the store (keeps 10, max 7 days)")
    backups_parser = subparsers.add_parser("backups", help="List backups")
    backups_parser.add_argument("--json", action="store_true", help="Output as JSON")
    restore_parser = subparsers.add_parser("restore", help="Restore the store from a backup")
    restore_parser.add_argument("filename", help="Backup filename (see 'cortex backups')")

    stats_parser = subparsers.add_parser("stats", help="Show tier counts and backup status")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "query": cmd_query,
        "store": cmd_store,
        "remember": cmd_remember,
        "forget": cmd_forget,
        "facts": cmd_facts,
        "episodes": cmd_episodes,
        "reflect": cmd_reflect,
        "backup": cmd_backup,
        "backups": cmd_backups,
        "restore": cmd_restore,
        "stats": cmd_stats,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
