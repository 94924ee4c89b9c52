from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from quest_orchestrator.config.settings import Settings, get_settings
from quest_orchestrator.orchestrator.llm import build_llm_adapter
from quest_orchestrator.orchestrator.workflows import build_orchestrator
from quest_orchestrator.storage.sqlite import SqliteQuestStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run the daily digest workflow for one user or for every known user. "
            "Safe to fire more than once per day: runs are keyed per user and date."
        )
    )
    parser.add_argument(
        "--user-id",
        default=None,
        help="Only run the digest for this user (default: all users).",
    )
    parser.add_argument(
        "--database-path",
        type=Path,
        default=None,
        help="SQLite database file (default: QUEST_ORCHESTRATOR_DATABASE_PATH).",
    )
    parser.add_argument(
        "--evaluate-quests",
        action="store_true",
        help="Also re-evaluate every ACTIVE or COMPLETED_PROVISIONAL quest afterwards.",
    )
    parser.add_argument(
        "--purge-expired",
        action="store_true",
        help="Delete completed idempotency records older than the configured TTL.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    return parser.parse_args()


async def _run(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    database_path = args.database_path or settings.resolved_database_path()
    store = SqliteQuestStore(database_path)
    store.migrate()
    orchestrator = build_orchestrator(store, settings, llm_adapter=build_llm_adapter(settings))

    summary: dict[str, Any] = {}
    if args.user_id:
        summary["digest"] = await orchestrator.run_daily_digest(args.user_id)
    else:
        summary["digest"] = await orchestrator.run_daily_digest_all()

    if args.evaluate_quests:
        results = orchestrator.evaluator.evaluate_open_quests()
        summary["evaluated"] = len(results)
        summary["rewards_granted"] = sum(1 for result in results if result.reward_granted)

    if args.purge_expired:
        summary["purged_results"] = orchestrator.engine.purge_expired_results()
    return summary


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    summary = asyncio.run(_run(args, get_settings()))
    print(json.dumps(summary, indent=2, default=str))


if __name__ == "__main__":
    main()
