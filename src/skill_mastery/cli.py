from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Sequence

from .concepts import SKILLS_FILE, SkillGraph, load_skill_graph
from .config import load_config
from .models import OUTCOMES, OutcomeEvent
from .store import SQLiteStore
from .tutor import Tutor


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and update a learner model")
    parser.add_argument("--db", type=Path, default=None, help="SQLite database path")
    parser.add_argument("--config", type=Path, default=None, help="YAML config overrides")
    parser.add_argument("--skills", type=Path, default=SKILLS_FILE, help="YAML skill graph")
    parser.add_argument("--user", default="default", help="Learner id")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("seed", help="Register every skill from the skill graph")

    record = commands.add_parser("record", help="Record the outcome of one attempt")
    record.add_argument("skill", help="Skill id")
    record.add_argument("outcome", choices=OUTCOMES)
    record.add_argument("--seconds", type=float, default=None, help="Time to outcome in seconds")
    record.add_argument("--attempts", type=int, default=None, help="Attempts needed")
    record.add_argument("--struggle", type=int, default=0, choices=range(4), help="Struggle level 0-3")
    record.add_argument("--explain-clicks", dest="explain_clicks", type=int, default=0)
    record.add_argument("--nudge-clicks", dest="nudge_clicks", type=int, default=0)
    record.add_argument("--test-attempts", dest="test_attempts", type=int, default=0)
    record.add_argument("--misconception", default=None)
    record.add_argument("--style", default=None, help="Intervention style used")

    commands.add_parser("summary", help="Show the mastery summary")
    commands.add_parser("path", help="Show the ranked learning path")
    commands.add_parser("due", help="List skills due for review")

    improvements = commands.add_parser("improvements", help="List pending improvements")
    improvements.add_argument("--clear", action="store_true", help="Clear the queue after listing")
    return parser.parse_args(argv)


def _load_graph(path: Path, required: bool) -> SkillGraph | None:
    if not path.exists():
        if required:
            raise SystemExit(f"Skill graph not found: {path}")
        return None
    return load_skill_graph(path)


async def _run(args: argparse.Namespace, graph: SkillGraph | None) -> None:
    store = SQLiteStore(args.db)
    store.init()
    tutor = await Tutor.create(store, graph, load_config(args.config))
    user = args.user

    if args.command == "seed":
        print(f"Skill graph has {len(graph or [])} skills; {len(tutor.bkt.components)} registered")
    elif args.command == "record":
        event = OutcomeEvent(
            skill_id=args.skill,
            outcome=args.outcome,
            user_id=user,
            misconception=args.misconception,
            intervention_style=args.style,
            time_to_outcome=args.seconds,
            struggle_level=args.struggle,
            explain_clicks=args.explain_clicks,
            nudge_clicks=args.nudge_clicks,
            test_attempts=args.test_attempts,
            attempts_count=args.attempts,
        )
        result = await tutor.process_outcome(event)
        if result.mastery is not None:
            print(
                f"{args.skill}: mastery {result.mastery.before:.3f} -> {result.mastery.after:.3f}"
                f"{' (mastered)' if result.mastery.is_mastered else ''}"
            )
        if result.difficulty is not None:
            print(f"Difficulty: {result.difficulty['difficulty']:.2f}")
        for pattern in result.patterns:
            print(f"Flagged {pattern.type}: {pattern.recommendation}")
    elif args.command == "summary":
        summary = tutor.get_mastery_summary(user)
        print(
            f"{summary.mastered}/{summary.total} skills mastered, {summary.weak} weak, "
            f"average mastery {summary.average_mastery:.2f}"
        )
        if summary.weakest is not None:
            print(f"Weakest: {summary.weakest.skill_id} ({summary.weakest.mastery:.2f})")
    elif args.command == "path":
        path = await tutor.generate_learning_path(user_id=user)
        print(path.recommendation)
        for position, item in enumerate(path.scores, start=1):
            print(f"{position:>3}. {item.skill_id:<30} score {item.score:.3f}  mastery {item.mastery:.2f}")
    elif args.command == "due":
        due = tutor.memory.get_concepts_due_for_review(user)
        if not due:
            print("Nothing due for review")
        for item in due:
            print(f"{item.skill_id:<30} recall {item.retrievability:.2f}  overdue {item.days_overdue}d")
    elif args.command == "improvements":
        pending = tutor.feedback.get_pending_improvements()
        if not pending:
            print("No pending improvements")
        for item in pending:
            subject = item.skill_id or item.misconception
            print(f"{item.type:<26} {subject}  success {item.success_rate:.0%}  n={item.sample_size}")
        if args.clear:
            await tutor.feedback.clear_pending_improvements()
            print("Cleared")


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    graph = _load_graph(args.skills, required=args.command == "seed")
    asyncio.run(_run(args, graph))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
