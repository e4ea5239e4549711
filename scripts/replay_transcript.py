"""
Replay a Transcript Through the Personalization Engine

Feeds a JSON list of turns ({"user": ..., "assistant": ...}) into the
aggregator for one user, then prints the resulting active personalization.
Useful for checking what the engine learns from a real conversation.

Usage:
    python scripts/replay_transcript.py --user-id demo --transcript turns.json
    python scripts/replay_transcript.py --user-id demo --transcript turns.json --llm
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "tutor_personalization" / "src"))

from tutor_personalization.config import load_config
from tutor_personalization.identity_index import IdentityIndex
from tutor_personalization.logger import get_logger, setup_logging
from tutor_personalization.personalization import PersonalizationAggregator
from tutor_personalization.profile_store import create_profile_store
from tutor_personalization.text_generation import TextGenerator

log = get_logger("replay_transcript")


def load_turns(path: Path):
    turns = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(turns, list):
        raise ValueError("Transcript must be a JSON list of {user, assistant} objects")
    return [t for t in turns if isinstance(t, dict)]


async def main(user_id: str, transcript: Path, use_llm: bool) -> int:
    config = load_config()
    if use_llm:
        config = replace(config, facts_llm_enabled=True)

    aggregator = PersonalizationAggregator(
        store=create_profile_store(config),
        config=config,
        generator=TextGenerator(config) if config.facts_llm_enabled else None,
        identity_index=IdentityIndex(config.identity_index_path, config.embedding_model),
    )

    turns = load_turns(transcript)
    log.info(f"Replaying {len(turns)} turn(s) for user {user_id}")

    failures = 0
    for i, turn in enumerate(turns, start=1):
        result = await aggregator.ingest_chat_turn(
            user_id,
            turn.get("user", ""),
            turn.get("assistant", ""),
            {"current_topic": turn.get("topic")},
        )
        if result.ok:
            log.info(f"Turn {i}: {result.snapshot or '(no snapshot yet)'}")
        else:
            failures += 1
            log.warning(f"Turn {i} failed: {result.error}")

    active = await aggregator.get_active_personalization(user_id)
    log.success("Active personalization", asdict(active))
    return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay a chat transcript through the personalization engine")
    parser.add_argument("--user-id", required=True, help="User the turns belong to")
    parser.add_argument("--transcript", required=True, type=Path, help="JSON file with a list of {user, assistant} turns")
    parser.add_argument("--llm", action="store_true", help="Also run LLM-backed fact extraction")
    args = parser.parse_args()

    setup_logging(getattr(logging, load_config().log_level.upper(), logging.INFO))
    raise SystemExit(asyncio.run(main(args.user_id, args.transcript, args.llm)))
