import argparse
import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import story


DEFAULT_PICKS = ["A"]


def initial_state() -> Dict[str, Any]:
    return {
        "at": story.DEFAULT_SCENE_ID,
        "stats": dict(story.DEFAULT_STATS),
        "flags": {},
        "last3Beats": [],
        "pending": None,
    }


def advance_state(state: Dict[str, Any], scene: Dict[str, Any]) -> Dict[str, Any]:
    """Fold a returned scene back into the client-side state, as the game UI does."""
    beats = list(state.get("last3Beats") or [])
    beats.append(scene["beatTag"])
    return {
        "at": scene["sceneId"],
        "stats": dict(scene["stats"]),
        "flags": dict(scene["flags"]),
        "last3Beats": beats[-story.MAX_RECENT_BEATS:],
        "pending": scene,
    }


def pick_for_turn(turn_idx: int, picks: Sequence[str]) -> Optional[str]:
    if turn_idx == 0:
        return None
    if not picks:
        return DEFAULT_PICKS[0]
    return picks[min(turn_idx - 1, len(picks) - 1)]


async def play_session(
    client: story.GenerationClient,
    *,
    turns: int,
    picks: Sequence[str],
    language: str,
) -> List[Dict[str, Any]]:
    state = initial_state()
    transcript: List[Dict[str, Any]] = []
    for turn_idx in range(turns):
        picked = pick_for_turn(turn_idx, picks)
        start = time.time()
        scene = await story.generate_scene(state, picked, client=client, language=language)
        payload = scene.to_payload()
        transcript.append({
            "turn": turn_idx,
            "picked": picked,
            "elapsed_seconds": round(time.time() - start, 3),
            "scene": payload,
        })
        state = advance_state(state, payload)
        if payload["isEnding"]:
            break
    return transcript


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Play a few story turns against the configured backend.")
    parser.add_argument(
        "--turns",
        type=int,
        default=3,
        help="Number of scenes to generate (default: 3).",
    )
    parser.add_argument(
        "--picks",
        nargs="*",
        default=DEFAULT_PICKS,
        choices=list(story.CHOICE_IDS),
        help="Choice ids to pick on turns 2.. (the last one repeats).",
    )
    parser.add_argument(
        "--language",
        default=story.FALLBACK_LANGUAGE,
        help="Narration language (en or ko).",
    )
    parser.add_argument(
        "--backend",
        choices=sorted(story.BACKENDS),
        default=story.STORY_BACKEND,
        help="Generation backend to use.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        api_key = story.require_api_key()
    except story.ConfigurationError as exc:
        print(exc.message, file=sys.stderr)
        return 2

    client = story.get_generation_client(api_key, backend=args.backend)
    transcript = asyncio.run(
        play_session(
            client,
            turns=max(1, args.turns),
            picks=args.picks,
            language=args.language,
        )
    )
    print(json.dumps(transcript, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
