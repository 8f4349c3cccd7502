#!/usr/bin/env python3
"""
Sample social media updates step.

Refreshes engagement counters on stored posts and appends a history event.
"""

from __future__ import annotations

import argparse
import json
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Refresh engagement on demo social posts.")
    parser.add_argument("--input", default="workers/sample/state/social_posts.json")
    parser.add_argument("--history-output", default="workers/sample/state/update_history.jsonl")
    parser.add_argument("--seed", type=int, default=11)
    return parser.parse_args()


def refresh(post: Dict[str, Any], rng: random.Random) -> Dict[str, Any]:
    return {
        **post,
        "likes": int(post.get("likes", 0)) + rng.randint(0, 20),
        "reposts": int(post.get("reposts", 0)) + rng.randint(0, 5),
    }


def main() -> int:
    args = parse_args()
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Nothing to update: {input_path} does not exist yet")
        return 0

    stored = json.loads(input_path.read_text(encoding="utf-8"))
    rng = random.Random(args.seed)
    posts: List[Dict[str, Any]] = [refresh(post, rng) for post in stored.get("posts", [])]
    stored["posts"] = posts
    stored["updated_at"] = datetime.now(tz=timezone.utc).isoformat()
    input_path.write_text(json.dumps(stored, indent=2), encoding="utf-8")

    event = {
        "updated_at": stored["updated_at"],
        "posts_updated": len(posts),
        "total_likes": sum(post["likes"] for post in posts),
    }
    history_path = Path(args.history_output)
    history_path.parent.mkdir(parents=True, exist_ok=True)
    with history_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(event) + "\n")

    print(f"Update complete: posts={len(posts)}, history={history_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
