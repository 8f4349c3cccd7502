#!/usr/bin/env python3
"""
Sample feed parsing step.

Generates synthetic RSS articles so the pipeline can be exercised offline.
"""

from __future__ import annotations

import argparse
import json
import os
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

SOURCES = ["wire-service", "city-desk", "science-weekly", "tech-digest", "world-report"]
TOPICS = ["climate", "elections", "space", "health", "markets", "ai"]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate synthetic feed articles for the demo pipeline.")
    parser.add_argument("--output", default="workers/sample/state/articles.json")
    parser.add_argument("--feeds", type=int, default=3)
    parser.add_argument("--per-feed", type=int, default=5)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--sleep-seconds", type=float, default=0.2)
    return parser.parse_args()


def generate_articles(feeds: int, per_feed: int, seed: int) -> List[Dict[str, object]]:
    rng = random.Random(seed)
    now = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    out: List[Dict[str, object]] = []
    for feed_idx in range(feeds):
        source = SOURCES[feed_idx % len(SOURCES)]
        for item_idx in range(per_feed):
            topic = rng.choice(TOPICS)
            out.append(
                {
                    "id": f"{source}-{seed}-{item_idx + 1:04d}",
                    "source": source,
                    "title": f"{topic.title()} update #{item_idx + 1} from {source}",
                    "link": f"https://{source}.example.com/articles/{item_idx + 1}",
                    "published_at": now,
                    "topic": topic,
                    "processing_status": "parsed",
                }
            )
    return out


def main() -> int:
    args = parse_args()
    if args.feeds <= 0 or args.per_feed <= 0:
        print("Error: --feeds and --per-feed must be >= 1")
        return 1
    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    articles = generate_articles(args.feeds, args.per_feed, args.seed)
    payload = {
        "batch_id": f"feeds-{int(time.time())}",
        "run_id": os.getenv("CONDUCTOR_RUN_ID"),
        "parsed_at": datetime.now(tz=timezone.utc).isoformat(),
        "article_count": len(articles),
        "articles": articles,
    }

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    print(f"Parse complete: feeds={args.feeds}, articles={len(articles)}, output={output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
