#!/usr/bin/env python3
"""
Sample social media search step.

Links analyzed articles to synthetic Bluesky and Mastodon posts.
"""

from __future__ import annotations

import argparse
import json
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

PLATFORMS = ["bluesky", "mastodon"]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find demo social posts for analyzed articles.")
    parser.add_argument("--input", default="workers/sample/state/analyzed_articles.json")
    parser.add_argument("--output", default="workers/sample/state/social_posts.json")
    parser.add_argument("--posts-per-article", type=int, default=2)
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--sleep-seconds", type=float, default=0.2)
    parser.add_argument("--fail-if-empty", action="store_true")
    return parser.parse_args()


def search_posts(article: Dict[str, object], count: int, rng: random.Random) -> List[Dict[str, object]]:
    posts: List[Dict[str, object]] = []
    for idx in range(count):
        platform = PLATFORMS[idx % len(PLATFORMS)]
        posts.append(
            {
                "article_id": article.get("id"),
                "platform": platform,
                "post_id": f"{platform}-{article.get('id')}-{idx + 1}",
                "text": f"Discussing: {article.get('title')}",
                "likes": rng.randint(0, 250),
                "reposts": rng.randint(0, 60),
            }
        )
    return posts


def main() -> int:
    args = parse_args()
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: analyzed input file not found: {input_path}")
        return 1
    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    analyzed = json.loads(input_path.read_text(encoding="utf-8"))
    articles = analyzed.get("articles", [])
    if args.fail_if_empty and not articles:
        print("Error: no analyzed articles and --fail-if-empty is enabled.")
        return 2

    rng = random.Random(args.seed)
    posts: List[Dict[str, object]] = []
    for article in articles:
        posts.extend(search_posts(article, args.posts_per_article, rng))

    payload = {
        "searched_at": datetime.now(tz=timezone.utc).isoformat(),
        "article_count": len(articles),
        "post_count": len(posts),
        "posts": posts,
    }
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    print(f"Social search complete: articles={len(articles)}, posts={len(posts)}, output={output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
