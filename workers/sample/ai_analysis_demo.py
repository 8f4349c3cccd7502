#!/usr/bin/env python3
"""
Sample AI analysis step.

Reads parsed articles and attaches a summary, keywords and a relevance score,
standing in for the LLM enrichment call.
"""

from __future__ import annotations

import argparse
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enrich parsed demo articles.")
    parser.add_argument("--input", default="workers/sample/state/articles.json")
    parser.add_argument("--output", default="workers/sample/state/analyzed_articles.json")
    parser.add_argument("--min-score", type=float, default=0.0)
    parser.add_argument("--sleep-seconds", type=float, default=0.2)
    return parser.parse_args()


def analyze(article: Dict[str, object]) -> Dict[str, object]:
    title = str(article.get("title", ""))
    words = [word.strip("#").lower() for word in title.split() if len(word) > 3]
    score = round(min(1.0, len(set(words)) / 6.0), 2)
    return {
        **article,
        "summary": f"{title}. Reported by {article.get('source', 'unknown')}.",
        "keywords": sorted(set(words))[:5],
        "score": score,
        "processing_status": "analyzed",
    }


def main() -> int:
    args = parse_args()
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: input file not found: {input_path}")
        return 1
    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    raw = json.loads(input_path.read_text(encoding="utf-8"))
    articles = raw.get("articles", [])
    if not isinstance(articles, list):
        print("Error: invalid parsed payload. 'articles' must be a list.")
        return 1

    analyzed: List[Dict[str, object]] = [analyze(article) for article in articles]
    kept = [article for article in analyzed if float(article["score"]) >= args.min_score]

    payload = {
        "batch_id": raw.get("batch_id"),
        "analyzed_at": datetime.now(tz=timezone.utc).isoformat(),
        "input_count": len(articles),
        "output_count": len(kept),
        "articles": kept,
    }
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    print(f"Analysis complete: input={len(articles)}, output={len(kept)}, output_file={output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
