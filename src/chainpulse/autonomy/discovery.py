from __future__ import annotations

import math
import re
from typing import Any, Dict, List

from .content_guard import evaluate_trend_candidate
from .state import clamp, clamp_number, round_half_up


FALLBACK_QUERY = "crypto OR blockchain OR onchain OR layer2"
MAX_QUERY_KEYWORDS = 12
MAX_FALLBACK_CANDIDATES = 12


def sanitize_trend_keywords(keywords: List[str]) -> List[str]:
    out: List[str] = []
    for raw in keywords:
        keyword = str(raw or "").strip()
        if not 2 <= len(keyword) <= 30:
            continue
        if keyword.isdigit() or re.match(r"^https?", keyword, re.I) or keyword[0] in "@#":
            continue
        if keyword not in out:
            out.append(keyword)
    return out


def build_search_query(keywords: List[str]) -> str:
    cleaned = sanitize_trend_keywords(keywords)[:MAX_QUERY_KEYWORDS]
    keyword_query = " OR ".join(f'"{keyword}"' for keyword in cleaned) if cleaned else FALLBACK_QUERY
    return f"({keyword_query}) -is:retweet -is:reply -is:quote"


def build_source_key(username: Any, author_id: Any) -> str:
    normalized = re.sub(r"[^a-z0-9_]", "", str(username or "").strip().lower())
    if normalized:
        return f"x:{normalized}"
    return f"x:{str(author_id or 'unknown').lower()}"


def _followers(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.0
    return float(value)


def estimate_source_fallback_trust(verified: bool, followers_count: Any) -> float:
    followers = _followers(followers_count)
    if verified and followers >= 30000:
        return 0.66
    if verified:
        return 0.58
    if followers >= 100000:
        return 0.62
    if followers >= 10000:
        return 0.56
    if followers >= 3000:
        return 0.5
    return 0.42


def blend_source_trust(base_trust: float, verified: bool, followers_count: Any) -> float:
    follower_boost = min(0.14, math.log10(_followers(followers_count) + 10) * 0.03)
    verified_boost = 0.06 if verified else 0.0
    blended = base_trust * 0.8 + 0.2 * (base_trust + follower_boost + verified_boost)
    return clamp(round_half_up(blended, 2), 0.05, 0.95)


def rank_trend_candidates(
    posts: List[Dict[str, Any]],
    keywords: List[str],
    store: Any,
    min_source_trust: float,
    min_score: float,
    min_engagement: int,
    max_results: int = 24,
) -> List[Dict[str, Any]]:
    """Score searched posts and keep one per author above the floors.

    When the floors leave nothing, the best non-spam rows are returned
    instead so the reply path still has something to gate.
    """
    min_trust = clamp_number(min_source_trust, 0.05, 0.9, 0.24)
    min_score = clamp_number(min_score, 0.5, 12, 3.2)
    min_engagement = clamp_number(min_engagement, 1, 200, 6)
    hints = sanitize_trend_keywords(keywords)[:MAX_QUERY_KEYWORDS]

    ranked: List[Dict[str, Any]] = []
    for post in posts:
        author = post.get("author") or {}
        verified = bool(author.get("verified"))
        followers = author.get("followers_count")
        source_key = build_source_key(author.get("username"), post.get("author_id"))
        base = store.get_source_trust(source_key, estimate_source_fallback_trust(verified, followers))
        evaluation = evaluate_trend_candidate(post.get("text") or "", hints, post.get("metrics"), author)
        trust = blend_source_trust(base, verified, followers)
        if evaluation["is_low_signal"] or trust < min_trust:
            continue
        row = dict(post)
        row.update(
            trend_score=evaluation["score"],
            trend_engagement=evaluation["engagement_raw"],
            source_key=source_key,
            source_trust=trust,
        )
        ranked.append(row)
    ranked.sort(key=lambda row: -(row["trend_score"] + row["source_trust"] * 2.2))

    selected: List[Dict[str, Any]] = []
    seen_authors = set()
    for row in ranked:
        author_id = str(row.get("author_id") or "")
        if author_id and author_id in seen_authors:
            continue
        if row["trend_engagement"] < min_engagement or row["trend_score"] < min_score:
            continue
        selected.append(row)
        if author_id:
            seen_authors.add(author_id)
        if len(selected) >= max_results:
            break

    if selected:
        return selected
    return ranked[:MAX_FALLBACK_CANDIDATES]
