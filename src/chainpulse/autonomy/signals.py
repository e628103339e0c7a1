from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from .models import OnchainNutrient, RecentPost
from .quality import infer_topic_tag
from .state import clamp_number


DEFAULT_TREND_KEYWORDS = ["crypto", "blockchain", "layer2", "onchain", "ETF", "macro"]
MAX_TREND_KEYWORDS = 18
TITLE_STOP_WORDS = {"the", "and", "with", "from", "this", "that", "for", "into", "about", "news"}
TITLE_SPAM_WORDS = {"join", "community", "private", "group", "airdrop", "giveaway"}
POST_ANGLES = [
    "심리(FearGreed)와 온체인 시그널 괴리 해석",
    "오늘 나온 기술/업그레이드 이슈의 실사용 영향",
    "유동성(스테이블/거래량)과 가격 반응의 비동기",
    "리스크 플래그(고래/멤풀/변동성) 관점에서 재해석",
    "시장 참여자 행동 변화(관망 vs 추격) 프레이밍",
]
NO_MARKET_ANCHORS = "- 실시간 마켓 앵커 없음 (구체 가격 숫자 언급 금지)"

_TITLE_TOKEN = re.compile(r"[A-Za-z][A-Za-z0-9-]{2,}|[가-힣]{2,}")
_TRUSTED_OUTLETS = re.compile(r"coingecko|cryptocompare|reuters|coindesk|blockworks|bloomberg")
_WEAK_OUTLETS = re.compile(r"twitter|x|unknown|community")

logger = logging.getLogger("chainpulse.autonomy")


class SignalFeedError(RuntimeError):
    pass


@dataclass
class TrendContext:
    keywords: List[str]
    summary: str
    market_rows: List[Dict[str, Any]]
    headlines: List[str]
    news_rows: List[Dict[str, Any]]
    news_sources: List[Dict[str, Any]]
    market_context: str
    onchain_context: str
    nutrients: List[OnchainNutrient] = field(default_factory=list)


def normalize_source_label(source: Any) -> str:
    value = str(source or "unknown").strip().lower()
    value = re.sub(r"\s+", "-", value)
    return re.sub(r"[^a-z0-9_-]", "", value)


def estimate_news_source_fallback_trust(source: Any) -> float:
    lower = str(source or "").lower()
    if _TRUSTED_OUTLETS.search(lower):
        return 0.62
    if _WEAK_OUTLETS.search(lower):
        return 0.45
    return 0.52


def extract_title_keywords(title: str) -> List[str]:
    out: List[str] = []
    for token in _TITLE_TOKEN.findall(str(title or "")):
        token = token.strip()
        lowered = token.lower()
        if len(token) < 3 or lowered in TITLE_STOP_WORDS or lowered in TITLE_SPAM_WORDS:
            continue
        out.append(token)
    return out[:4]


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_market_row(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    symbol = str(raw.get("symbol") or "").strip().upper()
    price = _finite(raw.get("price"))
    if not symbol or price is None:
        return None
    change = _finite(raw.get("change_24h", raw.get("change24h")))
    return {
        "symbol": symbol,
        "name": str(raw.get("name") or symbol),
        "price": price,
        "change_24h": change if change is not None else 0.0,
    }


def _signed(value: float, digits: int) -> str:
    sign = "+" if value >= 0 else ""
    return f"{sign}{value:.{digits}f}%"


def format_market_anchors(market_rows: List[Dict[str, Any]]) -> str:
    if not market_rows:
        return NO_MARKET_ANCHORS
    return "\n".join(
        f"- {row['symbol']}: ${math.floor(row['price'] + 0.5):,} ({_signed(row['change_24h'], 2)})"
        for row in market_rows[:4]
    )


def format_market_context(market_rows: List[Dict[str, Any]], fear_greed: Optional[Dict[str, Any]]) -> str:
    lines: List[str] = []
    value = _finite((fear_greed or {}).get("value"))
    if value is not None:
        label = str((fear_greed or {}).get("label") or "").strip()
        lines.append(f"FearGreed {int(value)} ({label})" if label else f"FearGreed {int(value)}")
    for row in market_rows[:6]:
        lines.append(f"- {row['symbol']} ${row['price']:,.2f} ({_signed(row['change_24h'], 1)})")
    return "\n".join(lines)


def format_onchain_context(nutrients: List[OnchainNutrient]) -> str:
    lines = []
    for nutrient in nutrients:
        if nutrient.source != "onchain":
            continue
        summary = nutrient.evidence or nutrient.category
        lines.append(f"- {nutrient.label}: {nutrient.value} | {summary} (source: {nutrient.metadata.get('provider') or nutrient.source})")
    return "\n".join(lines[:8])


def pick_post_angle(today_post_count: int, recent_posts: List[RecentPost]) -> str:
    """Rotate through the post angles, skipping the topic of the last post."""
    last_tag = infer_topic_tag(recent_posts[-1].content) if recent_posts else ""
    candidates = [angle for angle in POST_ANGLES if infer_topic_tag(angle) != last_tag]
    if not candidates:
        return POST_ANGLES[today_post_count % len(POST_ANGLES)]
    return candidates[today_post_count % len(candidates)]


class SignalSource:
    """Reads the signal feed: news, market rows, fear/greed and nutrients.

    The feed is a JSON document, either a local file or an HTTP endpoint.
    """

    def __init__(self, path: Optional[Path] = None, url: Optional[str] = None, timeout: int = 30) -> None:
        self.path = path
        self.url = url
        self.timeout = timeout

    def fetch_feed(self) -> Dict[str, Any]:
        if self.url:
            try:
                resp = requests.get(self.url, timeout=self.timeout)
            except requests_exceptions.Timeout as e:
                raise SignalFeedError(f"Timed out while fetching signal feed url={self.url}") from e
            except requests_exceptions.RequestException as e:
                raise SignalFeedError(f"Signal feed request failed url={self.url} error={e}") from e
            if resp.status_code >= 400:
                raise SignalFeedError(f"Signal feed error {resp.status_code}: {resp.text[:200]}")
            try:
                data = resp.json()
            except ValueError as e:
                raise SignalFeedError(f"Signal feed returned invalid JSON url={self.url}") from e
        elif self.path is not None and self.path.exists():
            try:
                with self.path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                raise SignalFeedError(f"Signal feed unreadable path={self.path} error={e}") from e
        else:
            logger.warning("Signal feed missing path=%s", self.path)
            data = {}
        if not isinstance(data, dict):
            raise SignalFeedError("Signal feed must be a JSON object")
        return data

    def collect_trend_context(
        self,
        store: Any,
        min_news_source_trust: float = 0.28,
        seed_keywords: Optional[List[str]] = None,
    ) -> TrendContext:
        feed = self.fetch_feed()
        min_trust = clamp_number(min_news_source_trust, 0.05, 0.9, 0.28)

        market_rows = []
        for raw in feed.get("market") or []:
            if isinstance(raw, dict):
                row = normalize_market_row(raw)
                if row is not None:
                    market_rows.append(row)

        keywords: List[str] = []

        def add_keyword(value: str) -> None:
            if value and value not in keywords:
                keywords.append(value)

        for row in market_rows[:6]:
            add_keyword(f"${row['symbol']}")
            add_keyword(row["name"])

        merged = []
        for raw in feed.get("news") or []:
            if not isinstance(raw, dict) or not raw.get("title"):
                continue
            source = raw.get("source") or "unknown"
            source_key = f"news:{normalize_source_label(source)}"
            trust = store.get_source_trust(source_key, estimate_news_source_fallback_trust(source))
            merged.append({
                "title": str(raw.get("title")),
                "summary": str(raw.get("summary") or ""),
                "category": str(raw.get("category") or ""),
                "source_key": source_key,
                "trust": trust,
            })

        trusted = [row for row in merged if row["trust"] >= min_trust]
        ranked = sorted(trusted or merged, key=lambda row: -row["trust"])
        titles = [row["title"] for row in ranked]
        for title in titles[:12]:
            for keyword in extract_title_keywords(title):
                add_keyword(keyword)
        for seed in seed_keywords or []:
            add_keyword(seed)
        keywords = keywords[:MAX_TREND_KEYWORDS]

        top_coins = " | ".join(f"{row['symbol']} {_signed(row['change_24h'], 1)}" for row in market_rows[:4])
        news_lines = "\n".join(f"- {title}" for title in titles[:4])
        summary = f"마켓 흐름: {top_coins or '데이터 확인 중'}\n핫 토픽:\n{news_lines or '- 데이터 부족'}"

        nutrients = [
            OnchainNutrient.from_dict(raw) for raw in feed.get("nutrients") or [] if isinstance(raw, dict)
        ]
        fear_greed = feed.get("fear_greed") if isinstance(feed.get("fear_greed"), dict) else None

        return TrendContext(
            keywords=keywords or DEFAULT_TREND_KEYWORDS[:],
            summary=summary,
            market_rows=market_rows,
            headlines=titles[:8],
            news_rows=ranked,
            news_sources=[{"key": row["source_key"], "trust": row["trust"]} for row in ranked[:8]],
            market_context=format_market_context(market_rows, fear_greed),
            onchain_context=format_onchain_context(nutrients),
            nutrients=nutrients,
        )
