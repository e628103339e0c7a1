from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from .content_guard import sanitize
from .models import NARRATIVE_MODES, EventEvidencePlan, NarrativePlan, RecentPost


MODE_BY_LANE = {
    "protocol": ["builder-note", "signal-pulse", "field-journal", "contrarian-check", "mythic-analogy"],
    "ecosystem": ["field-journal", "signal-pulse", "builder-note", "mythic-analogy", "contrarian-check"],
    "regulation": ["contrarian-check", "signal-pulse", "field-journal", "builder-note", "mythic-analogy"],
    "macro": ["contrarian-check", "signal-pulse", "field-journal", "mythic-analogy", "builder-note"],
    "onchain": ["signal-pulse", "field-journal", "contrarian-check", "builder-note", "mythic-analogy"],
    "market-structure": ["signal-pulse", "contrarian-check", "builder-note", "field-journal", "mythic-analogy"],
}

OPENINGS = {
    "ko": {
        "signal-pulse": [
            "지금 시장에서 제일 시끄러운 신호 하나만 집으면",
            "오늘 타임라인에서 가장 크게 튄 건",
            "방금 데이터 먹고 정리한 핵심 한 줄은",
        ],
        "builder-note": [
            "빌더 관점에서 보면 오늘 포인트는",
            "프로덕트 관점으로 번역하면 핵심은",
            "사용자 체감으로 바꾸면 오늘 이슈는",
        ],
        "contrarian-check": [
            "모두 같은 얘길 할 때 반대로 체크할 건",
            "합의가 빠를수록 되려 확인해야 할 건",
            "컨센서스가 강할 때 내가 먼저 보는 건",
        ],
        "field-journal": [
            "현장 노트 느낌으로 짧게 남기면",
            "오늘 로그 한 줄 요약은",
            "오늘 관찰 일지에서 눈에 띈 건",
        ],
        "mythic-analogy": [
            "체인 위 파도 비유로 말하면",
            "체인 날씨 비유로 번역하면",
            "스토리 모드로 짚으면",
        ],
    },
    "en": {
        "signal-pulse": [
            "If I keep only one signal from today, it's this:",
            "The loudest pulse in today's tape is this:",
            "After digesting today's feeds, one line matters:",
        ],
        "builder-note": [
            "From a builder lens, today's key point is:",
            "Translated to product impact, the key is:",
            "In user-facing terms, today's move is:",
        ],
        "contrarian-check": [
            "When everyone agrees too fast, I check this first:",
            "Consensus is loud, so I stress-test this:",
            "Before following the crowd, this is the counter-check:",
        ],
        "field-journal": [
            "Field note for today:",
            "One short log from today's market tape:",
            "Today's observation journal, compressed:",
        ],
        "mythic-analogy": [
            "In chain-weather terms:",
            "If I translate this as a story:",
            "Narrative mode on, here's the frame:",
        ],
    },
}

BODY_DIRECTIVES = {
    "ko": {
        "builder-note": "기술/제품 영향이 사용자 행동에 어떤 변화로 이어지는지 한 문장으로 번역",
        "contrarian-check": "합의된 해석의 약점을 짚고 반대 가설을 짧게 제시",
        "field-journal": "관찰 로그처럼 사실 순서대로 건조하게 정리",
        "mythic-analogy": "세계관 비유를 1회만 쓰고 과장 없이 데이터 근거로 연결",
        "signal-pulse": "핵심 주장 1개와 근거 연결을 빠르게 제시",
    },
    "en": {
        "builder-note": "Translate signal into user/product impact in one sentence",
        "contrarian-check": "Stress-test consensus and present a compact counter-hypothesis",
        "field-journal": "Format as an observation log with factual sequence",
        "mythic-analogy": "Use one narrative analogy, then ground it with hard evidence",
        "signal-pulse": "State one clear claim and connect evidence fast",
    },
}

ENDING_DIRECTIVES = {
    "ko": {
        "contrarian-check": "마지막 문장은 검증 조건을 붙인 질문형",
        "field-journal": "마지막 문장은 관찰형(단정 금지)",
        "default": "마지막 문장은 대화가 이어질 열린 질문 또는 조건부 관찰",
    },
    "en": {
        "contrarian-check": "End with a testable question",
        "field-journal": "End with a restrained observation",
        "default": "End with an open but concrete follow-up",
    },
}

MODE_HINTS = [
    ("builder-note", re.compile(r"빌더|builder|product|사용자\s*체감")),
    ("contrarian-check", re.compile(r"반대로|counter|consensus|컨센서스")),
    ("field-journal", re.compile(r"노트|log|journal|관찰\s*일지")),
    ("mythic-analogy", re.compile(r"비유|story|chain-weather|체인 날씨")),
]


def normalize_narrative_text(text: str) -> str:
    return re.sub(r"\s+", " ", sanitize(text).lower()).strip()


def build_narrative_skeleton(text: str) -> str:
    value = normalize_narrative_text(text)
    value = re.sub(r"\$[a-z]{2,10}", " token ", value)
    value = re.sub(r"[+-]?\d+(?:[.,]\d+)?%", " pct ", value)
    value = re.sub(r"\d[\d,]*(?:\.\d+)?", " num ", value)
    value = re.sub(r"[^\w\s]|_", " ", value)
    return re.sub(r"\s+", " ", value).strip()[:160]


def infer_mode_from_text(text: str) -> str:
    lower = normalize_narrative_text(text)
    for mode, pattern in MODE_HINTS:
        if pattern.search(lower):
            return mode
    return "signal-pulse"


def pick_narrative_mode(lane: str, recent_posts: List[RecentPost]) -> str:
    ordered = MODE_BY_LANE.get(lane, NARRATIVE_MODES)
    usage: Dict[str, int] = {mode: 0 for mode in NARRATIVE_MODES}
    for post in recent_posts[-20:]:
        mode = post.meta.get("narrative_mode")
        if mode not in usage:
            mode = infer_mode_from_text(post.content)
        usage[mode] += 1
    scored: List[Tuple[float, str]] = [(usage.get(mode, 0) + index * 0.05, mode) for index, mode in enumerate(ordered)]
    return min(scored, key=lambda row: row[0])[1]


def build_banned_openers(recent_posts: List[RecentPost]) -> List[str]:
    out: List[str] = []
    for post in recent_posts[-8:]:
        row = sanitize(post.content)[:26].strip()
        if len(row) >= 8 and row not in out:
            out.append(row)
    return out[:8]


def pick_first_non_banned(pool: List[str], banned: List[str]) -> Optional[str]:
    normalized_banned = {normalize_narrative_text(item) for item in banned}
    for candidate in pool:
        if normalize_narrative_text(candidate) not in normalized_banned:
            return candidate
    return None


def build_narrative_plan(event_plan: EventEvidencePlan, recent_posts: List[RecentPost], language: str) -> NarrativePlan:
    lang = "ko" if language == "ko" else "en"
    lane = event_plan.lane
    mode = pick_narrative_mode(lane, recent_posts)
    banned = build_banned_openers(recent_posts)
    pool = OPENINGS[lang][mode]
    endings = ENDING_DIRECTIVES[lang]
    return NarrativePlan(
        lane=lane,
        mode=mode,
        opening_directive=pick_first_non_banned(pool, banned) or pool[0],
        body_directive=BODY_DIRECTIVES[lang][mode],
        ending_directive=endings.get(mode, endings["default"]),
        banned_openers=banned,
    )


def validate_narrative_novelty(text: str, recent_posts: List[RecentPost], plan: NarrativePlan) -> Tuple[bool, str]:
    normalized = normalize_narrative_text(text)
    if not normalized:
        return False, "empty-text"

    prefix = normalized[:24]
    if any(normalize_narrative_text(post.content)[:24] == prefix for post in recent_posts[-10:]):
        return False, "opening-pattern-repeat"

    if any(normalized.startswith(normalize_narrative_text(opener)) for opener in plan.banned_openers):
        return False, "banned-opener-used"

    skeleton = build_narrative_skeleton(normalized)
    if any(build_narrative_skeleton(post.content) == skeleton for post in recent_posts[-14:]):
        return False, "narrative-skeleton-repeat"

    return True, ""
