from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from .config import Config
from .models import EventEvidencePlan, NarrativePlan


HUMAN_STYLE_REQUIREMENTS = (
    "Hard writing constraints: no hashtags, no emoji, no em dashes. "
    "Write one concrete claim and one concrete piece of evidence. "
    "Do not use generic assistant filler or canned openers. "
    "Only cite price numbers that appear in the market anchors."
)

MAX_OPENAI_MESSAGE_CHARS = 6000
MAX_PROMPT_RECENT_POSTS = 3

_URL = re.compile(r"https?://\S+", re.IGNORECASE)
_MENTION = re.compile(r"@\w+")
_HANGUL = re.compile(r"[가-힣]")
_LATIN = re.compile(r"[A-Za-z]")
_LABEL_PREFIX = re.compile(r"^(?:tweet|post|reply|트윗|답글)\s*[:：]\s*", re.IGNORECASE)

logger = logging.getLogger("chainpulse.autonomy")


class GenerationError(RuntimeError):
    pass


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def detect_language(text: str) -> str:
    """Return ``"ko"`` or ``"en"`` from a Hangul/Latin character count."""
    normalized = _URL.sub(" ", normalize_str(text))
    normalized = _MENTION.sub(" ", normalized)
    korean = len(_HANGUL.findall(normalized))
    latin = len(_LATIN.findall(normalized))
    if korean >= 2:
        return "ko"
    if korean == 1 and latin <= 20:
        return "ko"
    return "en"


def sanitize_generated_text(text: Any) -> str:
    out = re.sub(r"\s+", " ", normalize_str(text)).strip()
    out = out.replace("“", '"').replace("”", '"')
    out = _LABEL_PREFIX.sub("", out)
    if len(out) >= 2 and out[0] == out[-1] and out[0] in {'"', "'"}:
        out = out[1:-1].strip()
    return out


def _clip_text(value: Any, max_chars: int) -> str:
    text = normalize_str(value).strip()
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."


def _format_evidence_lines(plan: EventEvidencePlan) -> str:
    return "\n".join(
        f"- [{item.source}] {item.label}: {item.value} ({item.summary})" for item in plan.evidence[:2]
    ) or "- none"


def build_post_messages(
    cfg: Config,
    plan: EventEvidencePlan,
    narrative: NarrativePlan,
    trend_summary: str,
    post_angle: str,
    market_anchors: str,
    recent_texts: List[str],
    rejection_feedback: str = "",
    local_date: str = "",
) -> List[Dict[str, str]]:
    language = "Korean" if cfg.post_language == "ko" else "English"
    recent = "\n".join(
        f"{index + 1}. {text}" for index, text in enumerate(recent_texts[-MAX_PROMPT_RECENT_POSTS:])
    ) or "- none"
    banned = ", ".join(narrative.banned_openers[:6]) or "none"
    system = (
        f"{cfg.persona_hint}\n\n"
        f"{HUMAN_STYLE_REQUIREMENTS}\n"
        "State one claim in one sentence and back it with one sentence of evidence. "
        "Do not overstate; assert only when the evidence is strong."
    )
    user = (
        f"Write one post in {language}, at most {cfg.post_max_chars} characters.\n\n"
        f"Local date: {local_date or 'unknown'}\n"
        f"Trend summary:\n{trend_summary}\n\n"
        f"Event ({plan.lane}): {plan.event.headline}\n"
        f"Event keywords: {', '.join(plan.event.keywords) or 'none'}\n"
        f"Evidence (cite both):\n{_format_evidence_lines(plan)}\n\n"
        f"Preferred angle: {post_angle}\n"
        f"Narrative mode: {narrative.mode}\n"
        f"Opening: {narrative.opening_directive}\n"
        f"Body: {narrative.body_directive}\n"
        f"Ending: {narrative.ending_directive}\n"
        f"Banned openers: {banned}\n\n"
        f"Market anchor numbers:\n{market_anchors}\n\n"
        f"Recent posts (do not repeat their structure):\n{recent}\n\n"
        f"Last rejection reason: {rejection_feedback or 'none'}\n\n"
        "Output only the post text."
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def build_reply_messages(
    cfg: Config,
    target_text: str,
    author: str,
    trend_summary: str,
    market_anchors: str,
    language: str,
    max_chars: int = 180,
) -> List[Dict[str, str]]:
    language_name = "Korean" if language == "ko" else "English"
    system = f"{cfg.persona_hint}\n\n{HUMAN_STYLE_REQUIREMENTS}"
    user = (
        f"Reply to this post by @{author or 'unknown'} in {language_name}, at most {max_chars} characters.\n\n"
        f"Post:\n{_clip_text(target_text, 600)}\n\n"
        f"Trend summary:\n{trend_summary}\n\n"
        f"Market anchor numbers:\n{market_anchors}\n\n"
        "Add one concrete observation or one sharp question. Output only the reply text."
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def build_rewrite_messages(cfg: Config, text: str, language: str, max_chars: int) -> List[Dict[str, str]]:
    if language == "ko":
        user = (
            "아래 문장을 자연스러운 한국어 한 줄로 다시 써줘.\n\n"
            f"원문:\n{text}\n\n"
            f"규칙:\n- {max_chars}자 이내\n- 의미 유지\n- 해시태그/이모지 금지\n- 최종 문장만 출력"
        )
    else:
        user = (
            "Rewrite the text in natural English, one line.\n\n"
            f"Original:\n{text}\n\n"
            f"Rules:\n- Max {max_chars} chars\n- Keep meaning\n- No hashtags or emoji\n- Output only the final sentence"
        )
    return [{"role": "system", "content": cfg.persona_hint}, {"role": "user", "content": user}]


def call_openai(cfg: Config, messages: List[Dict[str, str]], max_tokens: int = 320) -> str:
    if not cfg.openai_api_key:
        raise GenerationError("OPENAI_API_KEY not set")

    url = f"{cfg.openai_base_url}/chat/completions"
    headers = {
        "Authorization": f"Bearer {cfg.openai_api_key}",
        "Content-Type": "application/json",
    }
    payload = {
        "model": cfg.openai_model,
        "messages": [
            {"role": m.get("role") or "user", "content": _clip_text(m.get("content"), MAX_OPENAI_MESSAGE_CHARS)}
            for m in messages
        ],
        "temperature": cfg.openai_temperature,
        "max_tokens": max_tokens,
    }

    try:
        resp = requests.post(url, headers=headers, data=json.dumps(payload), timeout=60)
    except requests_exceptions.RequestException as e:
        raise GenerationError(f"OpenAI request failed: {e}") from e
    if resp.status_code >= 400:
        raise GenerationError(f"OpenAI error {resp.status_code}: {resp.text}")

    try:
        data = resp.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise GenerationError(f"OpenAI response missing content: {e}") from e
    return sanitize_generated_text(content)


class TextGenerator:
    """Chat-completions drafting for posts, replies and language rewrites.

    Without an API key every draft returns None so callers fall back to the
    deterministic post.
    """

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.openai_api_key)

    def draft_post(self, **kwargs: Any) -> Optional[str]:
        if not self.enabled:
            return None
        text = call_openai(self.cfg, build_post_messages(self.cfg, **kwargs), max_tokens=320)
        return text[: self.cfg.post_max_chars] if text else None

    def draft_reply(
        self, target_text: str, author: str, trend_summary: str, market_anchors: str, language: str
    ) -> Optional[str]:
        if not self.enabled:
            return None
        messages = build_reply_messages(self.cfg, target_text, author, trend_summary, market_anchors, language)
        return call_openai(self.cfg, messages, max_tokens=250) or None

    def rewrite_language(self, text: str, language: str, max_chars: int) -> Optional[str]:
        if not self.enabled:
            return None
        try:
            rewritten = call_openai(self.cfg, build_rewrite_messages(self.cfg, text, language, max_chars), max_tokens=220)
        except GenerationError as e:
            logger.warning("Language rewrite failed language=%s error=%s", language, e)
            return None
        return rewritten[:max_chars] if rewritten else None
