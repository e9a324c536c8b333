import asyncio
import json
import logging

import httpx

from .settings import Settings, settings

logger = logging.getLogger(__name__)

RETRY_DELAYS = [0.5, 1.0, 2.0]

REPORT_SYSTEM_PROMPT = """You are an expert data analyst creating strategic reports.

Output JSON with this structure:
{
  "title": "Report title",
  "summary": "Executive summary",
  "sections": [{"title": "...", "content": "...", "chart_type": "bar|line|pie|area", "chart_data": {}}],
  "insights": [{"type": "trend|warning|opportunity", "message": "...", "confidence": 0.9}],
  "recommendations": ["action 1", "action 2"]
}"""

TAGS_SYSTEM_PROMPT = """You are a content taxonomist. Suggest specific, descriptive tags covering
regions, topics, institutions, actors and time periods. Avoid generic tags.
Return JSON: {"suggested_tags": ["tag", ...]}"""


class LLMUnavailableError(RuntimeError):
    pass


class LLMResponseError(RuntimeError):
    pass


async def _chat_json(
    messages: list[dict],
    cfg: Settings = settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    if not cfg.llm_api_key:
        raise LLMUnavailableError("No LLM API key configured.")

    headers = {"Authorization": f"Bearer {cfg.llm_api_key}"}
    body = {
        "model": cfg.llm_model,
        "messages": messages,
        "response_format": {"type": "json_object"},
        "temperature": 0.7,
    }

    async with httpx.AsyncClient(timeout=cfg.llm_timeout_seconds, headers=headers, transport=transport) as client:
        for delay in [0.0] + RETRY_DELAYS:
            if delay:
                await asyncio.sleep(delay)

            try:
                r = await client.post(cfg.llm_api_url, json=body)
            except httpx.TransportError as e:
                logger.warning("LLM request failed: %s", e)
                continue
            if r.status_code == 429 or 500 <= r.status_code < 600:
                logger.warning("LLM returned %s, retrying", r.status_code)
                continue
            r.raise_for_status()

            try:
                content = r.json()["choices"][0]["message"]["content"]
                return json.loads(content)
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise LLMResponseError(f"Unexpected LLM payload: {e}") from e

    raise LLMUnavailableError("LLM provider temporarily unavailable.")


async def generate_report(
    request: str,
    entities: list[str],
    cfg: Settings = settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    user_prompt = f'Generate report for: "{request}"'
    if entities:
        user_prompt += f"\n\nFocus on: {', '.join(entities)}"

    report = await _chat_json(
        [
            {"role": "system", "content": REPORT_SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
        cfg=cfg,
        transport=transport,
    )
    if not isinstance(report, dict) or "title" not in report or "summary" not in report:
        raise LLMResponseError("Report is missing title or summary.")
    return report


async def suggest_tags(
    title: str,
    content: str,
    content_type: str = "article",
    max_tags: int = 10,
    existing_tags: tuple[str, ...] = (),
    cfg: Settings = settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    context = f"Title: {title}\n\nContent:\n{content[:10_000]}"
    if existing_tags:
        context += f"\n\nExisting tags: {', '.join(existing_tags)}"

    data = await _chat_json(
        [
            {"role": "system", "content": TAGS_SYSTEM_PROMPT},
            {"role": "user", "content": f"Suggest {max_tags} tags for this {content_type}.\n\n{context}"},
        ],
        cfg=cfg,
        transport=transport,
    )
    tags = data.get("suggested_tags") if isinstance(data, dict) else None
    if not isinstance(tags, list):
        raise LLMResponseError("Tag suggestions missing from LLM payload.")

    seen = set(existing_tags)
    result = []
    for tag in tags:
        tag = str(tag).strip().lower()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result[:max_tags]
