# services/topics.py
import httpx
from typing import Optional

from constants import SUMMARY_SERVICE_URL, TOPIC_SERVICE_URL, TOPIC_SERVICE_TIMEOUT
from logging_config import get_logger

logger = get_logger(__name__)

MAX_TOPICS = 5
# Shorter transcripts give the service too little to work with
MIN_TOPICS_CONTENT_LENGTH = 20
MIN_SUMMARY_CONTENT_LENGTH = 50


class TopicServiceUnavailable(Exception):
    pass


class SummaryServiceUnavailable(Exception):
    pass


def format_transcript(messages) -> str:
    return "\n".join(f"{m.sender_name}: {m.text}" for m in messages)


async def _post_chat_content(url: str, chat_content: str, timeout: float, error_cls) -> dict:
    payload = {"chatContent": chat_content}
    async with httpx.AsyncClient(timeout=timeout) as client:
        try:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Request to {url} failed: {e}")
            raise error_cls(str(e)) from e
    if not isinstance(data, dict):
        raise error_cls(f"Unexpected response from {url}")
    return data


async def suggest_topics(chat_content: str, url: Optional[str] = TOPIC_SERVICE_URL, timeout: float = TOPIC_SERVICE_TIMEOUT) -> list[str]:
    """Ask the external text-generation service for conversation topics.

    The service takes ``{"chatContent": ...}`` and answers ``{"topics": [...]}``.
    """
    if not url:
        raise TopicServiceUnavailable("Topic service is not configured")

    data = await _post_chat_content(url, chat_content, timeout, TopicServiceUnavailable)
    topics = data.get("topics")
    if not isinstance(topics, list):
        raise TopicServiceUnavailable("Topic service returned no topics")
    return [str(topic).strip() for topic in topics if str(topic).strip()][:MAX_TOPICS]


async def summarize_chat(chat_content: str, url: Optional[str] = SUMMARY_SERVICE_URL, timeout: float = TOPIC_SERVICE_TIMEOUT) -> str:
    """Ask the external text-generation service for a short summary of the chat.

    Same request shape as topic suggestions; the answer is ``{"summary": "..."}``.
    """
    if not url:
        raise SummaryServiceUnavailable("Summary service is not configured")

    data = await _post_chat_content(url, chat_content, timeout, SummaryServiceUnavailable)
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise SummaryServiceUnavailable("Summary service returned no summary")
    return summary.strip()
