"""
Publishing seam for scheduled posts.

The dispatcher hands a claimed job and its post to a PostPublisher. Failures
are classified as transient (retried per the retry policy) or fatal (the job
fails immediately).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.models.schedule_job import ScheduledPost, ScheduleJob
from app.utils.time import to_iso

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})


class PublishError(Exception):
    """Base class for publishing failures."""


class TransientPublishError(PublishError):
    """Temporary failure; the job is retried with backoff."""


class FatalPublishError(PublishError):
    """Permanent failure; the job moves straight to failed."""


def build_post_message(job: ScheduleJob, post: ScheduledPost) -> Dict[str, Any]:
    """Wire representation of a post handed to the platform."""
    media_urls = list(post.media_urls or [])
    return {
        "jobId": str(job.id),
        "scheduledPostId": str(post.id),
        "userId": post.user_id,
        "target": post.target,
        "title": post.title,
        "body": post.caption or "",
        "mediaUrls": media_urls,
        "mediaKey": media_urls[0] if media_urls else None,
        "nsfw": bool(post.nsfw),
        "spoiler": bool(post.spoiler),
        "flairId": post.flair_id,
        "flairText": post.flair_text,
        "sendReplies": bool(post.send_replies),
        "scheduledFor": to_iso(post.scheduled_for),
    }


class PostPublisher(ABC):
    """Performs the external side effect for a publish-post job."""

    @abstractmethod
    async def publish(self, job: ScheduleJob, post: ScheduledPost) -> Dict[str, Any]:
        """Publish the post and return a JSON-safe result for the attempt record."""


class LoggingPostPublisher(PostPublisher):
    """Hands the post off by logging it. Used when no webhook is configured."""

    async def publish(self, job: ScheduleJob, post: ScheduledPost) -> Dict[str, Any]:
        logger.info(
            "Handing off scheduled post %s (job %s) to %s",
            post.id,
            job.id,
            post.target,
        )
        return {"queued": True}


class WebhookPostPublisher(PostPublisher):
    """POSTs the post to an HTTP endpoint that talks to the platform."""

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout if timeout is not None else settings.PUBLISH_TIMEOUT_SECONDS
        self.transport = transport

    async def publish(self, job: ScheduleJob, post: ScheduledPost) -> Dict[str, Any]:
        message = build_post_message(job, post)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    self.url,
                    json=message,
                    headers={"Idempotency-Key": f"{job.id}:{post.id}"},
                )
        except httpx.TransportError as exc:
            raise TransientPublishError(f"Publish request failed: {exc.__class__.__name__}: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {"text": resp.text[:500]}

        if resp.status_code in RETRYABLE_STATUS_CODES or resp.status_code >= 500:
            raise TransientPublishError(f"Publish endpoint returned {resp.status_code}")
        if resp.status_code >= 400:
            detail = payload.get("error") if isinstance(payload, dict) else None
            raise FatalPublishError(f"Publish endpoint rejected the post ({resp.status_code}): {detail or resp.reason_phrase}")

        if not isinstance(payload, dict):
            payload = {"response": payload}
        return payload


def get_default_publisher() -> PostPublisher:
    if settings.PUBLISH_WEBHOOK_URL:
        return WebhookPostPublisher(settings.PUBLISH_WEBHOOK_URL)
    return LoggingPostPublisher()
