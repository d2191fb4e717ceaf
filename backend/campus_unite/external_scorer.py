from __future__ import annotations

from datetime import datetime

import httpx

from .config import settings
from .domain import EventSnapshot, UserProfile
from .errors import UpstreamUnavailable


class HttpScorer:
    """Pluggable scorer backed by a remote service.

    POSTs one event per request and expects ``{"score": <number>}`` back. Every
    transport or payload problem surfaces as ``UpstreamUnavailable`` so the ranking
    engine can fall back to the built-in scorer.
    """

    name = "external"

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 2.0,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.Client(
            timeout=timeout_seconds,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def payload(profile: UserProfile, event: EventSnapshot, as_of: datetime) -> dict:
        return {
            "as_of": as_of.isoformat(),
            "user": {"id": profile.id, "interests": sorted(profile.interests)},
            "event": {
                "id": event.id,
                "title": event.title,
                "category": event.category,
                "tags": list(event.tags),
                "start_time": event.start_time.isoformat(),
                "end_time": event.end_time.isoformat(),
                "attendee_count": event.attendee_count,
            },
        }

    def score(self, profile: UserProfile, event: EventSnapshot, as_of: datetime) -> float:
        try:
            response = self._client.post(
                self.url,
                json=self.payload(profile, event, as_of),
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            return float(response.json()["score"])
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable("External scorer timed out.", event_id=event.id) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"External scorer request failed: {exc}", event_id=event.id) from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamUnavailable(f"External scorer sent a malformed reply: {exc}", event_id=event.id) from exc

    def close(self) -> None:
        self._client.close()


def build_external_scorer() -> HttpScorer | None:
    if not settings.external_scorer_url:
        return None
    return HttpScorer(
        settings.external_scorer_url,
        api_key=settings.external_scorer_api_key,
        timeout_seconds=settings.external_scorer_timeout_seconds,
    )
