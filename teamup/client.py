"""HTTP client for the TeamUp API, with offline fallback."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import ApiRequestError
from .offline import OfflineCache, OfflineSnapshot


class TeamUpClient:
    """Thin synchronous wrapper over the JSON API.

    Non-2xx answers raise :class:`ApiRequestError`; connectivity problems
    surface as ``httpx.TransportError``.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        token: str | None = None,
        *,
        http: httpx.Client | None = None,
        timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ):
        self.token = token
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self._owns_http = http is None
        self.logger = logger or logging.getLogger("uvicorn.error")

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> TeamUpClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.http.request(method, path, headers=headers, **kwargs)
        if response.is_success:
            if not response.content:
                return None
            return response.json()
        try:
            payload = response.json()
        except ValueError:
            payload = {"detail": response.text}
        if not isinstance(payload, dict):
            payload = {"detail": payload}
        raise ApiRequestError(response.status_code, payload)

    # Users and events

    def me(self) -> dict:
        return self._request("GET", "/me")["user"]

    def create_event(self, **fields: Any) -> dict:
        return self._request("POST", "/events", json=fields)["event"]

    def created_events(self) -> list[dict]:
        return self._request("GET", "/events", params={"createdBy": "me"})["events"]

    def joined_events(self, user_id: str) -> list[dict]:
        """Participations of ``user_id`` where they hold the participant role."""
        rows = self._request("GET", "/userEvents", params={"userId": user_id})["userEvents"]
        return [row for row in rows if row.get("role") == "participant"]

    # Participation

    def join(self, event_id: str) -> dict:
        return self._request("POST", f"/events/{event_id}/join")

    def leave(self, event_id: str, user_id: str) -> dict:
        return self._request(
            "DELETE", "/userEvents", params={"eventId": event_id, "userId": user_id}
        )

    def stats(self, event_id: str, user_id: str | None = None) -> dict:
        params = {"userId": user_id} if user_id else None
        return self._request("GET", f"/events/{event_id}/stats", params=params)

    def set_role(self, event_id: str, user_id: str, role: str) -> dict:
        return self._request(
            "PUT",
            "/userEvents",
            json={"eventId": event_id, "userId": user_id, "role": role},
        )

    # Messages

    def messages(self, event_id: str, *, limit: int = 50, offset: int = 0) -> list[dict]:
        params = {"eventId": event_id, "limit": limit, "offset": offset}
        return self._request("GET", "/messages", params=params)["messages"]

    def send_message(self, event_id: str, content: str, *, sent_at: Any = None) -> str:
        body: dict[str, Any] = {"id_event": event_id, "content": content.strip()}
        if sent_at is not None:
            body["sent_at"] = sent_at
        return self._request("POST", "/messages", json=body)["messageId"]

    def edit_message(self, message_id: str, content: str) -> dict:
        return self._request(
            "PUT", "/messages", json={"id": message_id, "content": content.strip()}
        )

    def delete_message(self, message_id: str) -> dict:
        return self._request("DELETE", "/messages", params={"id": message_id})

    # Offline

    def refresh_offline_cache(
        self, cache: OfflineCache, user_id: str | None = None
    ) -> OfflineSnapshot:
        """Fetch created and joined events and replace the local snapshot."""
        user_id = user_id or self.me()["id"]
        created = self.created_events()
        joined = self.joined_events(user_id)
        return cache.save(user_id, created, joined)

    def events_for_offline(
        self, cache: OfflineCache, user_id: str
    ) -> OfflineSnapshot | None:
        """Refresh while online; serve the last snapshot when the network is gone."""
        try:
            return self.refresh_offline_cache(cache, user_id)
        except httpx.TransportError as exc:
            self.logger.warning("Offline fallback for user %s: %s", user_id, exc)
            return cache.load(user_id)
