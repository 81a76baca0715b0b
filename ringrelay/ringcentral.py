"""RingCentral REST client: OAuth, chat rosters, posts, tasks and calendar events.

RingCentralSink is the production ActionSink. Every call takes the stored user
record ({"uid", "tokens", ...}) and authenticates with its bearer token,
refreshing once on a 401.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Protocol
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "https://platform.ringcentral.com"


class RingCentralError(Exception):
    """A RingCentral API call failed."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"RingCentral API error {status_code}: {message}")


class ActionSink(Protocol):
    async def list_chats(self, user: dict) -> list[dict]: ...

    async def list_members(self, user: dict) -> list[dict]: ...

    async def post_message(self, user: dict, chat_id: str, text: str) -> dict: ...

    async def create_task(self, user: dict, title: str, assignee_id: str = None,
                          due_date: str = None, due_time: str = None) -> dict: ...

    async def create_event(self, user: dict, name: str, start_date: str = None,
                           start_time: str = None, duration: int = 60,
                           notes: str = None) -> dict: ...


def _records(data) -> list:
    if isinstance(data, dict):
        return data.get("records") or []
    return data or []


def _person_name(data: dict) -> Optional[str]:
    name = f"{data.get('firstName') or ''} {data.get('lastName') or ''}".strip()
    return name or data.get("email") or None


def build_due_date(due_date: Optional[str], due_time: Optional[str]) -> Optional[str]:
    """Format a task due timestamp; end of day when no time was given."""
    if not due_date:
        return None
    if due_time:
        return f"{due_date}T{due_time}:00Z"
    return f"{due_date}T23:59:59Z"


def build_event_window(start_date: Optional[str], start_time: Optional[str],
                       duration: int) -> tuple[str, str, bool]:
    """Return (start, end, all_day) ISO timestamps for a calendar event."""
    day = date.fromisoformat(start_date) if start_date else date.today()
    if not start_time:
        start = datetime(day.year, day.month, day.day)
        end = start + timedelta(days=1)
        all_day = True
    else:
        hour, minute = (int(p) for p in start_time.split(":")[:2])
        start = datetime(day.year, day.month, day.day, hour, minute)
        end = start + timedelta(minutes=duration)
        all_day = False
    fmt = "%Y-%m-%dT%H:%M:%SZ"
    return start.strftime(fmt), end.strftime(fmt), all_day


class RingCentralSink:
    """ActionSink over the RingCentral REST API.

    Args:
        server_url: RingCentral platform base URL.
        client_id: OAuth app client id.
        client_secret: OAuth app client secret.
        redirect_uri: OAuth redirect registered for the app.
        on_tokens: Callback invoked with (uid, tokens) after a refresh.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, server_url: str = DEFAULT_SERVER_URL, client_id: str = "",
                 client_secret: str = "", redirect_uri: str = "",
                 on_tokens: Callable[[str, dict], None] = None,
                 transport: httpx.AsyncBaseTransport = None, timeout: float = 15):
        self.server_url = server_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.on_tokens = on_tokens
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.server_url, timeout=self._timeout,
                                 transport=self._transport)

    # --- OAuth ---

    def authorization_url(self, state: str) -> str:
        query = urlencode({
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
        })
        return f"{self.server_url}/restapi/oauth/authorize?{query}"

    async def _token_request(self, client: httpx.AsyncClient, data: dict) -> dict:
        resp = await client.post("/restapi/oauth/token", data=data,
                                 auth=(self.client_id, self.client_secret))
        if resp.status_code >= 400:
            raise RingCentralError(resp.status_code, resp.text[:300])
        return resp.json()

    async def exchange_code(self, code: str) -> dict:
        """Trade an authorization code for a token payload."""
        async with self._client() as client:
            return await self._token_request(client, {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            })

    async def revoke(self, tokens: dict):
        token = tokens.get("access_token")
        if not token:
            return
        async with self._client() as client:
            resp = await client.post("/restapi/oauth/revoke", data={"token": token},
                                     auth=(self.client_id, self.client_secret))
            if resp.status_code >= 400:
                raise RingCentralError(resp.status_code, resp.text[:300])

    async def _refresh(self, client: httpx.AsyncClient, user: dict) -> bool:
        refresh_token = user.get("tokens", {}).get("refresh_token")
        if not refresh_token:
            return False
        logger.info(f"[RC] Refreshing access token for {user.get('uid', '')[:10]}...")
        tokens = await self._token_request(client, {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        merged = {**user.get("tokens", {}), **tokens}
        user["tokens"] = merged
        if self.on_tokens:
            self.on_tokens(user.get("uid"), merged)
        return True

    async def _request(self, client: httpx.AsyncClient, user: dict, method: str,
                       path: str, **kwargs):
        for attempt in range(2):
            token = user.get("tokens", {}).get("access_token", "")
            resp = await client.request(method, path,
                                        headers={"Authorization": f"Bearer {token}"}, **kwargs)
            if resp.status_code == 401 and attempt == 0 and await self._refresh(client, user):
                continue
            if resp.status_code >= 400:
                raise RingCentralError(resp.status_code, resp.text[:300])
            return resp.json() if resp.content else {}

    # --- Rosters ---

    async def fetch_chats(self, user: dict) -> list[dict]:
        """Raw chat list, as cached on the user record."""
        async with self._client() as client:
            return _records(await self._request(client, user, "GET", "/team-messaging/v1/chats"))

    async def list_chats(self, user: dict) -> list[dict]:
        """Chats with a displayName each; Direct chats are named after the other person."""
        async with self._client() as client:
            chats = _records(await self._request(client, user, "GET", "/team-messaging/v1/chats"))
            return [await self._enrich_chat(client, user, chat) for chat in chats]

    async def _enrich_chat(self, client: httpx.AsyncClient, user: dict, chat: dict) -> dict:
        enriched = dict(chat)
        chat_type = chat.get("type")
        if chat_type == "Team":
            enriched["displayName"] = chat.get("name") or chat.get("description") or f"Team Chat {chat.get('id')}"
        elif chat_type == "Personal":
            enriched["displayName"] = "Personal Notes"
        elif chat_type == "Direct" and chat.get("members"):
            me = str(user.get("tokens", {}).get("owner_id") or "")
            names = []
            for member in chat["members"]:
                member_id = str(member.get("id"))
                if member_id.startswith("glip-"):
                    continue  # bot/system account
                try:
                    person = await self._request(client, user, "GET", f"/team-messaging/v1/persons/{member_id}")
                except RingCentralError as e:
                    if e.status_code != 404:
                        logger.warning(f"[RC] Could not fetch member {member_id}: {e}")
                    continue
                name = _person_name(person)
                if name:
                    names.append((member_id, name))
            others = [n for mid, n in names if mid != me] if me else [n for _, n in names]
            if others:
                enriched["displayName"] = others[0]
            elif names:
                enriched["displayName"] = names[0][1]
            else:
                enriched["displayName"] = f"DM {chat.get('id')}"
        else:
            enriched["displayName"] = chat.get("name") or chat.get("description") or f"Chat {chat.get('id')}"
        return enriched

    async def list_members(self, user: dict) -> list[dict]:
        async with self._client() as client:
            data = await self._request(client, user, "GET", "/restapi/v1.0/account/~/directory/entries",
                                       params={"type": "User"})
        members = []
        for m in _records(data):
            name = f"{m.get('firstName') or ''} {m.get('lastName') or ''}".strip()
            members.append({"id": str(m.get("id")), "name": name, "displayName": name,
                            "email": m.get("email")})
        return members

    # --- Actions ---

    async def post_message(self, user: dict, chat_id: str, text: str) -> dict:
        async with self._client() as client:
            return await self._request(client, user, "POST", f"/team-messaging/v1/chats/{chat_id}/posts",
                                       json={"text": text})

    async def _task_chat_id(self, client: httpx.AsyncClient, user: dict,
                            assignee_id: Optional[str]) -> str:
        """Direct chat with the assignee, or the personal chat when unassigned; created if missing."""
        if assignee_id:
            chats = _records(await self._request(client, user, "GET", "/team-messaging/v1/chats",
                                                 params={"type": "Direct"}))
            for chat in chats:
                if any(str(m.get("id")) == str(assignee_id) for m in chat.get("members") or []):
                    return chat["id"]
            created = await self._request(client, user, "POST", "/team-messaging/v1/chats",
                                          json={"type": "Direct", "members": [{"id": assignee_id}]})
            logger.info(f"[RC] Created DM chat {created.get('id')} for task assignee")
            return created["id"]

        chats = _records(await self._request(client, user, "GET", "/team-messaging/v1/chats",
                                             params={"type": "Personal"}))
        if chats:
            return chats[0]["id"]
        created = await self._request(client, user, "POST", "/team-messaging/v1/chats",
                                      json={"type": "Personal"})
        return created["id"]

    async def create_task(self, user: dict, title: str, assignee_id: str = None,
                          due_date: str = None, due_time: str = None) -> dict:
        async with self._client() as client:
            chat_id = await self._task_chat_id(client, user, assignee_id)
            body = {"subject": title}
            if assignee_id:
                body["assignees"] = [{"id": assignee_id}]
            due = build_due_date(due_date, due_time)
            if due:
                body["dueDate"] = due
            logger.info(f"[RC] Creating task in chat {chat_id}: {body}")
            return await self._request(client, user, "POST", f"/restapi/v1.0/glip/chats/{chat_id}/tasks",
                                       json=body)

    async def create_event(self, user: dict, name: str, start_date: str = None,
                           start_time: str = None, duration: int = 60,
                           notes: str = None) -> dict:
        start, end, all_day = build_event_window(start_date, start_time, duration)
        body = {"title": name, "startTime": start, "endTime": end, "allDay": all_day}
        if notes:
            body["description"] = notes
        async with self._client() as client:
            return await self._request(client, user, "POST", "/team-messaging/v1/events", json=body)
