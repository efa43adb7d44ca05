# trello_client.py

from typing import Any, Dict, List, Optional
import logging
import time

import aiohttp

import apis
from entity_resolver import EntityKind, NamedEntity

logger = logging.getLogger(__name__)


class TrelloApiError(Exception):
    """A non-successful response from the Trello REST API."""

    def __init__(self, status: int, body: str, url: str = ""):
        super().__init__(f"Trello API error {status} for {url}: {body}")
        self.status = status
        self.body = body
        self.url = url


class BoardCache:
    """Open boards of the organization, kept for ttl seconds."""

    def __init__(self, ttl: float = apis.BOARD_CACHE_TTL, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._boards: Optional[List[Dict]] = None
        self._fetched_at = 0.0

    def get(self) -> Optional[List[Dict]]:
        if self._boards is None:
            return None
        if self._clock() - self._fetched_at > self.ttl:
            logger.debug("Board cache expired")
            return None
        return self._boards

    def put(self, boards: List[Dict]) -> None:
        self._boards = boards
        self._fetched_at = self._clock()

    def invalidate(self) -> None:
        self._boards = None


class TrelloClient:
    """Async access to the boards, lists, cards and members of one Trello organization."""

    def __init__(self, key: str = apis.TRELLO_KEY, token: str = apis.TRELLO_TOKEN,
                 organization_id: str = apis.TRELLO_ORGANIZATION_ID,
                 api_base: str = apis.TRELLO_API_BASE, cache: BoardCache = None):
        self.key = key
        self.token = token
        self.organization_id = organization_id
        self.api_base = api_base.rstrip('/')
        self.board_cache = cache or BoardCache()

    def _auth(self, params: Dict[str, Any] = None) -> Dict[str, Any]:
        merged = {"key": self.key, "token": self.token}
        for name, value in (params or {}).items():
            if value is None:
                continue
            merged[name] = str(value).lower() if isinstance(value, bool) else value
        return merged

    async def _request(self, method: str, path: str, params: Dict[str, Any] = None,
                       data: Dict[str, Any] = None) -> Any:
        url = f"{self.api_base}{path}"
        async with aiohttp.ClientSession() as session:
            async with session.request(method, url, params=self._auth(params), data=data) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Trello API error {response.status} on {method} {path}: {error_text}")
                    raise TrelloApiError(response.status, error_text, path)
                return await response.json()

    async def _get(self, path: str, **params) -> Any:
        return await self._request("GET", path, params=params)

    async def fetch_boards(self, force_refresh: bool = False) -> List[Dict]:
        """Open boards of the configured organization."""
        if not force_refresh:
            cached = self.board_cache.get()
            if cached is not None:
                return cached

        boards = await self._get(f"/organizations/{self.organization_id}/boards")
        open_boards = [board for board in boards if not board.get('closed')]
        if not open_boards:
            logger.warning("No open boards found in the organization")

        self.board_cache.put(open_boards)
        logger.info(f"Fetched {len(open_boards)} open boards")
        return open_boards

    async def fetch_board_details(self, board_id: str) -> Dict:
        return await self._get(f"/boards/{board_id}")

    async def fetch_lists(self, board_id: str) -> List[Dict]:
        return await self._get(f"/boards/{board_id}/lists")

    async def fetch_list_cards(self, list_id: str, with_details: bool = False) -> List[Dict]:
        if with_details:
            return await self._get(f"/lists/{list_id}/cards", members=True, labels=True, customFieldItems=True)
        return await self._get(f"/lists/{list_id}/cards")

    async def fetch_board_custom_fields(self, board_id: str) -> List[Dict]:
        return await self._get(f"/boards/{board_id}/customFields")

    async def fetch_organization_members(self) -> List[Dict]:
        return await self._get(f"/organizations/{self.organization_id}/members", fields="fullName,username")

    async def search_members(self, query: str) -> List[Dict]:
        return await self._get("/search/members", query=query)

    async def get_member(self, username_or_id: str) -> Optional[Dict]:
        """A member by username or id, or None when Trello does not know it."""
        try:
            return await self._get(f"/members/{username_or_id}")
        except TrelloApiError as e:
            if e.status == 404:
                logger.warning(f"Trello member '{username_or_id}' not found")
                return None
            raise

    async def create_card(self, list_id: str, name: str, description: str = None,
                          due: str = None, member_ids: List[str] = None) -> Dict:
        payload = {
            "idList": list_id,
            "name": name,
            "desc": description or " ",
            "due": due or "",
        }
        if member_ids:
            payload["idMembers"] = ",".join(member_ids)

        logger.info(f"Creating Trello card '{name}' in list {list_id} with members {payload.get('idMembers', 'None')}")
        card = await self._request("POST", "/cards", data=payload)
        if not card.get('url'):
            raise TrelloApiError(200, "Trello did not return a card URL", "/cards")
        return card


def boards_to_entities(boards: List[Dict]) -> List[NamedEntity]:
    return [NamedEntity(id=board['id'], raw_name=board['name'], kind=EntityKind.BOARD) for board in boards]


def lists_to_entities(lists: List[Dict]) -> List[NamedEntity]:
    return [NamedEntity(id=item['id'], raw_name=item['name'], kind=EntityKind.LIST) for item in lists]


def members_to_entities(members: List[Dict]) -> List[NamedEntity]:
    return [
        NamedEntity(id=member['id'], raw_name=member.get('fullName') or member.get('username', ''),
                    kind=EntityKind.MEMBER)
        for member in members
    ]
