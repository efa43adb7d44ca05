# user_mapping.py

from typing import Dict, List, Optional
import json
import logging
import os
import sqlite3

import apis
from name_matching import normalize_name
from trello_client import TrelloClient

logger = logging.getLogger(__name__)


class UserMappingStore:
    """Persistent Slack username -> Trello username mapping."""

    def __init__(self, db_path: str = apis.MAPPINGS_DB_PATH):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def initialize(self) -> None:
        if self._conn is not None:
            return

        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        logger.info(f"Opening user mapping database at {self.db_path}")
        self._conn = sqlite3.connect(self.db_path)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_mappings (
                slack_username TEXT PRIMARY KEY,
                trello_username TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self._conn.commit()

    @property
    def conn(self) -> sqlite3.Connection:
        self.initialize()
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def get_trello_username(self, slack_username: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT trello_username FROM user_mappings WHERE slack_username = ?",
            (slack_username,)
        ).fetchone()
        return row[0] if row else None

    def save_mapping(self, slack_username: str, trello_username: str) -> None:
        self.conn.execute(
            """
            INSERT INTO user_mappings (slack_username, trello_username)
            VALUES (?, ?)
            ON CONFLICT(slack_username) DO UPDATE SET
                trello_username = excluded.trello_username,
                updated_at = CURRENT_TIMESTAMP
            """,
            (slack_username, trello_username)
        )
        self.conn.commit()
        logger.info(f"Mapped Slack user {slack_username} -> Trello user {trello_username}")

    def remove_mapping(self, slack_username: str) -> bool:
        cursor = self.conn.execute("DELETE FROM user_mappings WHERE slack_username = ?", (slack_username,))
        self.conn.commit()
        return cursor.rowcount > 0

    def all_mappings(self) -> Dict[str, str]:
        rows = self.conn.execute(
            "SELECT slack_username, trello_username FROM user_mappings ORDER BY slack_username"
        ).fetchall()
        return {slack_username: trello_username for slack_username, trello_username in rows}

    def migrate_from_json(self, json_path: str) -> bool:
        """Import a legacy {"slack": "trello"} JSON file and back it up as .bak."""
        if not os.path.exists(json_path):
            logger.info(f"{json_path} does not exist, no migration needed")
            return True

        try:
            with open(json_path, encoding='utf-8') as f:
                mappings = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {json_path}: {e}")
            return False

        logger.info(f"Migrating {len(mappings)} mappings from {json_path}")
        for slack_username, trello_username in mappings.items():
            self.save_mapping(slack_username, trello_username)

        os.replace(json_path, f"{json_path}.bak")
        logger.info(f"Original JSON file backed up to {json_path}.bak")
        return True


def find_members_by_name(name: str, members: List[Dict]) -> List[Dict]:
    """Members whose full name contains the given name, ignoring case and accents."""
    search = normalize_name(name).clean
    if not search:
        logger.warning("Empty name provided for Trello member search")
        return []

    return [
        member for member in members
        if search in normalize_name(member.get('fullName') or '').clean
    ]


def filter_exact_member_matches(query: str, members: List[Dict]) -> List[Dict]:
    """Members whose username, full name or one part of the full name equals the query."""
    term = query.lower().strip()
    matches = []
    for member in members:
        username = (member.get('username') or '').lower()
        full_name = (member.get('fullName') or '').lower()
        if username == term or full_name == term or term in full_name.split():
            matches.append(member)
    return matches


def pick_best_member(slack_username: str, candidates: List[Dict]) -> Optional[Dict]:
    """
    Choose among members matched by first name.

    A "first.last" username picks the member whose full name contains the
    last name; otherwise the first candidate wins.
    """
    if not candidates:
        return None
    if len(candidates) == 1:
        return candidates[0]

    if '.' in slack_username:
        last_name = normalize_name(slack_username.split('.')[1]).clean
        if last_name:
            for member in candidates:
                if last_name in normalize_name(member.get('fullName') or '').clean:
                    return member

    logger.info(f"No exact member for '{slack_username}', using first match "
                f"{candidates[0].get('fullName') or candidates[0].get('username')}")
    return candidates[0]


async def resolve_member_id_for_chat_user(slack_username: str, store: UserMappingStore,
                                          trello: TrelloClient) -> Optional[str]:
    """Trello member id for a Slack user: explicit mapping first, then name matching."""
    trello_username = store.get_trello_username(slack_username)
    if trello_username:
        member = await trello.get_member(trello_username)
        if member:
            logger.info(f"Found mapped Trello member for {slack_username}")
            return member['id']

    first_name = slack_username.split('.')[0]
    if not first_name:
        return None

    logger.info(f"No explicit mapping for {slack_username}, trying name-based matching")
    members = await trello.fetch_organization_members()
    member = pick_best_member(slack_username, find_members_by_name(first_name, members))
    if member is None:
        logger.info(f"No matching Trello members found for {first_name}")
        return None
    return member['id']
