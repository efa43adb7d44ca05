# apis.py

import os

# Slack
SLACK_TOKEN = os.environ.get("SLACK_TOKEN", "")
SLACK_APP_TOKEN = os.environ.get("SLACK_APP_TOKEN", "")

# Trello
TRELLO_API_BASE = os.environ.get("TRELLO_API_BASE", "https://api.trello.com/1")
TRELLO_KEY = os.environ.get("TRELLO_KEY", "")
TRELLO_TOKEN = os.environ.get("TRELLO_TOKEN", "")
TRELLO_ORGANIZATION_ID = os.environ.get("TRELLO_ORGANIZATION_ID", "")

# OpenAI
OPEN_AI_KEY = os.environ.get("OPEN_AI_KEY", "")
OPEN_AI_MODEL = os.environ.get("OPEN_AI_MODEL", "gpt-4o")

# Bot behaviour
DIGEST_CHANNEL = os.environ.get("DIGEST_CHANNEL", "#faktury")
MAPPINGS_DB_PATH = os.environ.get("MAPPINGS_DB_PATH", os.path.join("data", "user_mappings.db"))
BOARD_CACHE_TTL = float(os.environ.get("BOARD_CACHE_TTL", "300"))
DEFAULT_LIST_NAME = os.environ.get("DEFAULT_LIST_NAME", "bazowe")
INVOICE_BOARD_NAME = os.environ.get("INVOICE_BOARD_NAME", "[[ C-Level ]] Szymon")
TIMEZONE = os.environ.get("TIMEZONE", "Europe/Warsaw")
LEGACY_MAPPINGS_JSON = os.environ.get("LEGACY_MAPPINGS_JSON", os.path.join("data", "user_mappings.json"))
