"""Turn a pasted JavaScript ``firebaseConfig`` object into ``.env`` lines."""

import re
from typing import Dict

from firekit.config.settings import DEFAULT_AUTH_URL

ENV_PREFIX = "NEXT_PUBLIC_FIREBASE_"

# JS key -> env suffix, in output order.
CONFIG_KEYS = (
    ("apiKey", "API_KEY"),
    ("authDomain", "AUTH_DOMAIN"),
    ("databaseURL", "DATABASE_URL"),
    ("projectId", "PROJECT_ID"),
    ("storageBucket", "STORAGE_BUCKET"),
    ("messagingSenderId", "MESSAGING_SENDER_ID"),
    ("appId", "APP_ID"),
)


def extract_config(js_config: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for key, _ in CONFIG_KEYS:
        match = re.search(rf"""{key}\s*:\s*["']([^"']+)["']""", js_config)
        values[key] = match.group(1) if match else ""
    return values


def convert_to_env(js_config: str, prefix: str = ENV_PREFIX) -> str:
    values = extract_config(js_config)
    lines = [f'{prefix}{suffix}="{values[key]}"' for key, suffix in CONFIG_KEYS]
    lines.append(f'{prefix}AUTH_URL="{DEFAULT_AUTH_URL}"')
    return "\n".join(lines)
