"""Policy configuration file loading.

File shape:

    {
      "autorun_mode": {
        "enabled": true,
        "allowlist": ["ls", "git status"],
        "denylist": ["rm", "shutdown"],
        "allow_all_other_commands": false
      }
    }

Every field is optional. A file that fails to parse or validate leaves the
active snapshot untouched.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from mcp_terminal.shell.policy import PolicyConfig, PolicyStore
from mcp_terminal.utils import parse_bool

log = logging.getLogger("policy")

TOP_LEVEL_KEY = "autorun_mode"


def _string_list(value: object, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"{TOP_LEVEL_KEY}.{field_name} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"{TOP_LEVEL_KEY}.{field_name} must be a list of strings")
        item = item.strip()
        if item:
            out.append(item)
    return tuple(out)


def parse_policy_config(payload: object) -> PolicyConfig:
    """Normalize a decoded JSON document into a PolicyConfig."""
    if not isinstance(payload, dict):
        raise ValueError("policy config must be a JSON object")
    section = payload.get(TOP_LEVEL_KEY)
    if section is None:
        raise ValueError(f'missing "{TOP_LEVEL_KEY}" root key')
    if not isinstance(section, dict):
        raise ValueError(f"{TOP_LEVEL_KEY} must be an object")

    return PolicyConfig(
        enabled=parse_bool(section.get("enabled"), default=False),
        allowlist=_string_list(section.get("allowlist"), "allowlist"),
        denylist=_string_list(section.get("denylist"), "denylist"),
        allow_all_others=parse_bool(section.get("allow_all_other_commands"), default=False),
    )


def policy_from_json(text: str) -> PolicyConfig:
    return parse_policy_config(json.loads(text))


def load_policy_file(path: str | Path) -> PolicyConfig:
    return policy_from_json(Path(path).expanduser().read_text(encoding="utf-8"))


def policy_to_dict(config: PolicyConfig) -> dict:
    return {
        TOP_LEVEL_KEY: {
            "enabled": config.enabled,
            "allowlist": list(config.allowlist),
            "denylist": list(config.denylist),
            "allow_all_other_commands": config.allow_all_others,
        }
    }


def reload_policy(store: PolicyStore, path: str | Path) -> bool:
    """Replace the store's snapshot from `path`; keep the old one on failure."""
    try:
        config = load_policy_file(path)
    except (OSError, ValueError) as e:
        log.warning(f"Failed to load policy configuration from {path}: {e}; keeping existing configuration")
        return False
    store.replace(config)
    log.info(f"Loaded policy configuration from {path}")
    return True
