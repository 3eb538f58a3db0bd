"""Directory seeding — load the packaged roles and users.

Idempotent: entries that already exist are skipped, so running twice
produces no duplicates.
"""

import json
import logging
from pathlib import Path

from dealerflow.domain import RoleInfo, UserInfo

logger = logging.getLogger(__name__)

DEFAULT_DIRECTORY_FILE = Path(__file__).parent.parent / "data" / "directory.json"


def seed_directory(repository, path=None) -> dict:
    """Insert missing roles and users. Returns ``{"roles": n, "users": n}`` added."""
    with open(path or DEFAULT_DIRECTORY_FILE, encoding="utf-8") as fh:
        data = json.load(fh)

    roles_added = 0
    for item in data.get("roles", []):
        if repository.get_role(item["name"]) is not None:
            continue
        repository.add_role(RoleInfo(
            name=item["name"],
            department=item.get("department", ""),
            permissions=tuple(item.get("permissions", [])),
        ))
        roles_added += 1

    users_added = 0
    for item in data.get("users", []):
        if repository.get_user(item["user_id"]) is not None:
            continue
        repository.add_user(UserInfo(
            user_id=item["user_id"],
            display_name=item.get("display_name", item["user_id"]),
            role=item["role"],
            is_active=item.get("is_active", True),
        ))
        users_added += 1

    logger.info("Directory seeded: %d role(s), %d user(s) added", roles_added, users_added)
    return {"roles": roles_added, "users": users_added}
