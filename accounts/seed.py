"""
accounts/seed.py -- Idempotent bootstrap data.

Run once at startup (api/main.py lifespan) and by `python main.py seed`.
Roles are upserted by name and accounts by email, so running it on every
start never duplicates anything and never touches records that already
exist (an admin who changed the seed account's password keeps it).

A seed account with no configured password is skipped. In DEBUG mode
core.config fills in development defaults, so local setups always get both
accounts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from accounts.service import SYSTEM, AccountService
from auth.models import Role, User
from core.config import Settings

logger = logging.getLogger("rolekeeper.seed")

SEED_ROLES: tuple[tuple[str, str], ...] = (
    ("ADMIN", "Administrator role"),
    ("USER", "Regular user role"),
)


@dataclass
class SeedReport:
    roles_created: list[str] = field(default_factory=list)
    users_created: list[str] = field(default_factory=list)
    users_skipped: list[str] = field(default_factory=list)


def _seed_accounts(settings: Settings) -> list[User]:
    return [
        User(
            email=settings.seed_admin_email,
            first_name="System",
            last_name="Administrator",
            age=30,
            password=settings.seed_admin_password,
            roles={Role(name="ADMIN"), Role(name="USER")},
        ),
        User(
            email=settings.seed_user_email,
            first_name="Regular",
            last_name="User",
            age=30,
            password=settings.seed_user_password,
            roles={Role(name="USER")},
        ),
    ]


def seed_defaults(service: AccountService, settings: Settings) -> SeedReport:
    report = SeedReport()

    for name, description in SEED_ROLES:
        if service.find_role_by_name(name) is None:
            service.create_role(name, SYSTEM, description=description)
            report.roles_created.append(name)

    for account in _seed_accounts(settings):
        if service.find_by_email(account.email) is not None:
            continue
        if not account.password:
            logger.warning("No password configured for seed account %s; skipping it", account.email)
            report.users_skipped.append(account.email)
            continue
        service.create_or_update_user(account, SYSTEM)
        report.users_created.append(account.email)

    logger.info(
        "Seeding complete (roles created: %s, users created: %s)",
        ", ".join(report.roles_created) or "none",
        ", ".join(report.users_created) or "none",
    )
    return report
